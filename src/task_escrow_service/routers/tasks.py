"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    authenticate_optional,
    authenticate_required,
    parse_json_body,
    parse_non_negative_int,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a task in DRAFT and register it on the ledger."""
    body = await request.body()
    data = parse_json_body(body)
    creator = await authenticate_optional(request)

    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    task = await state.task_lifecycle.create_task(data, creator)
    return JSONResponse(status_code=201, content=task.to_dict())


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    status = request.query_params.get("status")
    creator_id = request.query_params.get("creator_id")
    offset = parse_non_negative_int(request.query_params.get("offset"), "offset", minimum=0)
    limit = parse_non_negative_int(request.query_params.get("limit"), "limit", minimum=1)

    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    tasks = state.task_lifecycle.list_tasks(
        status=status,
        creator_id=creator_id,
        limit=limit,
        offset=offset,
    )
    return {"tasks": [task.to_dict() for task in tasks]}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a single task."""
    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    return state.task_lifecycle.get_task(task_id).to_dict()


@router.get("/tasks/{task_id}/transactions")
async def list_task_transactions(task_id: str) -> dict[str, Any]:
    """List the confirmed ledger transactions mirrored for a task."""
    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    transactions = state.task_lifecycle.list_transactions(task_id)
    return {"task_id": task_id, "transactions": [tx.to_dict() for tx in transactions]}


# ---------------------------------------------------------------------------
# Fund endpoint
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/fund")
async def fund_task(task_id: str, request: Request) -> JSONResponse:
    """Move the task's total cost into escrow."""
    caller = await authenticate_required(request)

    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    task = await state.task_lifecycle.fund_task(task_id, caller)
    return JSONResponse(status_code=200, content=task.to_dict())
