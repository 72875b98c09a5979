"""Worker assignment endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    authenticate_required,
    check_device,
    parse_json_body,
)

router = APIRouter()


@router.post("/assignments", status_code=201)
async def assign_task(request: Request) -> JSONResponse:
    """Reserve a slot on the next eligible funded task for the caller."""
    # The body is optional and only carries the device fingerprint
    body = await request.body()
    data = parse_json_body(body) if body else None
    worker = await authenticate_required(request)
    check_device(request, worker, data)

    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    task, submission = await state.task_lifecycle.assign_task(worker)
    return JSONResponse(
        status_code=201,
        content={"task": task.to_dict(), "submission": submission.to_dict()},
    )
