"""Submission review endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    authenticate_required,
    check_device,
    parse_json_body,
)

router = APIRouter()


@router.get("/submissions")
async def list_submissions(request: Request) -> dict[str, Any]:
    """List the caller's own submissions."""
    worker = await authenticate_required(request)
    status = request.query_params.get("status")

    state = get_app_state()
    if state.task_lifecycle is None:
        msg = "TaskLifecycle not initialized"
        raise RuntimeError(msg)

    submissions = state.task_lifecycle.list_worker_submissions(worker.user_id, status)
    return {"submissions": [submission.to_dict() for submission in submissions]}


# ---------------------------------------------------------------------------
# Submit endpoint
# ---------------------------------------------------------------------------


@router.post("/submissions/{submission_id}/submit")
async def submit_work(submission_id: str, request: Request) -> JSONResponse:
    """Submit the worker's result for review."""
    body = await request.body()
    data = parse_json_body(body)
    worker = await authenticate_required(request)
    check_device(request, worker, data)

    state = get_app_state()
    if state.submission_review is None:
        msg = "SubmissionReview not initialized"
        raise RuntimeError(msg)

    submission = await state.submission_review.submit_work(
        submission_id, worker.user_id, data.get("payload")
    )
    return JSONResponse(status_code=200, content=submission.to_dict())


# ---------------------------------------------------------------------------
# Approve / reject endpoints
# ---------------------------------------------------------------------------


@router.post("/submissions/{submission_id}/approve")
async def approve_submission(submission_id: str, request: Request) -> JSONResponse:
    """Approve a submission and pay the worker."""
    caller = await authenticate_required(request)

    state = get_app_state()
    if state.submission_review is None:
        msg = "SubmissionReview not initialized"
        raise RuntimeError(msg)

    submission = await state.submission_review.approve(submission_id, caller.user_id)
    return JSONResponse(status_code=200, content=submission.to_dict())


@router.post("/submissions/{submission_id}/reject")
async def reject_submission(submission_id: str, request: Request) -> JSONResponse:
    """Reject a submission."""
    caller = await authenticate_required(request)

    state = get_app_state()
    if state.submission_review is None:
        msg = "SubmissionReview not initialized"
        raise RuntimeError(msg)

    submission = await state.submission_review.reject(submission_id, caller.user_id)
    return JSONResponse(status_code=200, content=submission.to_dict())


# ---------------------------------------------------------------------------
# Peer evaluation endpoint
# ---------------------------------------------------------------------------


@router.post("/submissions/{submission_id}/evaluations", status_code=201)
async def evaluate_submission(submission_id: str, request: Request) -> JSONResponse:
    """Record a peer evaluation of an AI Evaluation submission."""
    body = await request.body()
    data = parse_json_body(body)
    evaluator = await authenticate_required(request)

    state = get_app_state()
    if state.submission_review is None:
        msg = "SubmissionReview not initialized"
        raise RuntimeError(msg)

    outcome = await state.submission_review.evaluate(
        submission_id, evaluator.user_id, data.get("is_correct")
    )
    return JSONResponse(status_code=201, content=outcome.to_dict())
