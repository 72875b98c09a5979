"""User reputation endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_escrow_service.core.exceptions import NotFoundError
from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import ReputationResponse

router = APIRouter()


@router.get("/users/{user_id}/reputation", response_model=ReputationResponse)
async def get_reputation(user_id: str) -> ReputationResponse:
    """Look up a user's current reputation score."""
    state = get_app_state()
    if state.reputation is None:
        msg = "ReputationAdjuster not initialized"
        raise RuntimeError(msg)

    score = state.reputation.get_score(user_id)
    if score is None:
        raise NotFoundError("USER_NOT_FOUND", "User not found", {"user_id": user_id})
    return ReputationResponse(user_id=user_id, reputation_score=score)
