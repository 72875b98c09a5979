"""Shared request validation helpers for the escrow routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import ValidationError
from task_escrow_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_escrow_service.records import UserRecord


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ValidationError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("INVALID_JSON", "Request body is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("INVALID_JSON", "Request body must be a JSON object")

    return data


def extract_bearer_token(authorization: str | None, *, required: bool) -> str | None:
    """Extract the access token from the Authorization header."""
    if authorization is None:
        if required:
            raise ValidationError("INVALID_TOKEN", "Missing Authorization header")
        return None

    if not authorization.startswith("Bearer "):
        raise ValidationError("INVALID_TOKEN", "Authorization header must use Bearer scheme")

    token = authorization[len("Bearer ") :]
    if not token:
        raise ValidationError("INVALID_TOKEN", "Bearer token must not be empty")

    return token


async def authenticate_optional(request: Request) -> UserRecord | None:
    """Resolve the caller if an Authorization header is present."""
    token = extract_bearer_token(request.headers.get("authorization"), required=False)
    if token is None:
        return None

    state = get_app_state()
    if state.authenticator is None:
        msg = "Authenticator not initialized"
        raise RuntimeError(msg)
    return await state.authenticator.authenticate(token)


async def authenticate_required(request: Request) -> UserRecord:
    """Resolve the caller; the Authorization header is mandatory."""
    token = extract_bearer_token(request.headers.get("authorization"), required=True)

    state = get_app_state()
    if state.authenticator is None:
        msg = "Authenticator not initialized"
        raise RuntimeError(msg)
    return await state.authenticator.authenticate(str(token))


def parse_non_negative_int(raw: str | None, field_name: str, *, minimum: int) -> int | None:
    """Parse an integer query parameter with a lower bound."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError("INVALID_PAYLOAD", f"{field_name} must be an integer") from exc
    if value < minimum:
        raise ValidationError("INVALID_PAYLOAD", f"{field_name} must be >= {minimum}")
    return value


def check_device(request: Request, user: UserRecord, data: dict[str, Any] | None = None) -> None:
    """Run the device fingerprint check. The fingerprint comes from the body or a header."""
    raw = data.get("device_fingerprint") if data is not None else None
    if raw is None:
        raw = request.headers.get("x-device-fingerprint")

    state = get_app_state()
    if state.device_check is None:
        msg = "DeviceCheck not initialized"
        raise RuntimeError(msg)
    state.device_check.check(user.user_id, raw)
