"""
Authentication dependencies for FastAPI.

Supports two auth modes:
1. Cookie-based session (web): httpOnly cookie contains the access token
2. Bearer token (mobile/API): Authorization header with Bearer token

The WebSocket channel passes the same access token as a ?token= query parameter.
"""

import logging
import uuid
from typing import Any

from fastapi import Cookie, Header, HTTPException
from pydantic import BaseModel

from matchchat import database, repo
from matchchat.auth.security import decode_access_token
from matchchat.config import DEV_MODE

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "matchchat_session"


class AuthErrorDetail(BaseModel):
    message: str = "unauthorized"
    reason: str
    trace_id: str


class AuthError(Exception):
    """Raised when authentication fails with detailed reason."""

    def __init__(self, reason: str, detail: str = "unauthorized"):
        self.reason = reason
        self.detail = detail
        self.trace_id = str(uuid.uuid4())
        super().__init__(detail)


def _log_auth_failure(
    reason: str,
    trace_id: str,
    token_prefix: str | None = None,
    auth_source: str | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    log_data = {
        "trace_id": trace_id,
        "reason": reason,
        "auth_source": auth_source,
        "token_prefix": token_prefix,
        "token_user_id": payload.get("sub") if payload else None,
    }
    logger.warning(f"[auth] failure {log_data}")


def _unauthorized(reason: str, trace_id: str, message: str = "unauthorized") -> HTTPException:
    detail = (
        AuthErrorDetail(message=message, reason=reason, trace_id=trace_id).model_dump()
        if DEV_MODE
        else {"message": message, "trace_id": trace_id}
    )
    return HTTPException(status_code=401, detail=detail)


def _extract_bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthError(reason="missing_token", detail="Missing Authorization header")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError(reason="malformed_token", detail="Invalid Authorization header")
    return parts[1].strip()


def _validate_token_and_get_user(token: str, trace_id: str, auth_source: str) -> dict[str, Any]:
    """Decode the token and resolve its subject to an existing user."""
    token_prefix = token[:8] + "..." if len(token) > 8 else token

    try:
        payload = decode_access_token(token)
    except HTTPException as e:
        reason = "token_expired" if "expired" in str(e.detail).lower() else "signature_invalid"
        _log_auth_failure(reason, trace_id, token_prefix, auth_source)
        raise _unauthorized(reason, trace_id)

    try:
        user_id = int(payload.get("sub", ""))
    except (TypeError, ValueError):
        _log_auth_failure("token_missing_subject", trace_id, token_prefix, auth_source, payload)
        raise _unauthorized("token_missing_subject", trace_id)

    with database.SessionLocal() as db:
        user = repo.get_user_by_id(db, user_id)
    if not user:
        _log_auth_failure("token_user_not_found", trace_id, token_prefix, auth_source, payload)
        raise _unauthorized("token_user_not_found", trace_id)

    logger.debug(f"[auth] ok user_id={user_id} source={auth_source}")
    return {"id": user["id"], "first_name": user["first_name"]}


def get_current_user(
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> dict[str, Any]:
    """
    Get current user from cookie session or bearer token.

    The cookie wins when both are present.
    """
    trace_id = str(uuid.uuid4())

    if session_token:
        return _validate_token_and_get_user(session_token, trace_id, "cookie")

    if authorization:
        try:
            token = _extract_bearer(authorization)
        except AuthError as e:
            _log_auth_failure(e.reason, e.trace_id, auth_source="bearer")
            raise _unauthorized(e.reason, e.trace_id, e.detail)
        return _validate_token_and_get_user(token, trace_id, "bearer")

    _log_auth_failure("missing_token", trace_id, auth_source="none")
    raise _unauthorized("missing_token", trace_id, "Authentication required")


def authenticate_websocket(token: str | None) -> dict[str, Any] | None:
    """Resolve a socket's ?token= to a user, or None when it is missing or invalid."""
    trace_id = str(uuid.uuid4())
    if not token:
        _log_auth_failure("missing_token", trace_id, auth_source="websocket")
        return None
    try:
        return _validate_token_and_get_user(token, trace_id, "websocket")
    except HTTPException:
        return None
