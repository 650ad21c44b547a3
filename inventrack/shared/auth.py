"""Session authentication for the chat and admin endpoints.

The hosted auth service issues HS256 JWTs. The caller's role lives in the
``app_metadata.role`` claim, which only the auth service can write, so the
role is never taken from request bodies or model output. The HTTP layer then
prefers the role stored on the caller's profile, see ``core.main.current_caller``.

Usage in a FastAPI route::

    from inventrack.shared.auth import CallerIdentity, require_caller

    @app.post("/chat")
    async def chat(request: ChatRequest, caller: CallerIdentity = Depends(require_caller)):
        ...
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import jwt
import structlog
from fastapi import Header, HTTPException

from inventrack.shared.config import Settings, get_settings
from inventrack.shared.permissions import Role, normalize_role

logger = structlog.get_logger()


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller. Passed explicitly into every tool invocation."""

    user_id: uuid.UUID
    role: Role
    email: str = ""


def decode_session_token(token: str, settings: Settings | None = None) -> CallerIdentity:
    """Decode and validate a session JWT, returning the caller's identity."""
    settings = settings or get_settings()
    if not settings.jwt_secret:
        raise HTTPException(status_code=503, detail="Session auth not configured")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience or None,
            options={"verify_aud": bool(settings.jwt_audience)},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        user_id = uuid.UUID(str(payload.get("sub", "")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    app_metadata = payload.get("app_metadata") or {}
    raw_role = app_metadata.get("role") if isinstance(app_metadata, dict) else None
    role = normalize_role(raw_role if raw_role is not None else settings.default_role)
    if raw_role is not None and role.value != str(raw_role).strip().lower():
        logger.warning("unknown_role_claim", user_id=str(user_id), role=str(raw_role))

    return CallerIdentity(
        user_id=user_id,
        role=role,
        email=payload.get("email", "") or "",
    )


async def require_caller(authorization: str = Header(default="")) -> CallerIdentity:
    """FastAPI dependency: extract and validate the session JWT.

    Expects: Authorization: Bearer <jwt>
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    return decode_session_token(authorization[7:])
