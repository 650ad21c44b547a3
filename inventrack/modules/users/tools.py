"""User administration - profile listing and role assignment."""

from __future__ import annotations

import dataclasses
import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventrack.shared.auth import CallerIdentity
from inventrack.shared.models import Profile
from inventrack.shared.permissions import Role, has_permission, normalize_role

logger = structlog.get_logger()


class UserAdminError(Exception):
    """Base for user administration failures; carries the HTTP status to report."""

    status_code = 400


class PermissionDeniedError(UserAdminError):
    status_code = 403


class SelfRoleChangeError(UserAdminError):
    status_code = 400


class UserNotFoundError(UserAdminError):
    status_code = 404


class UserAdminTools:
    """User profiles: per-request role lookup plus admin-only management."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve_caller(self, caller: CallerIdentity) -> CallerIdentity:
        """Return ``caller`` with the role currently stored on their profile.

        Role changes made through ``update_user_role`` take effect on the
        caller's next request. Without a profile row the session claim stands.
        """
        async with self.session_factory() as session:
            stored = await session.scalar(select(Profile.role).where(Profile.id == caller.user_id))
        if stored is None:
            return caller
        role = normalize_role(stored)
        if role is not caller.role:
            logger.info(
                "caller_role_from_profile",
                user_id=str(caller.user_id),
                claimed=caller.role.value,
                role=role.value,
            )
        return dataclasses.replace(caller, role=role)

    @staticmethod
    def _require_admin(caller: CallerIdentity) -> None:
        if not has_permission(caller.role, Role.ADMIN):
            logger.warning(
                "user_admin_denied", user_id=str(caller.user_id), role=caller.role.value
            )
            raise PermissionDeniedError("Forbidden")

    async def list_users(self, caller: CallerIdentity) -> list[dict]:
        self._require_admin(caller)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Profile).order_by(Profile.created_at, Profile.email)
            )
            profiles = result.scalars().all()
        return [
            {
                "id": str(p.id),
                "email": p.email,
                "full_name": p.full_name or "",
                "role": p.role,
                "created_at": p.created_at.isoformat() if p.created_at else None,
            }
            for p in profiles
        ]

    async def update_user_role(
        self,
        caller: CallerIdentity,
        user_id: uuid.UUID,
        role: Role | str,
    ) -> dict:
        """Assign ``role`` to another user. Nobody may change their own role."""
        self._require_admin(caller)
        new_role = Role(role)
        if user_id == caller.user_id:
            logger.warning("self_role_change_blocked", user_id=str(caller.user_id))
            raise SelfRoleChangeError("Cannot change your own role")

        async with self.session_factory() as session:
            profile = await session.get(Profile, user_id)
            if profile is None:
                raise UserNotFoundError(f"User not found: {user_id}")
            previous = profile.role
            profile.role = new_role.value
            await session.commit()

        logger.info(
            "user_role_changed",
            actor=str(caller.user_id),
            user_id=str(user_id),
            previous=previous,
            role=new_role.value,
        )
        return {"success": True, "user_id": str(user_id), "role": new_role.value}
