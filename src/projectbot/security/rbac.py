from __future__ import annotations

"""Role checks for dashboard sessions."""
from enum import Enum
from typing import Callable, Set
import os

from fastapi import Depends, HTTPException, status

from ..domain.models import AuthSession, Chatbot
from .auth import get_current_session


class Permission(str, Enum):
    CHATBOT_READ = "chatbot:read"
    CHATBOT_WRITE = "chatbot:write"
    ADMIN = "admin:*"


ROLE_PERMISSIONS = {
    "user": {Permission.CHATBOT_READ, Permission.CHATBOT_WRITE},
    "admin": {Permission.ADMIN},
}


def _session_permissions(session: AuthSession) -> Set[Permission]:
    return set(ROLE_PERMISSIONS.get(session.role, set()))


def is_authorized(session: AuthSession, required: Permission) -> bool:
    perms = _session_permissions(session)
    if Permission.ADMIN in perms:
        return True
    return required in perms


def can_access_chatbot(session: AuthSession, chatbot: Chatbot) -> bool:
    """Dashboard rights: admins see every chatbot, users only the ones they created."""

    if session.is_admin:
        return True
    return is_authorized(session, Permission.CHATBOT_READ) and chatbot.created_by_id == session.user_id


def emergency_roles() -> Set[str]:
    raw = os.getenv("PROJECTBOT_EMERGENCY_ROLES", "admin,user")
    return {part.strip() for part in raw.split(",") if part.strip()}


def can_use_emergency_path(session: AuthSession) -> bool:
    return session.role in emergency_roles()


def require_permission(required: Permission) -> Callable[[AuthSession], AuthSession]:
    """FastAPI dependency to enforce a single permission on a route."""

    def dependency(session: AuthSession = Depends(get_current_session)) -> AuthSession:
        if not is_authorized(session, required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return session

    return dependency
