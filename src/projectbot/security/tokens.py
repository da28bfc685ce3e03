from __future__ import annotations

"""Public chatbot tokens: generation and resolution.

A public token is an opaque, case-sensitive string bound to exactly one
chatbot. Nothing about its format is validated on resolution; only existence
and the owning chatbot's active flag matter.
"""

from dataclasses import dataclass, replace
from typing import Callable, Optional
import logging
import secrets
import uuid

from ..domain.errors import Unauthorized
from ..domain.models import AuthSession
from ..infrastructure.chatbot_store import ChatbotStore, get_chatbot_store


LOG = logging.getLogger("projectbot.tokens")

_TOKEN_BYTES = 9  # 12 url-safe characters
_RANDOM_ATTEMPTS = 5
_UUID_ATTEMPTS = 3


@dataclass(frozen=True)
class PublicGrant:
    """Chatbot-scoped access derived from a public token."""

    token: str
    chatbot_id: int
    chatbot_name: str
    requires_secondary_auth: bool = False
    secondary_user_id: Optional[int] = None

    def with_secondary(self, session: AuthSession) -> "PublicGrant":
        return replace(self, secondary_user_id=session.user_id)

    @property
    def satisfied(self) -> bool:
        return not self.requires_secondary_auth or self.secondary_user_id is not None


class TokenAuthority:
    def __init__(self, chatbots: Optional[ChatbotStore] = None) -> None:
        self._chatbots = chatbots or get_chatbot_store()

    def resolve(self, token: Optional[str]) -> PublicGrant:
        if not token:
            raise Unauthorized("Valid token required")
        chatbot = self._chatbots.get_by_token(token)
        # Guard against case-insensitive collations on the lookup column.
        if chatbot is None or not secrets.compare_digest(chatbot.public_token, token):
            raise Unauthorized("Valid token required")
        if not chatbot.is_active:
            raise Unauthorized("Valid token required", cause="chatbot inactive")
        return PublicGrant(
            token=token,
            chatbot_id=chatbot.id,
            chatbot_name=chatbot.name,
            requires_secondary_auth=chatbot.require_auth,
        )


def generate_public_token(exists: Callable[[str], bool]) -> str:
    """Return a token not yet bound to any chatbot.

    Tries short random tokens first, then UUIDs. If uniqueness cannot be
    checked at all (storage unavailable) an unchecked UUID is returned; the
    unique constraint on the column remains the final arbiter.
    """

    for _ in range(_RANDOM_ATTEMPTS):
        token = secrets.token_urlsafe(_TOKEN_BYTES)
        try:
            if not exists(token):
                return token
        except Exception as exc:
            LOG.warning("token_uniqueness_check_failed", extra={"err": str(exc)})
            return uuid.uuid4().hex
        LOG.info("token_collision_retry")

    for _ in range(_UUID_ATTEMPTS):
        token = uuid.uuid4().hex
        try:
            if not exists(token):
                return token
        except Exception as exc:
            LOG.warning("token_uniqueness_check_failed", extra={"err": str(exc)})
            break
    return uuid.uuid4().hex


def get_token_authority() -> TokenAuthority:
    return TokenAuthority(get_chatbot_store())
