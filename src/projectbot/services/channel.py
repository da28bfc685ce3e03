from __future__ import annotations

"""Message intake: authorization check, durable user message, reply handle.

Every message is recorded against exactly one authorization context, either a
dashboard ``AuthSession`` or a ``PublicGrant`` derived from a public token.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union
import logging

from ..domain.errors import Forbidden, NotFound, Unauthorized, ValidationConflict
from ..domain.models import AuthSession, ChatMessage, Chatbot
from ..infrastructure.chatbot_store import ChatbotStore, get_chatbot_store
from ..infrastructure.message_store import MessageStore, get_message_store
from ..security.rbac import can_access_chatbot
from ..security.tokens import PublicGrant, TokenAuthority
from .generation import (
    HISTORY_WINDOW,
    ChatContext,
    ContextProvider,
    EmptyContextProvider,
    GenerationBackend,
    Prompt,
    build_prompt,
    get_generation_backend,
)


LOG = logging.getLogger("projectbot.channel")

Authorization = Union[AuthSession, PublicGrant]


def resolve_authorization(
    authority: TokenAuthority,
    session: Optional[AuthSession],
    token: Optional[str],
) -> Authorization:
    """Pick the single authorization context for a request.

    A supplied token always wins; a dashboard session alongside it only serves
    as the secondary sign-in some chatbots require.
    """
    if token:
        grant = authority.resolve(token)
        if session is not None:
            grant = grant.with_secondary(session)
        return grant
    if session is not None:
        return session
    raise Unauthorized("Authentication required")


def attribution(authorization: Authorization) -> Tuple[Optional[int], Optional[str]]:
    """``(user_id, public_token)`` recorded on messages sent under ``authorization``."""

    if isinstance(authorization, AuthSession):
        return authorization.user_id, None
    return authorization.secondary_user_id, authorization.token


@dataclass
class ReplyHandle:
    chatbot: Chatbot
    authorization: Authorization
    user_message: ChatMessage
    prompt: Prompt
    backend: GenerationBackend

    @property
    def user_id(self) -> Optional[int]:
        return attribution(self.authorization)[0]

    @property
    def public_token(self) -> Optional[str]:
        return attribution(self.authorization)[1]


class MessageChannel:
    def __init__(
        self,
        chatbots: Optional[ChatbotStore] = None,
        messages: Optional[MessageStore] = None,
        context: Optional[ContextProvider] = None,
        backend_factory: Callable[[], GenerationBackend] = get_generation_backend,
    ) -> None:
        self._chatbots = chatbots or get_chatbot_store()
        self._messages = messages or get_message_store()
        self._context = context or EmptyContextProvider()
        self._backend_factory = backend_factory

    def authorize(self, authorization: Authorization, chatbot_id: int) -> Chatbot:
        chatbot = self._chatbots.get(chatbot_id)
        if chatbot is None:
            raise NotFound("Chatbot not found")
        if isinstance(authorization, PublicGrant):
            if authorization.chatbot_id != chatbot.id:
                raise Forbidden("Token is not valid for this chatbot")
            if not chatbot.is_active:
                raise Unauthorized("Valid token required", cause="chatbot inactive")
            if not authorization.satisfied:
                raise Unauthorized("Sign-in required for this chatbot")
            return chatbot
        if isinstance(authorization, AuthSession):
            if not can_access_chatbot(authorization, chatbot):
                raise Forbidden("No access to this chatbot")
            return chatbot
        raise Unauthorized("Authentication required")

    def submit(self, authorization: Authorization, chatbot_id: int, text: str) -> ReplyHandle:
        chatbot = self.authorize(authorization, chatbot_id)
        if not text or not text.strip():
            raise ValidationConflict("Message is required")

        user_id, token = attribution(authorization)
        # Recorded before any generation work so the input survives a failed reply.
        user_message = self._messages.add_message(
            chatbot.id,
            "user",
            text,
            user_id=user_id,
            public_token=token,
        )
        LOG.info(
            "chat_message_received",
            extra={"chatbot_id": chatbot.id, "message_id": user_message.id, "via_token": token is not None},
        )

        backend = self._backend_factory()
        history = self._messages.list_messages(chatbot.id, limit=HISTORY_WINDOW)
        prompt = build_prompt(chatbot, history, self._load_context(chatbot, text))
        return ReplyHandle(
            chatbot=chatbot,
            authorization=authorization,
            user_message=user_message,
            prompt=prompt,
            backend=backend,
        )

    def transcript(self, authorization: Authorization, chatbot_id: int) -> List[ChatMessage]:
        chatbot = self.authorize(authorization, chatbot_id)
        return self._messages.list_messages(chatbot.id)

    def _load_context(self, chatbot: Chatbot, text: str) -> ChatContext:
        try:
            return self._context.get_context(chatbot, text)
        except Exception:
            # Knowledge sources are optional; answer without them.
            LOG.exception("chat_context_unavailable", extra={"chatbot_id": chatbot.id})
            return ChatContext()


def get_message_channel() -> MessageChannel:
    return MessageChannel(get_chatbot_store(), get_message_store())
