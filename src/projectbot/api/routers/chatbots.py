from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from ...domain.errors import Forbidden, NotFound
from ...domain.models import AuthSession, Chatbot, ChatbotCreate, ChatbotUpdate
from ...infrastructure.chatbot_store import ChatbotStore, get_chatbot_store
from ...security.rbac import Permission, can_access_chatbot, require_permission
from ...services.mutations import (
    ChatbotCreationStrategy,
    ResilientMutationExecutor,
    get_mutation_executor,
)
from ..errors import expose_error_detail

router = APIRouter(prefix="/chatbots", tags=["chatbots"])


def get_creation_strategy() -> ChatbotCreationStrategy:
    return ChatbotCreationStrategy()


def _owned_chatbot(chatbot_id: int, session: AuthSession, store: ChatbotStore) -> Chatbot:
    chatbot = store.get(chatbot_id)
    if chatbot is None:
        raise NotFound("Chatbot not found")
    if not can_access_chatbot(session, chatbot):
        raise Forbidden("No access to this chatbot")
    return chatbot


@router.post(
    "",
    response_model=Chatbot,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(expose_error_detail)],
)
def create_chatbot(
    req: ChatbotCreate,
    session: AuthSession = Depends(require_permission(Permission.CHATBOT_WRITE)),
    executor: ResilientMutationExecutor = Depends(get_mutation_executor),
    strategy: ChatbotCreationStrategy = Depends(get_creation_strategy),
) -> Chatbot:
    return executor.execute(strategy, req, session)


@router.get("", response_model=List[Chatbot])
def list_chatbots(
    session: AuthSession = Depends(require_permission(Permission.CHATBOT_READ)),
    store: ChatbotStore = Depends(get_chatbot_store),
) -> List[Chatbot]:
    if session.is_admin:
        return store.list()
    return store.list(owner_id=session.user_id)


@router.get("/{chatbot_id}", response_model=Chatbot)
def get_chatbot(
    chatbot_id: int,
    session: AuthSession = Depends(require_permission(Permission.CHATBOT_READ)),
    store: ChatbotStore = Depends(get_chatbot_store),
) -> Chatbot:
    return _owned_chatbot(chatbot_id, session, store)


@router.put("/{chatbot_id}", response_model=Chatbot, dependencies=[Depends(expose_error_detail)])
def update_chatbot(
    chatbot_id: int,
    req: ChatbotUpdate,
    session: AuthSession = Depends(require_permission(Permission.CHATBOT_WRITE)),
    store: ChatbotStore = Depends(get_chatbot_store),
) -> Chatbot:
    """Partial update; ``isActive: false`` revokes the public token immediately."""

    _owned_chatbot(chatbot_id, session, store)
    updated = store.update(chatbot_id, req)
    if updated is None:
        raise NotFound("Chatbot not found")
    return updated
