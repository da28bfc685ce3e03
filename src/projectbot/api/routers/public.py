from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...domain.errors import Unauthorized
from ...domain.models import PublicChatbot
from ...infrastructure.chatbot_store import ChatbotStore, get_chatbot_store
from ...security.tokens import TokenAuthority, get_token_authority

router = APIRouter(prefix="/public", tags=["public"])


@router.get("/chatbot/{token}", response_model=PublicChatbot)
def public_chatbot(
    token: str,
    authority: TokenAuthority = Depends(get_token_authority),
    chatbots: ChatbotStore = Depends(get_chatbot_store),
):
    """Resolve a share link. Unknown and deactivated tokens look the same: 404."""

    try:
        grant = authority.resolve(token)
    except Unauthorized as exc:
        return JSONResponse(status_code=404, content=exc.to_dict(include_cause=False))
    chatbot = chatbots.get(grant.chatbot_id)
    if chatbot is None:
        return JSONResponse(status_code=404, content=Unauthorized("Valid token required").to_dict())
    return PublicChatbot.model_validate(chatbot.model_dump())
