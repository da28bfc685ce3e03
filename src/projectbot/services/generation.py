from __future__ import annotations

"""Reply generation backends and prompt assembly.

A backend exposes two coroutines-shaped calls over the same prompt: ``complete``
returns the whole reply, ``stream`` yields text fragments as the model produces
them. Timeouts and error translation are applied by the delivery engine, not
here.
"""

from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Protocol
import logging
import os
import re

from langchain_openai import ChatOpenAI

from ..domain.errors import UpstreamUnavailable
from ..domain.models import ChatMessage, Chatbot


LOG = logging.getLogger("projectbot.llm")

Prompt = List[Dict[str, str]]

HISTORY_WINDOW = 8

NOT_FOUND_REPLY = "I wasn't able to find that information in the project files or messages."

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant assigned to the {{chatbotName}} project. Your role is to provide project managers and executives with accurate, up-to-date answers about this project by referencing the following sources of information:

{{contextSources}}

Answer clearly and concisely and always cite your source. If your answer comes from:
- a document: mention the filename and, if available, the page or section.
- Slack: mention the date and approximate time of the Slack message.
{{asanaNote}}

Respond using complete sentences. If the information is unavailable, say:
"I wasn't able to find that information in the project files or messages."

Never make up information. You may summarize or synthesize details if the answer is spread across multiple sources."""

_CITATION_RE = re.compile(r"\[(?:From |Source: |Slack(?: message)?,? )?(.*?)\]")


class GenerationBackend(Protocol):
    name: str

    async def complete(self, prompt: Prompt) -> str: ...

    def stream(self, prompt: Prompt) -> AsyncIterator[str]: ...


@dataclass
class ChatContext:
    documents: List[str] = field(default_factory=list)
    slack_messages: List[str] = field(default_factory=list)
    asana_tasks: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.documents or self.slack_messages or self.asana_tasks)


class ContextProvider(Protocol):
    def get_context(self, chatbot: Chatbot, question: str) -> ChatContext: ...


class EmptyContextProvider:
    """Stands in for the document, Slack and Asana collaborators when none is wired."""

    def get_context(self, chatbot: Chatbot, question: str) -> ChatContext:
        return ChatContext()


class OpenAIBackend:
    name = "openai"

    def __init__(self, *, api_key: str, model: str, base_url: Optional[str] = None, temperature: float = 0.7) -> None:
        self.model = model
        self._llm = ChatOpenAI(api_key=api_key, base_url=base_url, model=model, temperature=temperature)

    async def complete(self, prompt: Prompt) -> str:
        LOG.debug("llm_complete", extra={"model": self.model})
        result = await self._llm.ainvoke(prompt)
        return str(result.content or "")

    async def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        LOG.debug("llm_stream", extra={"model": self.model})
        async for chunk in self._llm.astream(prompt):
            text = chunk.content
            if isinstance(text, str) and text:
                yield text


class OfflineBackend:
    """Deterministic backend for environments without model credentials."""

    name = "offline"

    def __init__(self, reply: str = NOT_FOUND_REPLY) -> None:
        self._reply = reply

    async def complete(self, prompt: Prompt) -> str:
        return self._reply

    async def stream(self, prompt: Prompt) -> AsyncIterator[str]:
        for piece in re.findall(r"\S+\s*", self._reply):
            yield piece


_override: Optional[GenerationBackend] = None


def set_generation_backend(backend: Optional[GenerationBackend]) -> None:
    """Pin the backend returned by ``get_generation_backend`` (None restores env selection)."""

    global _override
    _override = backend


def get_generation_backend() -> GenerationBackend:
    if _override is not None:
        return _override
    provider = (os.getenv("PROJECTBOT_LLM_PROVIDER") or "auto").lower()
    api_key = os.getenv("OPENAI_API_KEY")
    if provider == "offline" or (provider == "auto" and not api_key):
        return OfflineBackend()
    if provider not in ("openai", "auto"):
        raise UpstreamUnavailable("Reply generation backend unavailable", cause=f"unknown provider {provider!r}")
    if not api_key:
        raise UpstreamUnavailable("Reply generation backend unavailable", cause="OPENAI_API_KEY not configured")
    model = os.getenv("PROJECTBOT_LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o"
    return OpenAIBackend(api_key=api_key, model=model, base_url=os.getenv("OPENAI_BASE_URL"))


def build_system_prompt(chatbot: Chatbot, context: ChatContext) -> str:
    sources = [
        "1. The project's initial documentation (budget, timeline, notes, plans, spreadsheets).",
        "2. The Slack message history from the project's dedicated Slack channel.",
    ]
    has_asana = bool(context.asana_tasks or chatbot.asana_project_id)
    if has_asana:
        sources.append("3. The project's Asana tasks and their status.")
    template = chatbot.system_prompt or DEFAULT_SYSTEM_PROMPT
    prompt = (
        template.replace("{{chatbotName}}", chatbot.name)
        .replace("{{contextSources}}", "\n".join(sources))
        .replace(
            "{{asanaNote}}",
            "- Asana: mention that the information comes from Asana project tasks and include the project name."
            if has_asana
            else "",
        )
    )
    if chatbot.output_format:
        prompt += f"\n\n{chatbot.output_format}"
    return prompt


def build_prompt(
    chatbot: Chatbot,
    history: List[ChatMessage],
    context: ChatContext,
) -> Prompt:
    """Assemble the model input. ``history`` already ends with the new user message."""

    messages: Prompt = [{"role": "system", "content": build_system_prompt(chatbot, context)}]
    if not context.is_empty():
        blocks = ["Here is relevant context to help answer the question:"]
        blocks.extend(f"DOCUMENT: {doc}" for doc in context.documents)
        blocks.extend(f"SLACK MESSAGE: {msg}" for msg in context.slack_messages)
        blocks.extend(f"ASANA TASK DATA: {task}" for task in context.asana_tasks)
        messages.append({"role": "system", "content": "\n\n".join(blocks)})
    for message in history[-HISTORY_WINDOW:]:
        messages.append({"role": message.sender, "content": message.body})
    return messages


def extract_citation(text: str) -> Optional[str]:
    match = _CITATION_RE.search(text or "")
    if match and match.group(1):
        return match.group(1)
    return None
