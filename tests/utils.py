from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi.testclient import TestClient


class ScriptedBackend:
    """Generation backend that replays fixed chunks.

    ``fail_after`` raises ``error`` once that many chunks have been produced
    (``complete`` raises as soon as it is set). ``delay`` is slept before every
    chunk and before the failure.
    """

    name = "scripted"

    def __init__(
        self,
        chunks: Sequence[str] = (),
        *,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.error = error or RuntimeError("upstream exploded")
        self.delay = delay
        self.prompts: List[List[Dict[str, str]]] = []

    @property
    def reply(self) -> str:
        return "".join(self.chunks)

    async def complete(self, prompt):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None:
            raise self.error
        return self.reply

    async def stream(self, prompt):
        self.prompts.append(prompt)
        for index, chunk in enumerate(self.chunks):
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_after is not None and index >= self.fail_after:
                raise self.error
            yield chunk
        if self.fail_after is not None:
            raise self.error


def register(
    client: TestClient,
    username: str,
    *,
    password: str = "secret-pass",
    display_name: Optional[str] = None,
) -> Tuple[Dict[str, str], Dict[str, Any]]:
    """Register a dashboard user, returning bearer headers and the response payload."""
    body = {"username": username, "password": password, "displayName": display_name or username.title()}
    res = client.post("/api/register", json=body)
    assert res.status_code == 201, res.text
    data = res.json()
    client.cookies.clear()
    return {"Authorization": f"Bearer {data['token']}"}, data


def login(client: TestClient, username: str, password: str = "secret-pass") -> Dict[str, str]:
    res = client.post("/api/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {res.json()['token']}"}


def admin_headers(client: TestClient, username: str = "admin") -> Dict[str, str]:
    from src.projectbot.infrastructure.user_store import get_user_store

    headers, data = register(client, username, display_name="Admin User")
    get_user_store().set_role(data["id"], "admin")
    return headers


def user_headers(client: TestClient, username: str = "pm") -> Dict[str, str]:
    headers, _ = register(client, username, display_name="Project Manager")
    return headers


def create_chatbot(client: TestClient, headers: Dict[str, str], **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"name": "Riverside", "slackChannelId": "C0RIVER"}
    body.update(overrides)
    res = client.post("/api/chatbots", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def sse_events(body: str) -> List[Dict[str, Any]]:
    events = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if frame.startswith("data: "):
            events.append(json.loads(frame[len("data: ") :]))
    return events
