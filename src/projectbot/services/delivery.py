from __future__ import annotations

"""Reply delivery: buffered, simulated-stream and true-stream rendering.

Generation and emission are decoupled. Each delivery starts one background
generation job that talks to the upstream backend, assembles the full reply
and persists it as a single assistant message. The caller-facing
``DeliverySession`` only reads from that job, so a caller that cancels stops
receiving chunks while the job still finishes and records the whole reply.

The three modes are three producers behind one interface; whichever is chosen,
the concatenated chunk text equals the generated reply.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Set, Tuple
import asyncio
import json
import logging
import os

from starlette.concurrency import run_in_threadpool

from ..domain.errors import Cancelled, InfrastructureFailure, ProjectBotError, UpstreamUnavailable
from ..domain.models import DELIVERY_MODES, ChatMessage
from ..infrastructure.message_store import MessageStore, get_message_store
from ..observability.metrics import DELIVERIES
from .channel import ReplyHandle
from .generation import extract_citation


LOG = logging.getLogger("projectbot.delivery")

# Strong references for jobs that outlive their caller.
_BACKGROUND_JOBS: Set["asyncio.Task[None]"] = set()


class DeliveryState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    EMITTING = "emitting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({DeliveryState.COMPLETED, DeliveryState.FAILED, DeliveryState.CANCELLED})


@dataclass
class DeliveryConfig:
    default_mode: str = "buffered"
    simulated_chunk_size: int = 24
    simulated_cadence: float = 0.03
    upstream_timeout: float = 60.0

    @staticmethod
    def from_env() -> "DeliveryConfig":
        mode = (os.getenv("PROJECTBOT_DELIVERY_MODE") or "buffered").lower()
        if mode not in DELIVERY_MODES:
            LOG.warning("unknown_delivery_mode", extra={"mode": mode})
            mode = "buffered"
        return DeliveryConfig(
            default_mode=mode,
            simulated_chunk_size=max(1, int(os.getenv("PROJECTBOT_SIMULATED_CHUNK_SIZE", "24"))),
            simulated_cadence=max(0.0, int(os.getenv("PROJECTBOT_SIMULATED_CADENCE_MS", "30")) / 1000.0),
            upstream_timeout=float(os.getenv("PROJECTBOT_UPSTREAM_TIMEOUT", "60")),
        )


@dataclass(frozen=True)
class DeliveryEvent:
    seq: int
    content: str = ""
    done: bool = False
    message_id: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if not self.done:
            return {"seq": self.seq, "content": self.content}
        payload: Dict[str, Any] = {"seq": self.seq, "done": True}
        if self.message_id is not None:
            payload["messageId"] = self.message_id
        if self.error is not None:
            payload["error"] = self.error
        if self.cancelled:
            payload["cancelled"] = True
        return payload


class GenerationJob:
    """Runs one upstream generation and persists the assembled reply."""

    def __init__(
        self,
        handle: ReplyHandle,
        messages: MessageStore,
        *,
        streaming: bool,
        timeout: float,
    ) -> None:
        self._handle = handle
        self._messages = messages
        self._streaming = streaming
        self._timeout = timeout
        self._queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self._parts: List[str] = []
        self.message: Optional[ChatMessage] = None
        self.error: Optional[ProjectBotError] = None
        self.task: Optional["asyncio.Task[None]"] = None

    @property
    def generated_text(self) -> str:
        return "".join(self._parts)

    def start(self) -> None:
        self.task = asyncio.create_task(self._run())
        _BACKGROUND_JOBS.add(self.task)
        self.task.add_done_callback(_BACKGROUND_JOBS.discard)

    async def _run(self) -> None:
        try:
            if self._streaming:
                await self._pump_stream()
            else:
                text = await asyncio.wait_for(self._handle.backend.complete(self._handle.prompt), self._timeout)
                self._parts.append(text or "")
        except asyncio.TimeoutError:
            self._fail(UpstreamUnavailable("Reply generation timed out", cause=f"no response within {self._timeout}s"))
            return
        except ProjectBotError as exc:
            self._fail(exc)
            return
        except Exception as exc:
            LOG.warning("upstream_generation_failed", extra={"chatbot_id": self._handle.chatbot.id, "err": str(exc)})
            self._fail(UpstreamUnavailable(cause=f"{type(exc).__name__}: {exc}"))
            return

        full_text = self.generated_text
        try:
            self.message = await run_in_threadpool(
                self._messages.add_message,
                self._handle.chatbot.id,
                "assistant",
                full_text,
                user_id=self._handle.user_id,
                public_token=self._handle.public_token,
                citation=extract_citation(full_text),
            )
        except Exception as exc:
            LOG.exception("assistant_reply_persist_failed", extra={"chatbot_id": self._handle.chatbot.id})
            self._fail(InfrastructureFailure("Reply could not be saved", cause=str(exc)))
            return
        self._queue.put_nowait(("done", full_text))

    async def _pump_stream(self) -> None:
        iterator = self._handle.backend.stream(self._handle.prompt).__aiter__()
        while True:
            try:
                piece = await asyncio.wait_for(iterator.__anext__(), self._timeout)
            except StopAsyncIteration:
                return
            if piece:
                self._parts.append(piece)
                self._queue.put_nowait(("chunk", piece))

    def _fail(self, error: ProjectBotError) -> None:
        self.error = error
        self._queue.put_nowait(("error", error))

    async def chunks(self) -> AsyncIterator[str]:
        """Yield upstream fragments as they arrive; raises the job's error if it fails."""

        while True:
            kind, value = await self._queue.get()
            if kind == "chunk":
                yield value
            elif kind == "done":
                return
            else:
                raise value

    async def result(self) -> str:
        async for _ in self.chunks():
            pass
        return self.generated_text


class ChunkProducer(Protocol):
    mode: str
    streaming_upstream: bool

    def pieces(self, job: GenerationJob) -> AsyncIterator[str]: ...


class BufferedProducer:
    mode = "buffered"
    streaming_upstream = False

    async def pieces(self, job: GenerationJob) -> AsyncIterator[str]:
        yield await job.result()


class SimulatedStreamProducer:
    """Re-segments a finished reply into fixed-size pieces on a fixed cadence."""

    mode = "simulated-stream"
    streaming_upstream = False

    def __init__(self, chunk_size: int, cadence: float) -> None:
        self.chunk_size = max(1, chunk_size)
        self.cadence = cadence

    async def pieces(self, job: GenerationJob) -> AsyncIterator[str]:
        text = await job.result()
        for index, start in enumerate(range(0, len(text), self.chunk_size)):
            if index and self.cadence:
                await asyncio.sleep(self.cadence)
            yield text[start : start + self.chunk_size]


class TrueStreamProducer:
    mode = "true-stream"
    streaming_upstream = True

    async def pieces(self, job: GenerationJob) -> AsyncIterator[str]:
        async for piece in job.chunks():
            yield piece


_EXHAUSTED = object()


async def _advance(pieces: AsyncIterator[str]) -> Any:
    try:
        return await pieces.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


class DeliverySession:
    """One in-flight reply. Iterate once; ``cancel`` stops further emission.

    Cancelling never touches the background generation job: the caller just
    stops receiving, and the job still records the full reply.
    """

    def __init__(
        self,
        handle: ReplyHandle,
        producer: ChunkProducer,
        messages: MessageStore,
        timeout: float,
    ) -> None:
        self.handle = handle
        self.chatbot_id = handle.chatbot.id
        self.authorization = handle.authorization
        self.mode = producer.mode
        self.state = DeliveryState.IDLE
        self.job: Optional[GenerationJob] = None
        self._producer = producer
        self._messages = messages
        self._timeout = timeout
        self._seq = 0
        self._started = False
        self._cancelled = asyncio.Event()
        self._events: Optional[AsyncIterator[DeliveryEvent]] = None

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self.state in TERMINAL_STATES:
            return
        self._cancelled.set()
        if self.state is DeliveryState.IDLE:
            # Nothing dispatched upstream yet.
            self._finish(DeliveryState.CANCELLED)

    def __aiter__(self) -> AsyncIterator[DeliveryEvent]:
        if self._started:
            raise RuntimeError("DeliverySession cannot be restarted")
        self._started = True
        self._events = self._run()
        return self._events

    async def aclose(self) -> None:
        self.cancel()
        if self._events is not None:
            await self._events.aclose()  # type: ignore[attr-defined]

    async def collect(self) -> List[DeliveryEvent]:
        return [event async for event in self]

    async def reply(self) -> ChatMessage:
        """Run the delivery to the end and return the stored assistant message.

        Raises the generation error on failure and ``Cancelled`` when the
        delivery was cancelled first.
        """

        await self.collect()
        if self.state is DeliveryState.CANCELLED:
            raise Cancelled("Reply delivery was cancelled")
        if self.job is not None and self.job.error is not None:
            raise self.job.error
        if self.job is None or self.job.message is None:
            raise InfrastructureFailure("Reply could not be saved")
        return self.job.message

    def _next(self, **fields: Any) -> DeliveryEvent:
        event = DeliveryEvent(seq=self._seq, **fields)
        self._seq += 1
        return event

    def _finish(self, state: DeliveryState) -> None:
        self.state = state
        DELIVERIES.labels(mode=self.mode, state=state.value).inc()
        LOG.info(
            "delivery_finished",
            extra={"chatbot_id": self.chatbot_id, "mode": self.mode, "state": state.value, "chunks": self._seq},
        )

    async def _next_piece(self, pieces: AsyncIterator[str]) -> Any:
        """Next producer piece, or ``_EXHAUSTED`` if cancel wins the race."""

        step = asyncio.ensure_future(_advance(pieces))
        stop = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({step, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not step.done():
                step.cancel()
        if self.cancel_requested:
            if step.done() and not step.cancelled():
                step.exception()
            return _EXHAUSTED
        return step.result()

    async def _run(self) -> AsyncIterator[DeliveryEvent]:
        if self.state is DeliveryState.CANCELLED:
            yield self._next(done=True, cancelled=True)
            return

        self.state = DeliveryState.REQUESTING
        self.job = GenerationJob(
            self.handle,
            self._messages,
            streaming=self._producer.streaming_upstream,
            timeout=self._timeout,
        )
        self.job.start()
        pieces = self._producer.pieces(self.job).__aiter__()
        try:
            while not self.cancel_requested:
                piece = await self._next_piece(pieces)
                if piece is _EXHAUSTED:
                    break
                self.state = DeliveryState.EMITTING
                yield self._next(content=piece)
        except ProjectBotError as exc:
            if not self.cancel_requested:
                self._finish(DeliveryState.FAILED)
                yield self._next(done=True, error=exc.to_dict(include_cause=False))
                return
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away mid-iteration; the job keeps running.
            if self.state not in TERMINAL_STATES:
                self._finish(DeliveryState.CANCELLED)
            raise

        if self.cancel_requested:
            self._finish(DeliveryState.CANCELLED)
            yield self._next(done=True, cancelled=True)
            return

        message = self.job.message
        self._finish(DeliveryState.COMPLETED)
        yield self._next(done=True, message_id=message.id if message else None)


class StreamingDeliveryEngine:
    def __init__(self, messages: Optional[MessageStore] = None, config: Optional[DeliveryConfig] = None) -> None:
        self._messages = messages or get_message_store()
        self.config = config or DeliveryConfig.from_env()

    def producer_for(self, mode: str) -> ChunkProducer:
        if mode == "buffered":
            return BufferedProducer()
        if mode == "simulated-stream":
            return SimulatedStreamProducer(self.config.simulated_chunk_size, self.config.simulated_cadence)
        if mode == "true-stream":
            return TrueStreamProducer()
        raise ValueError(f"Unknown delivery mode: {mode}")

    def deliver(self, handle: ReplyHandle, mode: Optional[str] = None) -> DeliverySession:
        producer = self.producer_for(mode or self.config.default_mode)
        return DeliverySession(handle, producer, self._messages, self.config.upstream_timeout)


def get_delivery_engine() -> StreamingDeliveryEngine:
    return StreamingDeliveryEngine(get_message_store())


def sse_frame(event: DeliveryEvent) -> str:
    return f"data: {json.dumps(event.to_dict())}\n\n"
