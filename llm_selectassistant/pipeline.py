"""Streaming chat pipeline.

Turns a submission (history, optional selection context, optional session
id) into a provider call, relays fragments as they arrive, and persists
the transcript:

1. No API key: fail with AUTH_MISSING, nothing written or sent.
2. No session id: create one and emit session_created first.
3. Persist the latest user message before calling the provider.
4. Stream fragments to the caller, accumulating them in memory.
5. On completion persist the full assistant message, emit done.
6. On failure discard the partial text, emit error.

Submissions against one session are queued and handled one at a time by
a per-session worker, so persisted turns and streamed chunks of two
submissions never interleave.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .config import WORKER_IDLE_MINUTES
from .errors import AuthMissingError, ErrorCode, ProviderError, StorageUnavailableError
from .prompts import build_conversation
from .provider import ChatProvider, provider_for
from .settings import SecretStore, Settings
from .store import ROLE_ASSISTANT, ROLE_USER, ConversationStore, derive_title

logger = logging.getLogger(__name__)


@dataclass
class ChatEvent:
    """One event of a submission's event stream."""
    type: str  # session_created | chunk | done | error
    content: str = ""
    session_id: Optional[int] = None
    code: Optional[str] = None

    TERMINAL = ("done", "error")

    @property
    def terminal(self) -> bool:
        return self.type in self.TERMINAL

    @classmethod
    def session_created(cls, session_id: int) -> "ChatEvent":
        return cls("session_created", session_id=session_id)

    @classmethod
    def chunk(cls, text: str) -> "ChatEvent":
        return cls("chunk", content=text)

    @classmethod
    def done(cls) -> "ChatEvent":
        return cls("done")

    @classmethod
    def error(cls, code: str, message: str) -> "ChatEvent":
        return cls("error", content=message, code=code)

    def to_dict(self) -> dict:
        """NDJSON form of the event."""
        if self.type == "session_created":
            return {"type": self.type, "session_id": self.session_id}
        if self.type == "chunk":
            return {"type": self.type, "content": self.content}
        if self.type == "error":
            return {"type": self.type, "code": self.code, "message": self.content}
        return {"type": self.type}


@dataclass(frozen=True)
class Idle:
    """No submission is being processed for the session."""


@dataclass(frozen=True)
class Streaming:
    """A submission is being processed for the session."""
    request_id: str


SessionState = Union[Idle, Streaming]
IDLE = Idle()


class ChatSubmission:
    """Event stream of a single submission.

    Iterate with ``async for``; iteration ends after the terminal done or
    error event. ``cancel()`` ends the stream with a CANCELLED error.
    """

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self.session_id: Optional[int] = None
        self.finished = False
        self._events: asyncio.Queue = asyncio.Queue()
        self._exhausted = False
        self._tasks: List[asyncio.Task] = []

    def emit(self, event: ChatEvent) -> None:
        """Queue an event; anything after the terminal event is dropped."""
        if self.finished:
            return
        if event.terminal:
            self.finished = True
        self._events.put_nowait(event)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.append(task)

    def cancel(self, message: str = "Request cancelled") -> None:
        if self.finished:
            return
        self.emit(ChatEvent.error(ErrorCode.CANCELLED, message))
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def __aiter__(self) -> "ChatSubmission":
        return self

    async def __anext__(self) -> ChatEvent:
        if self._exhausted:
            raise StopAsyncIteration
        event = await self._events.get()
        if event.terminal:
            self._exhausted = True
        return event

    async def collect(self) -> List[ChatEvent]:
        """Drain the stream into a list (terminal event included)."""
        return [event async for event in self]


@dataclass
class ChatJob:
    """A queued submission for an already resolved session."""
    session_id: int
    messages: List[Dict[str, str]]
    context: Optional[str]
    settings: Settings
    submission: ChatSubmission
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class ChatPipeline:
    """Per-session serialized streaming chat."""

    def __init__(
        self,
        store: ConversationStore,
        secrets: SecretStore,
        provider_factory: Callable[[Settings], ChatProvider] = provider_for,
        system_prompt: Optional[str] = None,
        worker_idle_seconds: float = WORKER_IDLE_MINUTES * 60,
    ):
        self.store = store
        self.secrets = secrets
        self.provider_factory = provider_factory
        self.system_prompt = system_prompt
        self.worker_idle_seconds = worker_idle_seconds

        # Per-session request queues, each drained by one worker
        self.request_queues: Dict[int, asyncio.Queue] = {}
        self.workers: Dict[int, asyncio.Task] = {}
        self.states: Dict[int, SessionState] = {}
        self._current: Dict[int, ChatJob] = {}

    def session_state(self, session_id: int) -> SessionState:
        return self.states.get(session_id, IDLE)

    def streaming_sessions(self) -> Dict[int, str]:
        return {
            sid: state.request_id
            for sid, state in self.states.items()
            if isinstance(state, Streaming)
        }

    def submit(
        self,
        messages: List[Dict[str, str]],
        context: Optional[str] = None,
        session_id: Optional[int] = None,
    ) -> ChatSubmission:
        """Start a submission and return its event stream.

        Must be called from the running event loop. Submissions are queued
        in call order.
        """
        submission = ChatSubmission()
        task = asyncio.create_task(self._start(submission, list(messages), context, session_id))
        submission._track(task)
        return submission

    async def _start(
        self,
        submission: ChatSubmission,
        messages: List[Dict[str, str]],
        context: Optional[str],
        session_id: Optional[int],
    ) -> None:
        """Check credentials, resolve the session, queue the job."""
        settings = self.secrets.get_settings()
        if not settings.api_key:
            error = AuthMissingError()
            submission.emit(ChatEvent.error(error.code, error.message))
            return

        if not session_id:
            latest_user = next(
                (m.get("content") for m in reversed(messages) if m.get("role") == ROLE_USER),
                None,
            )
            try:
                session_id = self.store.create_session(derive_title(latest_user))
            except StorageUnavailableError as e:
                submission.emit(ChatEvent.error(e.code, e.message))
                return
            logger.info("Created session %s for request %s", session_id, submission.request_id)
            submission.session_id = session_id
            submission.emit(ChatEvent.session_created(session_id))
        else:
            submission.session_id = session_id

        self._queue_job(ChatJob(
            session_id=session_id,
            messages=messages,
            context=context,
            settings=settings,
            submission=submission,
        ))

    def _queue_job(self, job: ChatJob) -> None:
        sid = job.session_id
        if sid not in self.request_queues:
            self.request_queues[sid] = asyncio.Queue()
            self.workers[sid] = asyncio.create_task(self._worker(sid))
        self.request_queues[sid].put_nowait(job)

    async def _worker(self, sid: int) -> None:
        """Per-session worker that processes submissions sequentially."""
        queue = self.request_queues[sid]

        try:
            while True:
                try:
                    job = await asyncio.wait_for(queue.get(), timeout=self.worker_idle_seconds)
                except asyncio.TimeoutError:
                    if queue.empty():
                        break
                    continue

                if job.submission.finished:
                    continue

                self.states[sid] = Streaming(job.submission.request_id)
                self._current[sid] = job
                job.task = asyncio.create_task(self._process(job))
                job.submission._track(job.task)
                try:
                    await asyncio.wait({job.task})
                except asyncio.CancelledError:
                    job.task.cancel()
                    job.submission.emit(ChatEvent.error(ErrorCode.CANCELLED, "Pipeline shut down"))
                    raise
                finally:
                    self.states[sid] = IDLE
                    self._current.pop(sid, None)

                if job.task.cancelled():
                    job.submission.emit(ChatEvent.error(ErrorCode.CANCELLED, "Request cancelled"))
                elif job.task.exception() is not None:
                    e = job.task.exception()
                    logger.error("Unexpected failure in request %s: %s", job.submission.request_id, e)
                    job.submission.emit(ChatEvent.error(ErrorCode.INTERNAL, str(e)))
        finally:
            self.request_queues.pop(sid, None)
            self.workers.pop(sid, None)
            self.states.pop(sid, None)

    async def _process(self, job: ChatJob) -> None:
        """Persist the user turn, stream the answer, persist the reply."""
        sid = job.session_id
        submission = job.submission

        if not self.store.session_exists(sid):
            submission.emit(ChatEvent.error(ErrorCode.CANCELLED, f"Session {sid} no longer exists"))
            return

        last = job.messages[-1] if job.messages else None
        if last and last.get("role") == ROLE_USER:
            try:
                self.store.add_message(sid, ROLE_USER, last.get("content", ""))
            except StorageUnavailableError as e:
                submission.emit(ChatEvent.error(e.code, e.message))
                return

        conversation = build_conversation(job.messages, job.context, self.system_prompt)

        fragments: List[str] = []
        try:
            provider = self.provider_factory(job.settings)
            async for fragment in provider.stream_chat(conversation):
                if not fragment:
                    continue
                fragments.append(fragment)
                submission.emit(ChatEvent.chunk(fragment))
        except Exception as e:
            logger.error("LLM Error (session %s): %s", sid, e)
            error = ProviderError(str(e) or "Unknown LLM Error")
            submission.emit(ChatEvent.error(error.code, error.message))
            return

        try:
            self.store.add_message(sid, ROLE_ASSISTANT, "".join(fragments))
        except StorageUnavailableError as e:
            submission.emit(ChatEvent.error(e.code, e.message))
            return

        submission.emit(ChatEvent.done())

    def cancel_session(self, session_id: int, reason: str = "Session deleted") -> int:
        """Cancel queued and in-flight submissions for a session.

        Returns:
            Number of submissions cancelled
        """
        cancelled = 0
        queue = self.request_queues.get(session_id)
        if queue is not None:
            while not queue.empty():
                job = queue.get_nowait()
                if not job.submission.finished:
                    job.submission.cancel(reason)
                    cancelled += 1

        job = self._current.get(session_id)
        if job is not None and not job.submission.finished:
            job.submission.cancel(reason)
            cancelled += 1

        if cancelled:
            logger.info("Cancelled %d request(s) for session %s", cancelled, session_id)
        return cancelled

    def cancel_all(self, reason: str = "History cleared") -> int:
        return sum(self.cancel_session(sid, reason) for sid in list(self.request_queues))

    async def close(self) -> None:
        """End every queued and in-flight submission, then stop the workers."""
        self.cancel_all("Pipeline shut down")
        workers = list(self.workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
