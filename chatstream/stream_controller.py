"""
Generation stream controller.

Owns the single active generation of a client: opens the push channel,
applies frames to the session buffers in arrival order, keeps the live
assistant entry of the transcript up to date, and tears everything down on
a terminal frame, a transport failure, an idle timeout or a cancellation.

Every session gets a new epoch. The pump task tags each frame with the
epoch of the connection it came from, and frames from any other epoch are
dropped, so a superseded stream that is still draining cannot touch the
current session.
"""
import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, assert_never

from chatstream.config import settings
from chatstream.exceptions import (
    FrameDecodeError,
    NoActiveConversationError,
    TransportError,
    UnauthorizedError,
)
from chatstream.frames import (
    ConnectedFrame,
    ContentFrame,
    ErrorFrame,
    FinishFrame,
    Frame,
    HeartbeatFrame,
    ReasoningFrame,
    decode_frame,
)
from chatstream.models import Message
from chatstream.renderer import IncrementalRenderer
from chatstream.session_state import SessionState, Unsubscribe, subscribe
from chatstream.transcript import ConversationTranscript
from chatstream.transport import LineSource

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Generation failed"
CONNECTION_LOST_MESSAGE = "Connection lost"
TIMED_OUT_MESSAGE = "Connection timed out"


class GenerationStatus(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHING = "finishing"
    FINISHED = "finished"
    ERRORED = "errored"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({GenerationStatus.STREAMING, GenerationStatus.FINISHING})


@dataclass
class StreamOptions:
    thinking: bool = field(default_factory=lambda: settings.thinking)


@dataclass
class GenerationSession:
    conversation_id: int
    epoch: int
    status: GenerationStatus = GenerationStatus.IDLE
    thinking: bool = False
    content_buffer: str = ""
    reasoning_buffer: str = ""
    reasoning_collapsed: bool = False
    content_started: bool = False
    rendered_content: str = ""
    rendered_reasoning: str = ""
    error_message: Optional[str] = None
    message: Message = field(default_factory=lambda: Message(type="assistant", pending=True))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_output(self) -> bool:
        return bool(self.content_buffer or self.reasoning_buffer)


SessionListener = Callable[[GenerationSession], None]


class StreamController:
    """Runs at most one generation at a time against a push channel."""

    def __init__(
        self,
        state: SessionState,
        transcript: ConversationTranscript,
        channel: LineSource,
        idle_timeout: Optional[float] = None,
    ):
        self._state = state
        self._transcript = transcript
        self._channel = channel
        self._idle_timeout = idle_timeout if idle_timeout is not None else settings.stream_idle_timeout
        self._epoch = 0
        self._session: Optional[GenerationSession] = None
        self._task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._content_renderer = IncrementalRenderer()
        self._reasoning_renderer = IncrementalRenderer()
        self._status_message: Optional[str] = None
        self._update_listeners: list[SessionListener] = []
        self._ended_listeners: list[SessionListener] = []

        # Logout aborts the active generation.
        state.on_credential_cleared(self.stop)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def session(self) -> Optional[GenerationSession]:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def status_message(self) -> Optional[str]:
        """Last user-visible status (server error text, connection lost, ...)."""
        return self._status_message

    def add_update_listener(self, callback: SessionListener) -> Unsubscribe:
        return subscribe(self._update_listeners, callback)

    def add_session_ended_listener(self, callback: SessionListener) -> Unsubscribe:
        return subscribe(self._ended_listeners, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        conversation_id: Optional[int],
        prompt: Optional[str],
        options: Optional[StreamOptions] = None,
    ) -> GenerationSession:
        """Start a generation for the active conversation.

        Any running generation is torn down first. Must be called from
        within the event loop.
        """
        if conversation_id is None or conversation_id != self._state.active_conversation_id:
            raise NoActiveConversationError()
        options = options or StreamOptions()
        loop = asyncio.get_running_loop()

        previous = self._session
        if previous is not None and previous.is_active:
            # A superseded session that produced nothing leaves its
            # placeholder in place for the new session to take over.
            self._end(previous, GenerationStatus.CANCELLED, finalize=previous.has_output)

        self._epoch += 1
        session = GenerationSession(
            conversation_id=conversation_id,
            epoch=self._epoch,
            status=GenerationStatus.STREAMING,
            thinking=options.thinking,
        )
        if self._transcript.has_pending_assistant():
            self._transcript.replace_last(session.message)
        else:
            self._transcript.append(session.message)

        self._session = session
        self._status_message = None
        self._content_renderer.reset()
        self._reasoning_renderer.reset()
        self._state.is_generating = True

        task = loop.create_task(
            self._pump(session.epoch, conversation_id, prompt, options.thinking),
            name=f"generation-{conversation_id}-{session.epoch}",
        )
        self._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Generation started conversation=%s epoch=%s thinking=%s",
            conversation_id, session.epoch, options.thinking,
        )
        return session

    def stop(self) -> None:
        """Cancel the active generation. No-op when nothing is running.

        Session state, the transcript entry and ``is_generating`` are settled
        before this returns. The pump task is only cancelled here, so the
        HTTP response closes asynchronously when the task next runs; await
        ``wait_closed()`` to know the transport is released.
        """
        session = self._session
        if session is None or not session.is_active:
            return
        self._end(session, GenerationStatus.CANCELLED)

    async def wait_closed(self) -> None:
        """Wait until every pump task, including cancelled ones, has unwound."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Frame dispatch
    # ------------------------------------------------------------------

    def handle_frame(self, epoch: int, frame: Frame) -> bool:
        """Apply one frame received on the connection of ``epoch``.

        Returns False when the frame was dropped because it belongs to a
        superseded or already finished session.
        """
        session = self._session
        if session is None or epoch != self._epoch or not session.is_active:
            logger.debug("Dropping stale %s frame (epoch=%s current=%s)", frame.type, epoch, self._epoch)
            return False

        if isinstance(frame, (HeartbeatFrame, ConnectedFrame)):
            return True
        elif isinstance(frame, ReasoningFrame):
            session.reasoning_buffer += frame.content
            session.rendered_reasoning = self._reasoning_renderer(session.reasoning_buffer)
            session.message.reasoning_content = session.reasoning_buffer
            self._notify_update(session)
        elif isinstance(frame, ContentFrame):
            if not session.content_started:
                session.content_started = True
                if session.reasoning_buffer:
                    session.reasoning_collapsed = True
            session.content_buffer += frame.content
            session.rendered_content = self._content_renderer(session.content_buffer)
            session.message.content = session.content_buffer
            self._notify_update(session)
        elif isinstance(frame, FinishFrame):
            session.status = GenerationStatus.FINISHING
            self._end(session, GenerationStatus.FINISHED)
        elif isinstance(frame, ErrorFrame):
            self._fail(session, frame.message or DEFAULT_ERROR_MESSAGE)
        else:
            assert_never(frame)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _owns(self, epoch: int) -> bool:
        session = self._session
        return session is not None and session.epoch == epoch and session.is_active

    async def _pump(self, epoch: int, conversation_id: int, prompt: Optional[str], thinking: bool) -> None:
        lines = self._channel.open(
            conversation_id,
            prompt=prompt,
            token=self._state.credential,
            thinking=thinking,
        )
        try:
            async with contextlib.aclosing(lines):
                while self._owns(epoch):
                    try:
                        line = await asyncio.wait_for(anext(lines), timeout=self._idle_timeout or None)
                    except StopAsyncIteration:
                        break
                    try:
                        frame = decode_frame(line)
                    except FrameDecodeError as e:
                        logger.warning("Skipping malformed frame: %s line=%r", e, e.line[:200])
                        continue
                    if frame is not None:
                        self.handle_frame(epoch, frame)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            logger.warning("Push channel idle for %ss, giving up (epoch=%s)", self._idle_timeout, epoch)
            self._fail_transport(epoch, TIMED_OUT_MESSAGE)
        except UnauthorizedError as e:
            logger.warning("Push channel rejected credential (epoch=%s)", epoch)
            self._fail_transport(epoch, str(e))
        except TransportError as e:
            logger.warning("Push channel error (epoch=%s): %s", epoch, e)
            self._fail_transport(epoch, CONNECTION_LOST_MESSAGE)
        except Exception:
            logger.exception("Unexpected error while streaming (epoch=%s)", epoch)
            self._fail_transport(epoch, CONNECTION_LOST_MESSAGE)
        else:
            if self._owns(epoch):
                logger.warning("Push channel closed without a terminal frame (epoch=%s)", epoch)
                self._fail_transport(epoch, CONNECTION_LOST_MESSAGE)

    def _fail_transport(self, epoch: int, message: str) -> None:
        if self._owns(epoch):
            self._fail(self._session, message)

    def _fail(self, session: GenerationSession, message: str) -> None:
        session.error_message = message
        self._status_message = message
        self._end(session, GenerationStatus.ERRORED)

    def _end(self, session: GenerationSession, status: GenerationStatus, finalize: bool = True) -> None:
        """Move ``session`` to a terminal status and release its resources."""
        if finalize:
            self._finalize(session)
        session.status = status

        if session is self._session:
            task, self._task = self._task, None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
            self._state.is_generating = False

        logger.info(
            "Generation ended conversation=%s epoch=%s status=%s content=%d reasoning=%d",
            session.conversation_id, session.epoch, status.value,
            len(session.content_buffer), len(session.reasoning_buffer),
        )
        for callback in list(self._ended_listeners):
            try:
                callback(session)
            except Exception:
                logger.exception("session-ended listener failed")

    def _finalize(self, session: GenerationSession) -> None:
        """Replace the pending entry with an immutable copy of the buffers."""
        final = Message(
            type="assistant",
            conversation_id=session.conversation_id,
            content=session.content_buffer,
            reasoning_content=session.reasoning_buffer or None,
            created_at=datetime.now(timezone.utc),
        )
        if self._transcript.last is session.message:
            self._transcript.replace_last(final)
        session.message = final

    def _notify_update(self, session: GenerationSession) -> None:
        for callback in list(self._update_listeners):
            try:
                callback(session)
            except Exception:
                logger.exception("update listener failed")

