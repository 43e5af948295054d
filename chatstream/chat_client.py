"""
Chat client: wires session state, transcript, REST calls and the stream controller.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from chatstream.api_client import ChatAPI
from chatstream.exceptions import APIError, ChatStreamError, UnauthorizedError
from chatstream.models import Conversation, Message, User
from chatstream.session_state import SessionState
from chatstream.stream_controller import GenerationSession, StreamController, StreamOptions
from chatstream.transcript import ConversationTranscript
from chatstream.transport import LineSource

logger = logging.getLogger(__name__)

NEW_CHAT_NAME = "New Chat"
CONVERSATION_NAME_LENGTH = 30


def conversation_name(content: str) -> str:
    """Name for a conversation created from its first message."""
    return content[:CONVERSATION_NAME_LENGTH] or NEW_CHAT_NAME


class ChatClient:
    """Everything a chat front end needs behind one object."""

    def __init__(
        self,
        api: ChatAPI,
        channel: LineSource,
        state: Optional[SessionState] = None,
        transcript: Optional[ConversationTranscript] = None,
        idle_timeout: Optional[float] = None,
    ):
        self.state = state or SessionState()
        self.transcript = transcript or ConversationTranscript()
        self.api = api
        self.controller = StreamController(self.state, self.transcript, channel, idle_timeout=idle_timeout)
        self._status: Optional[str] = None
        # True from the start of send_message until its stream has started.
        self._submitting = False
        self.controller.add_session_ended_listener(self._on_session_ended)

    @property
    def status(self) -> Optional[str]:
        """User-visible status line, e.g. an error from the last request."""
        return self._status

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> User:
        result = await self.api.login(email, password)
        self.state.login(result.access_token, result.user)
        self._status = None
        logger.info("Logged in as %s", result.user.username)
        return result.user

    def logout(self, reason: Optional[str] = None) -> None:
        self.state.clear()
        self.transcript.clear()
        self._status = reason

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def conversations(self, query: str = "") -> List[Conversation]:
        try:
            return await self.api.list_conversations(query)
        except UnauthorizedError:
            self.logout("Session expired")
            raise

    def new_chat(self) -> None:
        self.controller.stop()
        self.state.active_conversation_id = None
        self.transcript.clear()

    async def open_conversation(self, conversation_id: int) -> None:
        if self.state.active_conversation_id == conversation_id:
            return
        self.controller.stop()
        self.state.active_conversation_id = conversation_id
        self.transcript.clear()
        try:
            self.transcript.load(await self.api.list_messages(conversation_id))
        except UnauthorizedError:
            self.logout("Session expired")
            raise
        except APIError as e:
            self._status = f"Failed to load messages: {e}"
            raise

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, content: str, thinking: Optional[bool] = None) -> Optional[GenerationSession]:
        """Submit a user message and start streaming the reply.

        Returns None when nothing was sent: empty input, another submission
        or reply in progress, or a failed REST call (the reason is in
        ``status``).
        """
        content = content.strip()
        if not content or self._submitting or self.state.is_generating:
            return None

        self._submitting = True
        try:
            return await self._submit(content, thinking)
        finally:
            self._submitting = False

    async def _submit(self, content: str, thinking: Optional[bool]) -> Optional[GenerationSession]:
        self._status = None
        self.transcript.append(
            Message(type="user", content=content, created_at=datetime.now(timezone.utc))
        )

        try:
            if self.state.active_conversation_id is None:
                conversation = await self.api.create_conversation(conversation_name(content))
                self.state.active_conversation_id = conversation.id
            await self.api.create_message(self.state.active_conversation_id, content, "user")
        except UnauthorizedError:
            self.logout("Session expired")
            return None
        except APIError as e:
            logger.warning("Could not submit message: %s", e)
            self._status = str(e)
            return None

        options = StreamOptions() if thinking is None else StreamOptions(thinking=thinking)
        try:
            return self.controller.start(self.state.active_conversation_id, content, options)
        except ChatStreamError as e:
            self._status = str(e)
            return None

    def cancel(self) -> None:
        self.controller.stop()

    async def wait_for_reply(self) -> Optional[Message]:
        """Wait for the current generation to end and return the final message."""
        await self.controller.wait_closed()
        session = self.controller.session
        return session.message if session is not None else None

    def _on_session_ended(self, session: GenerationSession) -> None:
        if session.error_message:
            self._status = session.error_message
