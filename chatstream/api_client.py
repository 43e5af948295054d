"""
REST client for the conversation, message and auth endpoints.
"""
import logging
from typing import Any, List, Optional

import httpx

from chatstream.config import settings
from chatstream.exceptions import APIError, UnauthorizedError
from chatstream.models import Conversation, LoginResponse, Message, MessageType, User
from chatstream.session_state import SessionState

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response, body: Any) -> str:
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, dict):
            message = message.get("message")
        detail = message or body.get("error") or body.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    return response.reason_phrase or f"HTTP {response.status_code}"


def unwrap(response: httpx.Response) -> Any:
    """Return the ``data`` payload of a response or raise APIError."""
    try:
        body = response.json()
    except ValueError:
        body = {}

    if response.status_code == 401:
        raise UnauthorizedError()
    if response.is_error or (isinstance(body, dict) and body.get("success") is False):
        raise APIError(_error_message(response, body), status_code=response.status_code)

    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _items(payload: Any) -> List[dict]:
    if isinstance(payload, dict):
        return payload.get("items") or []
    return payload or []


class ChatAPI:
    """Thin async wrapper over the backend's JSON endpoints.

    The bearer credential is read from the SessionState on every request,
    so login/logout take effect without rebuilding the client.
    """

    def __init__(
        self,
        state: SessionState,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._state = state
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def connect(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.connect_timeout)
            self._owns_client = True

    async def disconnect(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._state.credential:
            headers["Authorization"] = f"Bearer {self._state.credential}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        await self.connect()
        logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(
                method, self.base_url + path, headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as e:
            raise APIError(f"Request failed: {e}") from e
        return unwrap(response)

    # Auth

    async def login(self, email: str, password: str) -> LoginResponse:
        data = await self._request("POST", "/auth/login", json={"email": email, "password": password})
        return LoginResponse.model_validate(data)

    async def get_profile(self) -> User:
        return User.model_validate(await self._request("GET", "/users/profile"))

    # Conversations

    async def list_conversations(self, query: str = "") -> List[Conversation]:
        params = {"q": query} if query else None
        data = await self._request("GET", "/conversations", params=params)
        return [Conversation.model_validate(item) for item in _items(data)]

    async def create_conversation(self, name: str) -> Conversation:
        data = await self._request("POST", "/conversations", json={"name": name})
        return Conversation.model_validate(data)

    async def rename_conversation(self, conversation_id: int, name: str) -> Conversation:
        data = await self._request("PUT", f"/conversations/{conversation_id}", json={"name": name})
        return Conversation.model_validate(data)

    async def delete_conversation(self, conversation_id: int) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # Messages

    async def list_messages(self, conversation_id: int) -> List[Message]:
        data = await self._request("GET", f"/messages/conversation/{conversation_id}")
        return [Message.model_validate(item) for item in _items(data)]

    async def create_message(
        self, conversation_id: int, content: str, type: MessageType = "user"
    ) -> Message:
        data = await self._request(
            "POST",
            "/messages",
            json={"conversationId": conversation_id, "content": content, "type": type},
        )
        return Message.model_validate(data)
