"""
Client session state: credential, active conversation and the generation flag.

Other components subscribe to changes through explicit hooks instead of a
global event bus.
"""
import logging
from typing import Callable, Optional

from chatstream.models import User

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


def subscribe(listeners: list, callback) -> Unsubscribe:
    listeners.append(callback)

    def unsubscribe() -> None:
        if callback in listeners:
            listeners.remove(callback)

    return unsubscribe


class SessionState:
    """Holds who is logged in, which conversation is open and whether a reply is streaming.

    Only login()/clear() write the credential. Only the stream controller
    writes is_generating.
    """

    def __init__(self, credential: Optional[str] = None, active_conversation_id: Optional[int] = None):
        self._credential = credential
        self._user: Optional[User] = None
        self.active_conversation_id = active_conversation_id
        self._is_generating = False
        self._credential_cleared: list[Callable[[], None]] = []
        self._generating_changed: list[Callable[[bool], None]] = []

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @is_generating.setter
    def is_generating(self, value: bool) -> None:
        if value == self._is_generating:
            return
        self._is_generating = value
        for callback in list(self._generating_changed):
            try:
                callback(value)
            except Exception:
                logger.exception("generating-changed listener failed")

    def login(self, credential: str, user: Optional[User] = None) -> None:
        self._credential = credential
        self._user = user

    def clear(self) -> None:
        """Log out: drop the credential and the active conversation.

        Credential-cleared listeners run first so an active generation is
        torn down before the state is reset.
        """
        self._credential = None
        self._user = None
        for callback in list(self._credential_cleared):
            try:
                callback()
            except Exception:
                logger.exception("credential-cleared listener failed")
        self.active_conversation_id = None
        self.is_generating = False

    def on_credential_cleared(self, callback: Callable[[], None]) -> Unsubscribe:
        return subscribe(self._credential_cleared, callback)

    def on_generating_changed(self, callback: Callable[[bool], None]) -> Unsubscribe:
        return subscribe(self._generating_changed, callback)
