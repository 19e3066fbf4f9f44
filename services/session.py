"""Process-wide session: who is signed in, and who wants to know when that changes."""
import logging
from typing import Callable, List, Optional

from services.exceptions import Unauthenticated

logger = logging.getLogger(__name__)

SessionListener = Callable[[Optional[str]], None]


class SessionProvider:
    """Holds the current user id and notifies listeners when it changes.

    Passed explicitly to the store, the aggregator and the view model instead of
    being looked up as a global.
    """

    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id
        self._listeners: List[SessionListener] = []

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def require_user(self) -> str:
        """Returns the signed-in user id or raises Unauthenticated."""
        if self._user_id is None:
            raise Unauthenticated()
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must not be empty.")
        self._set(user_id)

    def sign_out(self) -> None:
        self._set(None)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Registers `listener` for identity changes. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return
        if user_id is None:
            logger.info(f"Session for '{self._user_id}' signed out.")
        else:
            logger.info(f"Session signed in as '{user_id}'.")
        self._user_id = user_id
        for listener in list(self._listeners):
            listener(user_id)
