"""In-memory auth provider for tests and the command line tool."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..models import Principal
from ..ports import SessionCallback

logger = logging.getLogger(__name__)


class InMemoryAuthProvider:
    """Holds one principal and notifies listeners when it changes.

    Callbacks run synchronously inside sign_in()/sign_out(), so they execute
    on the caller's event loop.
    """

    def __init__(self, principal: Optional[Principal] = None) -> None:
        self._principal = principal
        self._callbacks: List[SessionCallback] = []

    def current_principal(self) -> Optional[Principal]:
        return self._principal

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def sign_in(self, principal: Principal) -> None:
        self._principal = principal
        logger.info("Signed in", extra={"actor": principal.id})
        self._notify()

    async def sign_out(self) -> None:
        if self._principal is None:
            return
        logger.info("Signed out", extra={"actor": self._principal.id})
        self._principal = None
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._principal)
            except Exception:
                logger.exception("Session callback failed")

    # Testing helpers

    @property
    def listener_count(self) -> int:
        return len(self._callbacks)
