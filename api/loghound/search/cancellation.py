from __future__ import annotations
import asyncio
from typing import List, Optional

USER_INTERRUPT = "cancelled by request"
LIMIT_REACHED = "global limit reached"
CONSUMER_CLOSED = "result stream closed"


class CancelToken:
    """Cooperative, idempotent cancellation signal.

    Cancelling is synchronous and may happen from any coroutine on the
    loop; the first reason wins. Children created with ``child()`` are
    cancelled together with their parent but not the other way round.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._children: List["CancelToken"] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def cancel(self, reason: str = USER_INTERRUPT) -> bool:
        """Fire the signal. Returns False when it had already fired."""
        if self._reason is not None:
            return False
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for child in self._children:
            child.cancel(reason)
        return True

    async def wait(self) -> str:
        """Suspend until the token fires."""
        if self._reason is None:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        return self._reason

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; returns True if cancelled meanwhile."""
        if self.cancelled:
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.cancelled}, reason={self._reason!r})"
