from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from skuid.sync.exception import OperationCancelled


class CancelToken:
    """Cooperative cancellation shared by every worker of one operation.

    A token is cancelled explicitly (`cancel()`, e.g. on Ctrl-C) or implicitly
    once its deadline passes. Child tokens add a tighter deadline and follow
    their parent's cancellation.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        parent: Optional["CancelToken"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._clock = clock
        self._parent = parent
        self._deadline = clock() + timeout if timeout is not None else None
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        if self._parent is not None and self._parent.cancelled:
            self.cancel(self._parent.reason)
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """Seconds until the nearest deadline, capped by `default`."""
        values = []
        if default is not None:
            values.append(default)
        if self._deadline is not None:
            values.append(max(0.0, self._deadline - self._clock()))
        if self._parent is not None:
            p = self._parent.remaining()
            if p is not None:
                values.append(p)
        return min(values) if values else None

    def child(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken(timeout=timeout, parent=self, clock=self._clock)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason or "cancelled")
