"""Cancellation token observed by in-flight invocations.

A transport adapter hands a token to the engine with each request and trips
it when the underlying connection closes. The pipeline checks the token at
every step boundary and stops producing output once it is cancelled.
"""

from __future__ import annotations

import threading
from typing import Callable

from .exceptions import InvocationCancelledError


class CancellationToken:
    """Thread-safe token for cancelling an invocation.

    Example:
        >>> token = CancellationToken()
        >>> token.cancel()
        >>> token.cancelled()
        True
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        """Mark the token as cancelled and notify registered callbacks.

        Callbacks run once, on the thread that cancels the token.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run *callback* when the token is cancelled, immediately if it already is."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self.cancelled():
            raise InvocationCancelledError()


__all__ = ["CancellationToken"]
