"""Adapter turning a single ``(error, result)`` completion into an awaitable."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, TypeVar

from .exceptions import CallbackError

_LOGGER = logging.getLogger("apiforge")

T = TypeVar("T")

CompletionCallback = Callable[..., None]


def _consume(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _LOGGER.debug(
            "Handler raised after its callback completed the invocation",
            exc_info=exc,
        )


class CallbackAdapter(Generic[T]):
    """Single-resolution bridge between a callback-style handler and asyncio.

    Must be created inside a running event loop. The completion function it
    hands out may be called from any thread; only the first call counts.
    """

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future[T] = self._loop.create_future()

    @property
    def completed(self) -> bool:
        return self._future.done()

    def callback(self) -> CompletionCallback:
        def complete(error: Any = None, result: Any = None) -> None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self._complete(error, result)
            else:
                self._loop.call_soon_threadsafe(self._complete, error, result)

        return complete

    def _complete(self, error: Any, result: Any) -> None:
        if self._future.done():
            _LOGGER.warning("Completion callback invoked more than once; ignoring")
            return
        if error:
            if not isinstance(error, BaseException):
                error = CallbackError(str(error))
            self._future.set_exception(error)
        else:
            self._future.set_result(result)

    async def execute(self, func: Callable[[], Any]) -> T:
        """Run *func* and return whichever completion arrives first.

        A synchronous exception from *func* propagates unchanged. A direct
        return value of ``None`` defers to the callback.
        """
        returned = func()
        if inspect.isawaitable(returned):
            task = asyncio.ensure_future(returned)
            await asyncio.wait(
                {task, self._future}, return_when=asyncio.FIRST_COMPLETED
            )
            if self._future.done():
                if task.done():
                    _consume(task)
                else:
                    task.add_done_callback(_consume)
                return self._future.result()
            returned = task.result()
        elif self._future.done():
            return self._future.result()
        if returned is not None:
            self._future.add_done_callback(_consume)
            return returned
        return await self._future


__all__ = ["CallbackAdapter", "CompletionCallback"]
