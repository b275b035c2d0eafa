"""Stream coercion: one pipeable contract over heterogeneous stream shapes."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import AsyncIterable
from enum import IntFlag
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Protocol,
    runtime_checkable,
)

_LOGGER = logging.getLogger("apiforge")

DEFAULT_HIGH_WATER_MARK = 16 * 1024

Chunk = bytes | str


class StreamCoercionMode(IntFlag):
    NONE = 0
    INHERITS_STREAM = 0b1
    DUCK_PIPE = 0b10
    ANY = 0b111


@runtime_checkable
class Writable(Protocol):
    """Destination contract modelled on :class:`asyncio.StreamWriter`."""

    def write(self, chunk: Chunk) -> Any: ...

    async def drain(self) -> None: ...

    def end(self) -> None: ...


@runtime_checkable
class Pipeable(Protocol):
    """Source that can only push its contents into a :class:`Writable`."""

    async def pipe(self, destination: Writable, *, end: bool = True) -> None: ...


def _chunk_size(chunk: Chunk) -> int:
    return len(chunk)


class StreamIntermediary:
    """In-memory duplex stream.

    Chunks written on one side are replayed, in order, to the reader on the
    other. ``write`` never blocks; callers honour backpressure by awaiting
    :meth:`drain`, which waits while more than ``high_water_mark`` bytes are
    buffered. Reads wait until data is written or the stream is ended.
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        self.high_water_mark = high_water_mark
        self._chunks: deque[Chunk] = deque()
        self._buffered = 0
        self._ended = False
        self._error: BaseException | None = None
        self._data_ready = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._touched = asyncio.Event()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def writable(self) -> bool:
        return not self._ended and self._error is None

    @property
    def buffered(self) -> int:
        return self._buffered

    def write(self, chunk: Chunk) -> bool:
        """Buffer *chunk*; return ``False`` once the high-water mark is exceeded."""
        if self._ended:
            raise RuntimeError("write after end")
        if self._error is not None:
            raise self._error
        self._chunks.append(chunk)
        self._buffered += _chunk_size(chunk)
        self._data_ready.set()
        self._touched.set()
        if self._buffered > self.high_water_mark:
            self._drained.clear()
            return False
        return True

    async def drain(self) -> None:
        await self._drained.wait()
        if self._error is not None:
            raise self._error

    def end(self) -> None:
        self._ended = True
        self._data_ready.set()
        self._touched.set()

    def fail(self, exc: BaseException) -> None:
        """Abort the stream; pending and future reads raise *exc*."""
        self._error = exc
        self._data_ready.set()
        self._drained.set()
        self._touched.set()

    async def wait_touched(self) -> None:
        """Wait until the writer side first writes, ends or fails the stream."""
        await self._touched.wait()

    async def read(self) -> Chunk | None:
        """Return the next chunk, or ``None`` once the stream has ended.

        Chunks buffered before a failure are still delivered; the error is
        raised once the buffer is empty.
        """
        while not self._chunks:
            if self._error is not None:
                raise self._error
            if self._ended:
                return None
            self._data_ready.clear()
            await self._data_ready.wait()
        chunk = self._chunks.popleft()
        self._buffered -= _chunk_size(chunk)
        if self._buffered <= self.high_water_mark:
            self._drained.set()
        return chunk

    def __aiter__(self) -> AsyncIterator[Chunk]:
        return self

    async def __anext__(self) -> Chunk:
        chunk = await self.read()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def pipe(self, destination: Writable, *, end: bool = True) -> None:
        async for chunk in self:
            destination.write(chunk)
            await destination.drain()
        if end:
            destination.end()


class WritableBuffer:
    """Writable that accumulates everything written to it."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding
        self._parts: list[bytes] = []
        self._finished = asyncio.Event()

    def write(self, chunk: Chunk) -> bool:
        if self._finished.is_set():
            raise RuntimeError("write after end")
        if isinstance(chunk, str):
            chunk = chunk.encode(self.encoding)
        self._parts.append(bytes(chunk))
        return True

    async def drain(self) -> None:
        return None

    def end(self) -> None:
        self._finished.set()

    @property
    def writable(self) -> bool:
        return not self._finished.is_set()

    async def wait_finished(self) -> None:
        await self._finished.wait()

    def getvalue(self) -> bytes:
        return b"".join(self._parts)

    def getvalue_text(self) -> str:
        return self.getvalue().decode(self.encoding)


class CoercedStream:
    """Uniform wrapper over a coerced stream-like value."""

    _EVENTS = frozenset({"error", "end"})

    def __init__(self, source: Any) -> None:
        self.source = source
        self._listeners: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> "CoercedStream":
        if event not in self._EVENTS:
            raise ValueError(f"Unsupported stream event '{event}'")
        self._listeners[event].append(handler)
        return self

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners[event]):
            handler(*args)

    async def pipe(self, destination: Writable, *, end: bool = True) -> None:
        raise NotImplementedError

    def get_readable(self) -> AsyncIterator[Chunk]:
        raise NotImplementedError


class NativeCoercedStream(CoercedStream):
    """Wraps a value that already is an async iterable of chunks."""

    async def _iterate(self) -> AsyncIterator[Chunk]:
        try:
            async for chunk in self.source:
                yield chunk
        except Exception as exc:
            self._emit("error", exc)
            raise
        self._emit("end")

    def get_readable(self) -> AsyncIterator[Chunk]:
        return self._iterate()

    async def pipe(self, destination: Writable, *, end: bool = True) -> None:
        try:
            async for chunk in self.source:
                destination.write(chunk)
                await destination.drain()
        except Exception as exc:
            self._emit("error", exc)
            if end:
                destination.end()
            raise
        if end:
            destination.end()
        self._emit("end")


class DuckPipeCoercedStream(CoercedStream):
    """Wraps a value that can only ``pipe`` into a destination."""

    def __init__(self, source: Pipeable) -> None:
        super().__init__(source)
        self._pumps: set[asyncio.Task[None]] = set()

    async def pipe(self, destination: Writable, *, end: bool = True) -> None:
        try:
            await self.source.pipe(destination, end=end)
        except Exception as exc:
            self._emit("error", exc)
            raise
        self._emit("end")

    async def _pump(self, intermediary: StreamIntermediary) -> None:
        try:
            await self.source.pipe(intermediary, end=True)
        except Exception as exc:
            _LOGGER.error("Stream pipe into intermediary failed", exc_info=True)
            intermediary.fail(exc)
            self._emit("error", exc)
            return
        if not intermediary.ended:
            intermediary.end()
        self._emit("end")

    def get_readable(self) -> AsyncIterator[Chunk]:
        intermediary = StreamIntermediary()
        task = asyncio.ensure_future(self._pump(intermediary))
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)
        return intermediary


_COERCIONS: tuple[
    tuple[StreamCoercionMode, Callable[[Any], bool], type[CoercedStream]], ...
] = (
    (
        StreamCoercionMode.INHERITS_STREAM,
        lambda value: isinstance(value, AsyncIterable),
        NativeCoercedStream,
    ),
    (
        StreamCoercionMode.DUCK_PIPE,
        lambda value: isinstance(value, Pipeable),
        DuckPipeCoercedStream,
    ),
)


class StreamCoercer:
    @staticmethod
    def is_coercible(
        value: Any, allowed: StreamCoercionMode
    ) -> StreamCoercionMode:
        """Return the first mode in *allowed* that *value* satisfies."""
        if value is None or isinstance(value, (str, bytes, bytearray, int, float)):
            return StreamCoercionMode.NONE
        for mode, test, _ in _COERCIONS:
            if allowed & mode and test(value):
                return mode
        return StreamCoercionMode.NONE

    @staticmethod
    def coerce_with(value: Any, mode: StreamCoercionMode) -> CoercedStream | None:
        for candidate, _, wrapper in _COERCIONS:
            if mode & candidate:
                return wrapper(value)
        return None


async def collect(readable: AsyncIterable[Chunk], encoding: str = "utf-8") -> bytes:
    """Drain *readable* and return its concatenated contents."""

    parts: list[bytes] = []
    async for chunk in readable:
        parts.append(chunk.encode(encoding) if isinstance(chunk, str) else bytes(chunk))
    return b"".join(parts)


__all__ = [
    "CoercedStream",
    "DuckPipeCoercedStream",
    "NativeCoercedStream",
    "Pipeable",
    "StreamCoercer",
    "StreamCoercionMode",
    "StreamIntermediary",
    "Writable",
    "WritableBuffer",
    "collect",
]
