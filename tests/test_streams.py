"""Stream coercion and intermediary buffering."""

import asyncio

import pytest

from apiforge.streams import (
    DuckPipeCoercedStream,
    NativeCoercedStream,
    StreamCoercer,
    StreamCoercionMode,
    StreamIntermediary,
    WritableBuffer,
    collect,
)


async def _chunks(*parts: bytes):
    for part in parts:
        await asyncio.sleep(0)
        yield part


class DuckSource:
    """Object exposing only ``pipe``."""

    def __init__(self, parts: list[bytes], fail_after: int | None = None) -> None:
        self.parts = parts
        self.fail_after = fail_after

    async def pipe(self, destination, *, end: bool = True) -> None:
        for idx, part in enumerate(self.parts):
            if self.fail_after is not None and idx == self.fail_after:
                raise RuntimeError("source broke")
            destination.write(part)
            await destination.drain()
        if end:
            destination.end()


def test_is_coercible_detects_shapes() -> None:
    native = _chunks(b"a")
    assert StreamCoercer.is_coercible(native, StreamCoercionMode.ANY) is StreamCoercionMode.INHERITS_STREAM
    assert StreamCoercer.is_coercible(DuckSource([]), StreamCoercionMode.ANY) is StreamCoercionMode.DUCK_PIPE
    assert StreamCoercer.is_coercible(DuckSource([]), StreamCoercionMode.INHERITS_STREAM) is StreamCoercionMode.NONE
    assert StreamCoercer.is_coercible("text", StreamCoercionMode.ANY) is StreamCoercionMode.NONE
    assert StreamCoercer.is_coercible({"a": 1}, StreamCoercionMode.ANY) is StreamCoercionMode.NONE
    assert StreamCoercer.is_coercible(native, StreamCoercionMode.NONE) is StreamCoercionMode.NONE


def test_coerce_with_returns_wrappers() -> None:
    assert isinstance(
        StreamCoercer.coerce_with(DuckSource([]), StreamCoercionMode.DUCK_PIPE),
        DuckPipeCoercedStream,
    )
    assert isinstance(
        StreamCoercer.coerce_with(StreamIntermediary(), StreamCoercionMode.INHERITS_STREAM),
        NativeCoercedStream,
    )
    assert StreamCoercer.coerce_with(object(), StreamCoercionMode.NONE) is None


def test_duck_pipe_readable_preserves_order() -> None:
    async def main() -> list[bytes]:
        coerced = StreamCoercer.coerce_with(
            DuckSource([b"one", b"two", b"three"]), StreamCoercionMode.DUCK_PIPE
        )
        return [chunk async for chunk in coerced.get_readable()]

    assert asyncio.run(main()) == [b"one", b"two", b"three"]


def test_native_pipe_into_buffer_emits_end() -> None:
    events: list[str] = []

    async def main() -> bytes:
        coerced = StreamCoercer.coerce_with(
            _chunks(b"a", b"b"), StreamCoercionMode.INHERITS_STREAM
        )
        coerced.on("end", lambda: events.append("end"))
        buffer = WritableBuffer()
        await coerced.pipe(buffer)
        assert not buffer.writable
        return buffer.getvalue()

    assert asyncio.run(main()) == b"ab"
    assert events == ["end"]


def test_native_pipe_failure_emits_error_and_ends_destination() -> None:
    errors: list[BaseException] = []

    async def broken():
        yield b"first"
        raise ValueError("boom")

    async def main() -> WritableBuffer:
        coerced = StreamCoercer.coerce_with(broken(), StreamCoercionMode.INHERITS_STREAM)
        coerced.on("error", errors.append)
        buffer = WritableBuffer()
        with pytest.raises(ValueError):
            await coerced.pipe(buffer)
        return buffer

    buffer = asyncio.run(main())
    assert buffer.getvalue() == b"first"
    assert not buffer.writable
    assert isinstance(errors[0], ValueError)


def test_native_pipe_failure_leaves_destination_open_without_end() -> None:
    async def broken():
        yield b"first"
        raise ValueError("boom")

    async def main() -> WritableBuffer:
        coerced = StreamCoercer.coerce_with(broken(), StreamCoercionMode.INHERITS_STREAM)
        buffer = WritableBuffer()
        with pytest.raises(ValueError):
            await coerced.pipe(buffer, end=False)
        return buffer

    buffer = asyncio.run(main())
    assert buffer.getvalue() == b"first"
    assert buffer.writable


def test_duck_pipe_failure_reaches_reader() -> None:
    errors: list[BaseException] = []

    async def main() -> list[bytes]:
        coerced = StreamCoercer.coerce_with(
            DuckSource([b"x", b"y"], fail_after=1), StreamCoercionMode.DUCK_PIPE
        )
        coerced.on("error", errors.append)
        received: list[bytes] = []
        with pytest.raises(RuntimeError, match="source broke"):
            async for chunk in coerced.get_readable():
                received.append(chunk)
        return received

    assert asyncio.run(main()) == [b"x"]
    assert len(errors) == 1


def test_intermediary_backpressure() -> None:
    async def main() -> None:
        stream = StreamIntermediary(high_water_mark=4)
        assert stream.write(b"abc") is True
        assert stream.write(b"defg") is False
        drained = asyncio.ensure_future(stream.drain())
        await asyncio.sleep(0)
        assert not drained.done()
        assert await stream.read() == b"abc"
        await asyncio.wait_for(drained, 1)
        stream.end()
        assert await stream.read() == b"defg"
        assert await stream.read() is None

    asyncio.run(main())


def test_intermediary_reports_first_write() -> None:
    async def main() -> None:
        stream = StreamIntermediary()
        touched = asyncio.ensure_future(stream.wait_touched())
        await asyncio.sleep(0)
        assert not touched.done()
        stream.write("a")
        await asyncio.wait_for(touched, 1)

    asyncio.run(main())


def test_intermediary_read_waits_for_writer() -> None:
    async def main() -> bytes:
        stream = StreamIntermediary()

        async def writer() -> None:
            await asyncio.sleep(0.01)
            stream.write("late")
            stream.end()

        task = asyncio.ensure_future(writer())
        data = await collect(stream)
        await task
        return data

    assert asyncio.run(main()) == b"late"


def test_write_after_end_raises() -> None:
    async def main() -> None:
        stream = StreamIntermediary()
        stream.end()
        with pytest.raises(RuntimeError):
            stream.write(b"x")

    asyncio.run(main())
