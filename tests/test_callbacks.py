"""Callback-to-future adapter."""

import asyncio
import logging
import threading

import pytest

from apiforge.callbacks import CallbackAdapter
from apiforge.exceptions import CallbackError, TeapotError


def test_callback_result_resolves() -> None:
    async def main() -> str:
        adapter = CallbackAdapter()
        done = adapter.callback()
        return await adapter.execute(lambda: done(None, "value"))

    assert asyncio.run(main()) == "value"


def test_callback_error_raises() -> None:
    async def main() -> None:
        adapter = CallbackAdapter()
        done = adapter.callback()
        await adapter.execute(lambda: done(TeapotError()))

    with pytest.raises(TeapotError):
        asyncio.run(main())


def test_string_error_is_wrapped() -> None:
    async def main() -> None:
        adapter = CallbackAdapter()
        done = adapter.callback()
        await adapter.execute(lambda: done("went wrong"))

    with pytest.raises(CallbackError, match="went wrong"):
        asyncio.run(main())


def test_direct_return_wins_over_pending_callback() -> None:
    async def main() -> str:
        adapter = CallbackAdapter()
        adapter.callback()
        return await adapter.execute(lambda: "direct")

    assert asyncio.run(main()) == "direct"


def test_coroutine_returning_none_defers_to_callback() -> None:
    async def main() -> int:
        adapter = CallbackAdapter()
        done = adapter.callback()

        async def handler() -> None:
            loop = asyncio.get_running_loop()
            loop.call_later(0.01, done, None, 42)

        return await adapter.execute(handler)

    assert asyncio.run(main()) == 42


def test_callback_before_coroutine_finishes_wins() -> None:
    async def main() -> str:
        adapter = CallbackAdapter()
        done = adapter.callback()

        async def handler() -> str:
            done(None, "callback")
            await asyncio.sleep(0.05)
            return "returned"

        return await adapter.execute(handler)

    assert asyncio.run(main()) == "callback"


def test_sync_raise_propagates() -> None:
    async def main() -> None:
        adapter = CallbackAdapter()
        adapter.callback()

        def handler() -> None:
            raise KeyError("sync")

        await adapter.execute(handler)

    with pytest.raises(KeyError):
        asyncio.run(main())


def test_completion_from_other_thread() -> None:
    async def main() -> str:
        adapter = CallbackAdapter()
        done = adapter.callback()

        def handler() -> None:
            threading.Timer(0.01, done, args=(None, "threaded")).start()

        return await adapter.execute(handler)

    assert asyncio.run(main()) == "threaded"


def test_second_completion_is_ignored(caplog: pytest.LogCaptureFixture) -> None:
    async def main() -> str:
        adapter = CallbackAdapter()
        done = adapter.callback()

        def handler() -> None:
            done(None, "first")
            done(None, "second")

        return await adapter.execute(handler)

    with caplog.at_level(logging.WARNING, logger="apiforge"):
        assert asyncio.run(main()) == "first"
    assert "more than once" in caplog.text
