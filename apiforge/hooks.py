"""Pre-invoke, post-invoke and error hooks run around every handler call."""

from __future__ import annotations

import inspect
import json
import logging
import time
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Any, Callable

from .context import ExecutionContext
from .responses import InvocationResult

_LOGGER = logging.getLogger("apiforge")

Hook = Callable[[ExecutionContext], Any]


class HookPhase(str, Enum):
    PRE_INVOKE = "handler-preinvoke"
    POST_INVOKE = "handler-postinvoke"
    ERROR = "handler-error"

    @classmethod
    def _missing_(cls, value: object) -> "HookPhase | None":
        if isinstance(value, str):
            return _PHASE_ALIASES.get(value.lower())
        return None


_PHASE_ALIASES = {
    "pre-invoke": HookPhase.PRE_INVOKE,
    "post-invoke": HookPhase.POST_INVOKE,
    "error": HookPhase.ERROR,
}


async def _call(hook: Hook, ctx: ExecutionContext) -> Any:
    outcome = hook(ctx)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


class HookChain:
    """Ordered hooks for each phase.

    Pre-invoke hooks may return a replacement :class:`ExecutionContext`;
    post-invoke hooks may return a replacement :class:`InvocationResult`.
    Returning ``None`` keeps the current value. Error hooks only observe.
    """

    def __init__(self) -> None:
        self._hooks: dict[HookPhase, list[Hook]] = {
            HookPhase.PRE_INVOKE: [],
            HookPhase.POST_INVOKE: [],
            HookPhase.ERROR: [],
        }

    def add(self, phase: HookPhase | str, hook: Hook, *, first: bool = False) -> None:
        hooks = self._hooks[HookPhase(phase)]
        if first:
            hooks.insert(0, hook)
        else:
            hooks.append(hook)

    def remove(self, phase: HookPhase | str, hook: Hook) -> bool:
        hooks = self._hooks[HookPhase(phase)]
        try:
            hooks.remove(hook)
        except ValueError:
            return False
        return True

    async def run_pre(self, ctx: ExecutionContext) -> ExecutionContext:
        for hook in list(self._hooks[HookPhase.PRE_INVOKE]):
            _LOGGER.debug("Running pre-invoke hook %r for %s %s", hook, *ctx.handler.key)
            replacement = await _call(hook, ctx)
            if replacement is not None:
                if not isinstance(replacement, ExecutionContext):
                    raise TypeError(
                        "Pre-invoke hooks must return an ExecutionContext or None"
                    )
                ctx = replacement
        return ctx

    async def run_post(self, ctx: ExecutionContext) -> InvocationResult:
        for hook in list(self._hooks[HookPhase.POST_INVOKE]):
            _LOGGER.debug("Running post-invoke hook %r for %s %s", hook, *ctx.handler.key)
            replacement = await _call(hook, ctx)
            if replacement is not None:
                if not isinstance(replacement, InvocationResult):
                    raise TypeError(
                        "Post-invoke hooks must return an InvocationResult or None"
                    )
                ctx.result = replacement
        return ctx.result

    async def run_error(self, ctx: ExecutionContext) -> None:
        """Notify error hooks of a failed call; ``ctx.result`` holds the mapped result."""
        for hook in list(self._hooks[HookPhase.ERROR]):
            try:
                await _call(hook, ctx)
            except Exception:
                _LOGGER.error("Error hook %r failed", hook, exc_info=True)


class InvocationHooks:
    """Bundle of hooks registered together through ``ManagedApi.add_hooks``."""

    def before_invoke(self, ctx: ExecutionContext) -> ExecutionContext | None:
        """Hook executed before parameters are resolved."""
        return None

    def after_invoke(self, ctx: ExecutionContext) -> InvocationResult | None:
        """Hook executed after the handler produced a result."""
        return None

    def on_error(self, ctx: ExecutionContext) -> None:
        """Hook executed once a failure has been mapped to ``ctx.result``."""
        return None


class ResponseHeadersHook(InvocationHooks):
    """Add default headers to every successful result."""

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self.headers = {
            k.lower(): v
            for k, v in (headers or {"x-content-type-options": "nosniff"}).items()
        }

    def after_invoke(self, ctx: ExecutionContext) -> InvocationResult | None:
        for key, value in self.headers.items():
            ctx.result.headers.setdefault(key, value)
        return None


class RequestLoggerHook(InvocationHooks):
    """Emit one structured log record per completed invocation."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        *,
        level: int = logging.INFO,
    ) -> None:
        self.logger = logger or logging.getLogger("apiforge.request")
        self.level = level
        self._started: ContextVar[tuple[str, float] | None] = ContextVar(
            "apiforge_request_started", default=None
        )

    def before_invoke(self, ctx: ExecutionContext) -> ExecutionContext | None:
        request_id = ctx.request.header("x-request-id") or uuid.uuid4().hex
        self._started.set((request_id, time.perf_counter()))
        return None

    def after_invoke(self, ctx: ExecutionContext) -> InvocationResult | None:
        self._log(ctx)
        return None

    def on_error(self, ctx: ExecutionContext) -> None:
        self._log(ctx, failed=True)

    def _log(self, ctx: ExecutionContext, *, failed: bool = False) -> None:
        started = self._started.get()
        if started is None:
            return
        self._started.set(None)
        request_id, start = started
        duration_ms = (time.perf_counter() - start) * 1000
        payload = {
            "event": "invocation",
            "method": ctx.handler.method,
            "route": ctx.handler.route,
            "status": ctx.result.status_code,
            "request_id": request_id,
            "duration_ms": round(duration_ms, 3),
        }
        if failed:
            payload["error"] = True
        self.logger.log(self.level, json.dumps(payload, separators=(",", ":")))


__all__ = [
    "Hook",
    "HookChain",
    "HookPhase",
    "InvocationHooks",
    "RequestLoggerHook",
    "ResponseHeadersHook",
]
