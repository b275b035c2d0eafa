"""Invocation pipeline binding registered handlers to inbound calls."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import types
from typing import Any, Awaitable, Callable

from .config import Settings, configure_logging, load_settings
from .context import (
    ExecutionContext,
    InvocationState,
    _begin,
    _end,
    _swap,
)
from .context import get_header as _get_header
from .context import set_header as _set_header
from .context import set_status as _set_status
from .definitions import HandlerDescriptor, InvocationRequest
from .dependency import DependencyGraph, DependencyNode
from .exceptions import HTTPError, InvocationCancelledError, NotFoundError
from .hooks import Hook, HookChain, HookPhase, InvocationHooks
from .params import ParameterResolver, ResolvedArguments
from .registry import HandlerRegistry
from .responses import HTTP_500_INTERNAL_SERVER_ERROR, InvocationResult
from .streams import StreamCoercer, StreamCoercionMode, StreamIntermediary

_LOGGER = logging.getLogger("apiforge")

HandlerTarget = HandlerDescriptor | tuple[str, str]


class ManagedApi:
    """Run registered handlers through hooks, parameter resolution and error mapping."""

    def __init__(
        self,
        registry: HandlerRegistry,
        graph: DependencyGraph | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.registry = registry
        self.graph = graph if graph is not None else DependencyGraph()
        self.settings = settings if settings is not None else load_settings()
        self.hooks = HookChain()
        self.resolver = ParameterResolver(
            self.graph,
            stream_mode=self.settings.stream_coercion,
            validate_parsed_body=self.settings.validate_parsed_body,
        )
        self._instances: dict[type, Any] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._writers: set[asyncio.Task[Any]] = set()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Freeze the registry and construct every handler-owning component."""

        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            configure_logging(self.settings)
            self.registry.freeze()
            for owner in self.registry.owners:
                if owner in self.graph:
                    self._instances[owner] = await self.graph.resolve(owner)
                else:
                    self._instances[owner] = owner()
            self._initialized = True
            _LOGGER.debug(
                "Initialized %d handlers across %d components",
                len(self.registry),
                len(self._instances),
            )

    def add_hook(self, phase: HookPhase | str, hook: Hook) -> None:
        self.hooks.add(phase, hook)

    def remove_hook(self, phase: HookPhase | str, hook: Hook) -> bool:
        return self.hooks.remove(phase, hook)

    def add_hooks(self, hooks: InvocationHooks) -> None:
        """Attach every phase of *hooks*; post-invoke and error hooks nest around earlier ones."""
        self.hooks.add(HookPhase.PRE_INVOKE, hooks.before_invoke)
        self.hooks.add(HookPhase.POST_INVOKE, hooks.after_invoke, first=True)
        self.hooks.add(HookPhase.ERROR, hooks.on_error, first=True)

    def add_dependency(
        self,
        reference: Any,
        factory: Callable[..., Any] | None = None,
        dependencies: Any = None,
    ) -> DependencyNode:
        return self.graph.add_dependency(reference, factory, dependencies)

    def get_handler(self, method: str, route: str) -> HandlerDescriptor:
        descriptor = self.registry.lookup(method, route)
        if descriptor is None:
            raise NotFoundError(f"No handler registered for {method.upper()} {route}")
        return descriptor

    @staticmethod
    def get_header(name: str, default: Any = None) -> Any:
        return _get_header(name, default)

    @staticmethod
    def set_header(name: str, value: str) -> None:
        _set_header(name, value)

    @staticmethod
    def set_status(status_code: int) -> None:
        _set_status(status_code)

    async def invoke(
        self,
        target: HandlerTarget,
        request: InvocationRequest | None = None,
    ) -> InvocationResult:
        """Run one call of *target* and return its normalized result."""

        if not self._initialized:
            await self.init()
        request = request if request is not None else InvocationRequest()
        try:
            descriptor = (
                target
                if isinstance(target, HandlerDescriptor)
                else self.get_handler(*target)
            )
        except HTTPError as exc:
            return self._error_result(exc)
        ctx = ExecutionContext(descriptor, request)
        token = _begin(ctx)
        try:
            return await self._run(ctx)
        finally:
            _end(token)

    async def _run(self, ctx: ExecutionContext) -> InvocationResult:
        try:
            self._check_cancelled(ctx)
            ctx = await self.hooks.run_pre(ctx)
            _swap(ctx)
            ctx.state = InvocationState.PRE_INVOKED
            self._check_cancelled(ctx)

            ctx.state = InvocationState.PARAMS_RESOLVING
            resolved = await self.resolver.resolve_arguments(ctx.handler, ctx.request)
            self._check_cancelled(ctx)

            ctx.state = InvocationState.INVOKING
            value = await self._observe_cancellation(
                ctx, self._invoke_handler(ctx, resolved)
            )
            self._check_cancelled(ctx)
            self._apply_return(ctx, value, resolved)

            ctx.state = InvocationState.POST_INVOKED
            ctx.result = await self.hooks.run_post(ctx)
            ctx.state = InvocationState.COMPLETED
            return ctx.result
        except Exception as exc:
            ctx.state = InvocationState.FAILED
            ctx.result = self._map_error(ctx, exc)
            await self.hooks.run_error(ctx)
            return ctx.result

    @staticmethod
    def _check_cancelled(ctx: ExecutionContext) -> None:
        token = ctx.request.cancellation
        if token is not None:
            token.raise_if_cancelled()

    def _bound_handler(self, descriptor: HandlerDescriptor) -> Callable[..., Any]:
        if descriptor.owner is None:
            return descriptor.handler
        return types.MethodType(descriptor.handler, self._instances[descriptor.owner])

    async def _call_handler(
        self, ctx: ExecutionContext, resolved: ResolvedArguments
    ) -> Any:
        func = self._bound_handler(ctx.handler)

        def call() -> Any:
            return func(*resolved.args)

        if resolved.adapter is not None:
            return await resolved.adapter.execute(call)
        value = call()
        if inspect.isawaitable(value):
            value = await value
        return value

    async def _invoke_handler(
        self, ctx: ExecutionContext, resolved: ResolvedArguments
    ) -> Any:
        if resolved.override is None:
            return await self._call_handler(ctx, resolved)
        return await self._publish_on_first_write(ctx, resolved, resolved.override)

    async def _publish_on_first_write(
        self,
        ctx: ExecutionContext,
        resolved: ResolvedArguments,
        out: StreamIntermediary,
    ) -> Any:
        """Return once the handler finishes or first writes to, ends or fails *out*.

        A handler still running at that point keeps writing in the background
        while the transport consumes the stream; a later failure fails *out*.
        """
        task = asyncio.ensure_future(self._call_handler(ctx, resolved))
        touched = asyncio.ensure_future(out.wait_touched())
        try:
            await asyncio.wait({task, touched}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            touched.cancel()
        if task.done():
            return task.result()
        self._writers.add(task)
        task.add_done_callback(functools.partial(self._writer_done, ctx.handler, out))
        return None

    def _writer_done(
        self,
        descriptor: HandlerDescriptor,
        out: StreamIntermediary,
        task: asyncio.Task[Any],
    ) -> None:
        self._writers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        _LOGGER.error(
            "Handler %s %s failed while streaming its output",
            *descriptor.key,
            exc_info=exc,
        )
        if out.writable:
            out.fail(exc)

    async def _observe_cancellation(
        self, ctx: ExecutionContext, awaitable: Awaitable[Any]
    ) -> Any:
        token = ctx.request.cancellation
        if token is None:
            return await awaitable
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)

        def cancel() -> None:
            if not task.done():
                loop.call_soon_threadsafe(task.cancel)

        token.on_cancel(cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled() and task.cancelled():
                raise InvocationCancelledError() from None
            raise

    def _apply_return(
        self, ctx: ExecutionContext, value: Any, resolved: ResolvedArguments
    ) -> None:
        if resolved.override is not None:
            value = resolved.override
        mode = StreamCoercer.is_coercible(value, self.settings.stream_coercion)
        if mode != StreamCoercionMode.NONE:
            ctx.result.as_stream(StreamCoercer.coerce_with(value, mode), mode)
        else:
            ctx.result.body = value

    def _error_result(self, exc: HTTPError) -> InvocationResult:
        body = exc.message if self.settings.surface_errors else ""
        return InvocationResult(status_code=exc.status_code, body=body)

    def _map_error(self, ctx: ExecutionContext, exc: Exception) -> InvocationResult:
        if isinstance(exc, HTTPError):
            _LOGGER.debug(
                "Invocation of %s %s failed with %d: %s",
                *ctx.handler.key,
                exc.status_code,
                exc.message,
            )
            return self._error_result(exc)
        if self.settings.raise_errors:
            raise exc
        _LOGGER.error(
            "Unhandled exception in handler %s %s",
            *ctx.handler.key,
            exc_info=exc,
        )
        return InvocationResult(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            body="Internal Server Error",
        )


__all__ = ["ManagedApi"]
