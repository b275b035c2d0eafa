"""Per-invocation execution context carried in a context variable."""

from __future__ import annotations

import dataclasses
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .definitions import HandlerDescriptor, InvocationRequest
from .exceptions import NoActiveInvocationError
from .responses import InvocationResult


class InvocationState(str, Enum):
    CREATED = "created"
    PARAMS_RESOLVING = "params_resolving"
    PRE_INVOKED = "pre_invoked"
    INVOKING = "invoking"
    POST_INVOKED = "post_invoked"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class ExecutionContext:
    """State of a single invocation visible to hooks and handlers."""

    handler: HandlerDescriptor
    request: InvocationRequest
    result: InvocationResult = field(default_factory=InvocationResult)
    state: InvocationState = InvocationState.CREATED

    def replace(self, **changes: Any) -> "ExecutionContext":
        return dataclasses.replace(self, **changes)


_current: ContextVar[ExecutionContext | None] = ContextVar(
    "apiforge_execution_context", default=None
)


def _begin(ctx: ExecutionContext) -> Token[ExecutionContext | None]:
    return _current.set(ctx)


def _swap(ctx: ExecutionContext) -> None:
    _current.set(ctx)


def _end(token: Token[ExecutionContext | None]) -> ExecutionContext | None:
    ctx = _current.get()
    _current.reset(token)
    return ctx


def current_context() -> ExecutionContext:
    """Return the context of the invocation running in this task."""

    ctx = _current.get()
    if ctx is None:
        raise NoActiveInvocationError("No invocation is active in this context")
    return ctx


def get_header(name: str, default: Any = None) -> Any:
    """Read a request header of the active invocation."""

    return current_context().request.header(name, default)


def set_header(name: str, value: str) -> None:
    """Set a response header on the active invocation."""

    current_context().result.set_header(name, value)


def set_status(status_code: int) -> None:
    current_context().result.status_code = status_code


__all__ = [
    "ExecutionContext",
    "InvocationState",
    "current_context",
    "get_header",
    "set_header",
    "set_status",
    "_begin",
    "_end",
    "_swap",
]
