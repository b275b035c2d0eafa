"""Normalized invocation results and status utilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .streams import StreamCoercionMode


@dataclass(slots=True)
class InvocationResult:
    """Outcome of one invocation as handed back to the transport.

    ``body`` is either a direct value (string, bytes or a structured value)
    or, when ``stream_mode`` is not ``NONE``, a stream object the transport
    pipes to the caller.
    """

    status_code: int = 200
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    stream_mode: StreamCoercionMode = StreamCoercionMode.NONE

    def __post_init__(self) -> None:
        if self.stream_mode and self.body is None:
            raise ValueError("A stream result requires a stream body")

    @property
    def is_stream(self) -> bool:
        return self.stream_mode != StreamCoercionMode.NONE

    def set_header(self, name: str, value: str) -> None:
        self.headers[name.lower()] = value

    def get_header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    def as_stream(self, body: Any, mode: StreamCoercionMode) -> None:
        """Switch the result to a stream marker for *body*."""
        if body is None or mode == StreamCoercionMode.NONE:
            raise ValueError("A stream result requires a stream body and mode")
        self.body = body
        self.stream_mode = mode


HTTP_200_OK = 200
HTTP_201_CREATED = 201
HTTP_204_NO_CONTENT = 204
HTTP_400_BAD_REQUEST = 400
HTTP_404_NOT_FOUND = 404
HTTP_415_UNSUPPORTED_MEDIA_TYPE = 415
HTTP_418_IM_A_TEAPOT = 418
HTTP_499_CLIENT_CLOSED_REQUEST = 499
HTTP_500_INTERNAL_SERVER_ERROR = 500


__all__ = [
    "InvocationResult",
    "HTTP_200_OK",
    "HTTP_201_CREATED",
    "HTTP_204_NO_CONTENT",
    "HTTP_400_BAD_REQUEST",
    "HTTP_404_NOT_FOUND",
    "HTTP_415_UNSUPPORTED_MEDIA_TYPE",
    "HTTP_418_IM_A_TEAPOT",
    "HTTP_499_CLIENT_CLOSED_REQUEST",
    "HTTP_500_INTERNAL_SERVER_ERROR",
]
