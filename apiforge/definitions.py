"""Handler, parameter and request descriptors consumed by the engine."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
)

from .cancellation import CancellationToken
from .exceptions import BodyValidationError
from .mime import MimeType, parse_mime_type


class _NotSet:
    _instance: "_NotSet | None" = None

    def __new__(cls) -> "_NotSet":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET: Any = _NotSet()

TYPE_NAMES = frozenset(
    {
        "string",
        "number",
        "boolean",
        "date",
        "object",
        "array",
        "enum",
        "union",
        "any",
        "binary",
        "function",
    }
)

HTTP_METHODS = frozenset(
    {"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"}
)


class ParamKind(str, Enum):
    QUERY = "query"
    PATH = "path"
    HEADER = "header"
    BODY = "body"
    RAW_BODY = "raw_body"
    TRANSPORT = "transport"
    DEPENDENCY = "dependency"
    CALLBACK = "callback"
    OUT = "out"


class RawBodyType(str, Enum):
    STREAM = "stream"
    TEXT = "text"
    BUFFER = "buffer"


@dataclass(frozen=True)
class TypeDescriptor:
    """Declared type of a parameter or return value.

    ``model`` is any type pydantic can build a ``TypeAdapter`` for and is
    used to validate object and array payloads. ``types`` lists union
    members, tried in order.
    """

    type: str = "any"
    model: Any = None
    element_type: "TypeDescriptor | None" = None
    types: tuple["TypeDescriptor", ...] = ()

    def __post_init__(self) -> None:
        if self.type not in TYPE_NAMES:
            raise ValueError(f"Unknown parameter type '{self.type}'")
        if self.types:
            object.__setattr__(
                self, "types", tuple(as_type_descriptor(t) for t in self.types)
            )
        if self.element_type is not None:
            object.__setattr__(
                self, "element_type", as_type_descriptor(self.element_type)
            )


def as_type_descriptor(value: "TypeDescriptor | str") -> TypeDescriptor:
    if isinstance(value, TypeDescriptor):
        return value
    return TypeDescriptor(value)


RegexSpec = str | re.Pattern[str] | Callable[[str], re.Pattern[str]]


@dataclass(frozen=True)
class ParamDescriptor:
    kind: ParamKind
    name: str
    type: TypeDescriptor = TypeDescriptor()
    index: int | None = None
    optional: bool = False
    default: Callable[[], Any] | None = None
    regex: RegexSpec | None = None
    min_value: float | None = None
    max_value: float | None = None
    enum_values: tuple[Any, ...] | None = None
    const: Any = NOT_SET
    validator: Callable[[str, Any], Any] | None = None
    binding_key: str | None = None
    raw_body_type: RawBodyType = RawBodyType.STREAM
    mime_type: str | None = None
    dependency: Any = None
    override_output: bool = False
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ParamKind(self.kind))
        object.__setattr__(self, "type", as_type_descriptor(self.type))
        if self.enum_values is not None:
            object.__setattr__(self, "enum_values", tuple(self.enum_values))
        if self.kind is ParamKind.DEPENDENCY and self.dependency is None:
            raise ValueError(
                f"Dependency parameter '{self.name}' requires a dependency reference"
            )

    @property
    def source(self) -> str:
        return self.kind.value.replace("_", " ")

    def with_index(self, index: int) -> "ParamDescriptor":
        return dataclasses.replace(self, index=index)


@dataclass(frozen=True)
class HandlerDescriptor:
    method: str
    route: str
    handler: Callable[..., Any]
    params: tuple[ParamDescriptor, ...] = ()
    return_schema: TypeDescriptor | None = None
    owner: type | None = None
    summary: str | None = None

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method '{self.method}'")
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "params", tuple(self.params))
        if self.return_schema is not None:
            object.__setattr__(
                self, "return_schema", as_type_descriptor(self.return_schema)
            )

    @property
    def key(self) -> tuple[str, str]:
        return self.method, self.route

    @property
    def ordered_params(self) -> list[ParamDescriptor]:
        return sorted(self.params, key=lambda p: p.index if p.index is not None else -1)


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class BodyContents:
    """Request body as delivered by the transport.

    The stream is consumed at most once; :meth:`read_bytes` and
    :meth:`read_text` cache the buffered contents, or the failure, for
    subsequent readers.
    """

    def __init__(
        self,
        stream: AsyncIterable[bytes] | None,
        mime_raw: str = "application/octet-stream",
        *,
        parsed: Any = NOT_SET,
        encoding: str = "utf-8",
    ) -> None:
        self.stream = stream
        self.mime_raw = mime_raw
        self.mime_type: MimeType = parse_mime_type(mime_raw)
        self.parsed = parsed
        self.encoding = encoding
        self._data: bytes | None = None
        self._error: BaseException | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_bytes(
        cls, data: bytes, mime_raw: str = "application/octet-stream"
    ) -> "BodyContents":
        return cls(_single_chunk(data), mime_raw)

    @classmethod
    def from_text(cls, text: str, mime_raw: str = "text/plain") -> "BodyContents":
        return cls.from_bytes(text.encode(), mime_raw)

    @classmethod
    def from_json(cls, value: Any, *, pre_parsed: bool = False) -> "BodyContents":
        body = cls.from_bytes(json.dumps(value).encode(), "application/json")
        if pre_parsed:
            body.parsed = value
        return body

    @property
    def has_parsed(self) -> bool:
        return self.parsed is not NOT_SET

    async def read_bytes(self) -> bytes:
        async with self._lock:
            if self._error is not None:
                raise self._error
            if self._data is not None:
                return self._data
            if self.stream is None:
                self._data = b""
                return self._data
            parts: list[bytes] = []
            try:
                async for chunk in self.stream:
                    if isinstance(chunk, str):
                        chunk = chunk.encode(self.encoding)
                    elif not isinstance(chunk, (bytes, bytearray)):
                        raise TypeError(
                            f"Unexpected chunk type: {type(chunk).__name__}"
                        )
                    parts.append(bytes(chunk))
            except Exception as exc:
                self._error = exc
                raise
            self._data = b"".join(parts)
            return self._data

    async def read_text(self) -> str:
        data = await self.read_bytes()
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise BodyValidationError(f"body is not valid {self.encoding}") from exc


@dataclass
class InvocationRequest:
    """Raw inputs of one call as supplied by a transport adapter."""

    query: dict[str, Any] = field(default_factory=dict)
    path: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, Any] = field(default_factory=dict)
    body: BodyContents | None = None
    transport: dict[str, Any] = field(default_factory=dict)
    cancellation: CancellationToken | None = None

    def __post_init__(self) -> None:
        self.query = dict(self.query)
        self.path = dict(self.path)
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        self.transport = dict(self.transport)

    def header(self, name: str, default: Any = None) -> Any:
        return self.headers.get(name.lower(), default)

    def replace(self, **changes: Any) -> "InvocationRequest":
        return dataclasses.replace(self, **changes)


def _param(kind: ParamKind, name: str, type: TypeDescriptor | str, **extras: Any) -> ParamDescriptor:
    return ParamDescriptor(kind, name, as_type_descriptor(type), **extras)


def query_param(name: str, type: TypeDescriptor | str = "string", **extras: Any) -> ParamDescriptor:
    return _param(ParamKind.QUERY, name, type, **extras)


def path_param(name: str, type: TypeDescriptor | str = "string", **extras: Any) -> ParamDescriptor:
    return _param(ParamKind.PATH, name, type, **extras)


def header_param(name: str, type: TypeDescriptor | str = "string", **extras: Any) -> ParamDescriptor:
    return _param(ParamKind.HEADER, name, type, **extras)


def body_param(name: str = "body", type: TypeDescriptor | str = "object", **extras: Any) -> ParamDescriptor:
    return _param(ParamKind.BODY, name, type, **extras)


def raw_body_param(
    name: str = "body",
    raw_body_type: RawBodyType = RawBodyType.STREAM,
    **extras: Any,
) -> ParamDescriptor:
    type = "string" if raw_body_type is RawBodyType.TEXT else "binary"
    return _param(ParamKind.RAW_BODY, name, type, raw_body_type=raw_body_type, **extras)


def transport_param(
    name: str, binding_key: str | None = None, **extras: Any
) -> ParamDescriptor:
    return _param(
        ParamKind.TRANSPORT, name, "any", binding_key=binding_key or name, **extras
    )


def dependency_param(name: str, dependency: Any, **extras: Any) -> ParamDescriptor:
    return _param(ParamKind.DEPENDENCY, name, "object", dependency=dependency, **extras)


def callback_param(name: str = "callback") -> ParamDescriptor:
    return _param(ParamKind.CALLBACK, name, "function")


def out_param(name: str = "out", *, override_output: bool = True) -> ParamDescriptor:
    return _param(ParamKind.OUT, name, "object", override_output=override_output)


__all__ = [
    "BodyContents",
    "HandlerDescriptor",
    "InvocationRequest",
    "NOT_SET",
    "ParamDescriptor",
    "ParamKind",
    "RawBodyType",
    "TypeDescriptor",
    "as_type_descriptor",
    "body_param",
    "callback_param",
    "dependency_param",
    "header_param",
    "out_param",
    "path_param",
    "query_param",
    "raw_body_param",
    "transport_param",
]
