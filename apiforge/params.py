"""Resolve, coerce and validate handler parameters from a request."""

from __future__ import annotations

import inspect
import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .callbacks import CallbackAdapter
from .definitions import (
    NOT_SET,
    BodyContents,
    HandlerDescriptor,
    InvocationRequest,
    ParamDescriptor,
    ParamKind,
    RawBodyType,
    TypeDescriptor,
)
from .dependency import DependencyGraph
from .exceptions import (
    BodyValidationError,
    HTTPError,
    InvalidConstValueError,
    InvalidEnumValueError,
    InvalidParameterError,
    InvalidParameterTypeError,
    MissingBodyError,
    MissingParameterError,
    MissingTransportParameterError,
    MultipleCallbackParametersError,
    ParameterOutOfBoundsError,
    ParameterPatternMismatchError,
    TransportConfigurationError,
    UnsupportedMediaTypeError,
)
from .mime import MimeType, media_type
from .streams import StreamCoercionMode, StreamIntermediary

_LOGGER = logging.getLogger("apiforge")

_TYPE_ADAPTER_CACHE: dict[Any, TypeAdapter[Any]] = {}

_FALSE_STRINGS = {"0", "false"}

_NUMBER_RE = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|Infinity)", re.ASCII
)


def _get_type_adapter(tp: Any) -> TypeAdapter[Any]:
    """Return a cached ``TypeAdapter`` for *tp*."""

    adapter = _TYPE_ADAPTER_CACHE.get(tp)
    if adapter is None:
        adapter = TypeAdapter(tp)
        _TYPE_ADAPTER_CACHE[tp] = adapter
    return adapter


def _validate_with_type_adapter(value: Any, tp: Any) -> Any:
    """Validate *value* against *tp*, raising :class:`BodyValidationError`."""

    try:
        return _get_type_adapter(tp).validate_python(value)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ()))
        msg = first.get("msg", "validation error")
        raise BodyValidationError(f"{loc}: {msg}" if loc else msg) from exc


def _first(value: Any, name: str, expected: str) -> Any:
    if isinstance(value, (list, tuple)):
        if not value:
            raise InvalidParameterTypeError(name, expected)
        value = value[0]
    if isinstance(value, (bytes, bytearray)):
        try:
            value = bytes(value).decode()
        except UnicodeDecodeError:
            raise InvalidParameterTypeError(name, expected) from None
    return value


def _parse_number(value: Any, name: str) -> int | float:
    value = _first(value, name, "number")
    if isinstance(value, bool):
        raise InvalidParameterTypeError(name, "number")
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMBER_RE.fullmatch(text):
            raise InvalidParameterTypeError(name, "number")
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise InvalidParameterTypeError(name, "number") from None
    else:
        raise InvalidParameterTypeError(name, "number")
    if isinstance(number, float) and math.isnan(number):
        raise InvalidParameterTypeError(name, "number")
    return number


def _enum_key(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _match_enum(value: Any, allowed: tuple[Any, ...], name: str) -> Any:
    if value in allowed:
        return value
    for candidate in allowed:
        if str(_enum_key(candidate)) == str(value):
            return candidate
    raise InvalidEnumValueError(name, [_enum_key(v) for v in allowed])


def coerce_value(value: Any, descriptor: TypeDescriptor, param: ParamDescriptor) -> Any:
    """Coerce *value* to the type declared by *descriptor*."""

    name = param.name
    kind = descriptor.type
    if kind == "any":
        return value
    if kind == "string":
        value = _first(value, name, "string")
        if not isinstance(value, str):
            raise InvalidParameterTypeError(name, "string")
        return value
    if kind == "number":
        return _parse_number(value, name)
    if kind == "boolean":
        value = _first(value, name, "boolean")
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() not in _FALSE_STRINGS
    if kind == "date":
        value = _first(value, name, "date")
        if isinstance(value, datetime):
            return value
        try:
            return _get_type_adapter(datetime).validate_python(value)
        except ValidationError:
            raise InvalidParameterTypeError(name, "date") from None
    if kind == "binary":
        if isinstance(value, (list, tuple)) and value:
            value = value[0]
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            return value.encode()
        raise InvalidParameterTypeError(name, "binary")
    if kind == "array":
        items = list(value) if isinstance(value, (list, tuple)) else [value]
        if descriptor.element_type is not None:
            items = [coerce_value(item, descriptor.element_type, param) for item in items]
        if descriptor.model is not None:
            return _validate_with_type_adapter(items, descriptor.model)
        return items
    if kind == "object":
        if descriptor.model is not None:
            return _validate_with_type_adapter(value, descriptor.model)
        if not isinstance(value, dict):
            raise InvalidParameterTypeError(name, "object")
        return value
    if kind == "enum":
        allowed = param.enum_values or ()
        return _match_enum(_first(value, name, "enum"), allowed, name)
    if kind == "union":
        for member in descriptor.types:
            try:
                return coerce_value(value, member, param)
            except HTTPError:
                continue
        expected = " | ".join(member.type for member in descriptor.types)
        raise InvalidParameterTypeError(name, expected or "union")
    if kind == "function":
        if not callable(value):
            raise InvalidParameterTypeError(name, "function")
        return value
    raise InvalidParameterTypeError(name, kind)


def _pattern_for(param: ParamDescriptor) -> re.Pattern[str]:
    regex = param.regex
    if isinstance(regex, str):
        return re.compile(regex)
    if isinstance(regex, re.Pattern):
        return regex
    produced = regex(param.name)
    return re.compile(produced) if isinstance(produced, str) else produced


async def run_checks(param: ParamDescriptor, value: Any) -> None:
    """Apply enum, const, bounds, regex and custom validation in that order."""

    name = param.name
    if param.enum_values is not None and param.type.type != "enum":
        if value not in param.enum_values and not any(
            str(_enum_key(v)) == str(value) for v in param.enum_values
        ):
            raise InvalidEnumValueError(name, [_enum_key(v) for v in param.enum_values])
    if param.const is not NOT_SET and value != param.const:
        raise InvalidConstValueError(name, param.const)
    if (param.min_value is not None or param.max_value is not None) and isinstance(
        value, (int, float)
    ) and not isinstance(value, bool):
        if (param.min_value is not None and value < param.min_value) or (
            param.max_value is not None and value > param.max_value
        ):
            raise ParameterOutOfBoundsError(name, param.min_value, param.max_value)
    if param.regex is not None:
        pattern = _pattern_for(param)
        if pattern.search(str(value)) is None:
            raise ParameterPatternMismatchError(name, pattern.pattern)
    if param.validator is not None:
        try:
            outcome = param.validator(name, value)
            if inspect.isawaitable(outcome):
                await outcome
        except HTTPError:
            raise
        except Exception as exc:
            _LOGGER.debug("Validator for parameter '%s' failed", name, exc_info=True)
            raise InvalidParameterError(name) from exc


@dataclass(slots=True)
class ResolvedArguments:
    """Positional handler arguments plus the special channels they carry."""

    args: list[Any]
    adapter: CallbackAdapter[Any] | None = None
    override: StreamIntermediary | None = None


class ParameterResolver:
    """Turn parameter descriptors into handler arguments."""

    def __init__(
        self,
        graph: DependencyGraph,
        *,
        stream_mode: StreamCoercionMode = StreamCoercionMode.ANY,
        validate_parsed_body: bool = True,
    ) -> None:
        self.graph = graph
        self.stream_mode = stream_mode
        self.validate_parsed_body = validate_parsed_body

    def _absent(self, param: ParamDescriptor, error: Exception) -> Any:
        if param.default is not None:
            return param.default()
        if param.optional:
            return None
        raise error

    async def resolve(
        self,
        param: ParamDescriptor,
        request: InvocationRequest,
        *,
        adapter: CallbackAdapter[Any] | None = None,
    ) -> Any:
        kind = param.kind
        if kind in (ParamKind.QUERY, ParamKind.PATH, ParamKind.HEADER):
            return await self._resolve_scalar(param, request)
        if kind is ParamKind.BODY:
            return await self._resolve_body(param, request.body)
        if kind is ParamKind.RAW_BODY:
            return await self._resolve_raw_body(param, request.body)
        if kind is ParamKind.TRANSPORT:
            key = param.binding_key or param.name
            if key in request.transport:
                return request.transport[key]
            return self._absent(param, MissingTransportParameterError(key))
        if kind is ParamKind.DEPENDENCY:
            try:
                return await self.graph.resolve(param.dependency)
            except Exception:
                if param.default is None and not param.optional:
                    raise
                _LOGGER.debug(
                    "Dependency for parameter '%s' unavailable; using fallback",
                    param.name,
                    exc_info=True,
                )
                return param.default() if param.default is not None else None
        if kind is ParamKind.CALLBACK:
            if adapter is None:
                raise TransportConfigurationError(
                    "Callback parameters require a callback adapter"
                )
            return adapter.callback()
        if kind is ParamKind.OUT:
            if self.stream_mode == StreamCoercionMode.NONE:
                raise TransportConfigurationError(
                    "Out parameters require stream coercion to be enabled"
                )
            return StreamIntermediary()
        raise TransportConfigurationError(f"Unsupported parameter kind '{kind}'")

    async def _resolve_scalar(
        self, param: ParamDescriptor, request: InvocationRequest
    ) -> Any:
        if param.kind is ParamKind.QUERY:
            source = request.query
            key = param.name
        elif param.kind is ParamKind.PATH:
            source = request.path
            key = param.name
        else:
            source = request.headers
            key = param.name.lower()
        if source.get(key) is None:
            if param.type.type == "boolean" and param.default is None:
                return False
            return self._absent(param, MissingParameterError(param.source, param.name))
        value = coerce_value(source[key], param.type, param)
        await run_checks(param, value)
        return value

    async def _resolve_body(
        self, param: ParamDescriptor, body: BodyContents | None
    ) -> Any:
        if body is None:
            return self._absent(param, MissingBodyError())
        if body.has_parsed:
            value = coerce_value(body.parsed, param.type, param)
            if self.validate_parsed_body:
                await run_checks(param, value)
            return value
        if body.mime_type is MimeType.APPLICATION_JSON:
            text = await body.read_text()
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise BodyValidationError(f"invalid JSON: {exc.msg}") from exc
        elif body.mime_type is MimeType.TEXT_PLAIN:
            parsed = await body.read_text()
        else:
            raise UnsupportedMediaTypeError(body.mime_raw)
        value = coerce_value(parsed, param.type, param)
        await run_checks(param, value)
        return value

    async def _resolve_raw_body(
        self, param: ParamDescriptor, body: BodyContents | None
    ) -> Any:
        if body is None:
            return self._absent(param, MissingBodyError())
        if param.mime_type and media_type(param.mime_type) != media_type(body.mime_raw):
            raise UnsupportedMediaTypeError(body.mime_raw)
        if param.raw_body_type is RawBodyType.TEXT:
            value = await body.read_text()
        elif param.raw_body_type is RawBodyType.BUFFER:
            value = await body.read_bytes()
        else:
            return body.stream
        await run_checks(param, value)
        return value

    async def resolve_arguments(
        self, handler: HandlerDescriptor, request: InvocationRequest
    ) -> ResolvedArguments:
        """Resolve every parameter of *handler* in index order."""

        resolved = ResolvedArguments(args=[])
        for param in handler.ordered_params:
            if param.kind is ParamKind.CALLBACK:
                if resolved.adapter is not None:
                    raise MultipleCallbackParametersError()
                resolved.adapter = CallbackAdapter()
            value = await self.resolve(param, request, adapter=resolved.adapter)
            if param.kind is ParamKind.OUT and param.override_output:
                resolved.override = value
            resolved.args.append(value)
        return resolved


__all__ = [
    "ParameterResolver",
    "ResolvedArguments",
    "coerce_value",
    "run_checks",
]
