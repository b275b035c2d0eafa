"""Error taxonomy for registration, resolution and invocation failures."""

from __future__ import annotations

import math
from typing import Any, Iterable, Mapping


class ApiforgeError(Exception):
    """Base class for engine errors that are not caller-facing."""


class HTTPError(Exception):
    """Error carrying a caller-facing status code and message."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body: dict[str, Any] = {"message": message, **(body or {})}


class BadRequestError(HTTPError):
    def __init__(self, message: str = "Bad Request") -> None:
        super().__init__(message, 400)


class NotFoundError(HTTPError):
    def __init__(self, message: str = "Not Found") -> None:
        super().__init__(message, 404)


class UnsupportedMediaTypeError(HTTPError):
    def __init__(self, mime_type: str | None = None) -> None:
        if mime_type:
            message = f"Unsupported media type '{mime_type}'"
        else:
            message = "Unsupported Media Type"
        super().__init__(message, 415)
        self.mime_type = mime_type


class TeapotError(HTTPError):
    def __init__(self, message: str = "I'm a teapot") -> None:
        super().__init__(message, 418)


class InternalServerError(HTTPError):
    def __init__(self, message: str = "Internal Server Error") -> None:
        super().__init__(message, 500)


class TransportConfigurationError(InternalServerError):
    """The transport or engine is configured in a way the handler cannot use."""


class InvocationCancelledError(HTTPError):
    """The caller went away before the invocation finished."""

    def __init__(self) -> None:
        super().__init__("Client Closed Request", 499)


class MissingParameterError(BadRequestError):
    def __init__(self, source: str, name: str) -> None:
        super().__init__(f"Missing required {source} parameter '{name}'")
        self.source = source
        self.name = name


class MissingBodyError(BadRequestError):
    def __init__(self) -> None:
        super().__init__("Missing request body")


class MissingTransportParameterError(MissingParameterError):
    def __init__(self, binding_key: str) -> None:
        super().__init__("transport", binding_key)


class InvalidParameterTypeError(BadRequestError):
    def __init__(self, name: str, expected: str) -> None:
        super().__init__(
            f"Invalid value for parameter '{name}'. Must be a valid {expected}."
        )
        self.name = name
        self.expected = expected


class ParameterPatternMismatchError(BadRequestError):
    def __init__(self, name: str, pattern: str) -> None:
        super().__init__(
            f"Invalid value for parameter '{name}'. "
            f"Must match regular expression: {pattern}."
        )
        self.name = name
        self.pattern = pattern


class ParameterOutOfBoundsError(BadRequestError):
    def __init__(
        self,
        name: str,
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> None:
        low = -math.inf if min_value is None else min_value
        high = math.inf if max_value is None else max_value
        super().__init__(
            f"Invalid value for parameter '{name}'. "
            f"Value must be within [{low}, {high}] (inclusive)"
        )
        self.name = name
        self.min_value = min_value
        self.max_value = max_value


class InvalidEnumValueError(BadRequestError):
    def __init__(self, name: str, values: Iterable[Any]) -> None:
        self.values = list(values)
        joined = ", ".join(str(v) for v in self.values)
        super().__init__(
            f"Invalid value for parameter '{name}'. Value must be one of [{joined}]"
        )
        self.name = name


class InvalidConstValueError(BadRequestError):
    def __init__(self, name: str, value: Any) -> None:
        super().__init__(
            f"Invalid value for const parameter '{name}'. Value must be '{value}'"
        )
        self.name = name
        self.value = value


class InvalidParameterError(BadRequestError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid value for parameter '{name}'.")
        self.name = name


class BodyValidationError(BadRequestError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Error validating request body: {detail}")
        self.detail = detail


class CallbackError(Exception):
    """Raised when a completion callback reports a plain string error."""


class DependencyError(ApiforgeError):
    """A dependency could not be registered or resolved."""


class UnfilledDependencyError(DependencyError):
    def __init__(self, reference: Any, expected: int, filled: int) -> None:
        super().__init__(
            f"Cannot instantiate dependency {_describe(reference)}: "
            f"unfilled dependencies ({filled} of {expected} available)"
        )
        self.reference = reference
        self.expected = expected
        self.filled = filled


class DuplicateRegistrationError(ApiforgeError):
    def __init__(self, what: str) -> None:
        super().__init__(f"{what} already registered")


class DependencyCycleError(DependencyError):
    def __init__(self, reference: Any) -> None:
        super().__init__(
            f"Registering {_describe(reference)} would create a dependency cycle"
        )
        self.reference = reference


class MultipleCallbackParametersError(ApiforgeError):
    def __init__(self) -> None:
        super().__init__(
            "Only a single callback parameter may be defined on a handler"
        )


class InvalidHandlerDefinitionError(ApiforgeError):
    """A handler descriptor violates a registration invariant."""


class RegistryFrozenError(ApiforgeError):
    """The registry no longer accepts registrations."""


class NoActiveInvocationError(LookupError):
    """Raised by context accessors outside of an invocation."""


def _describe(reference: Any) -> str:
    return getattr(reference, "__qualname__", None) or repr(reference)


__all__ = [
    "ApiforgeError",
    "BadRequestError",
    "BodyValidationError",
    "CallbackError",
    "DependencyCycleError",
    "DependencyError",
    "DuplicateRegistrationError",
    "HTTPError",
    "InternalServerError",
    "InvalidConstValueError",
    "InvalidEnumValueError",
    "InvalidHandlerDefinitionError",
    "InvalidParameterError",
    "InvalidParameterTypeError",
    "InvocationCancelledError",
    "MissingBodyError",
    "MissingParameterError",
    "MissingTransportParameterError",
    "MultipleCallbackParametersError",
    "NoActiveInvocationError",
    "NotFoundError",
    "ParameterOutOfBoundsError",
    "ParameterPatternMismatchError",
    "RegistryFrozenError",
    "TeapotError",
    "TransportConfigurationError",
    "UnfilledDependencyError",
    "UnsupportedMediaTypeError",
]
