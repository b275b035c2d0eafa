"""Handler registry populated during the registration phase."""

from __future__ import annotations

import dataclasses
import inspect
import logging
from typing import Any, Callable, Iterator

from .definitions import HandlerDescriptor, ParamDescriptor, ParamKind, TypeDescriptor
from .exceptions import (
    DuplicateRegistrationError,
    InvalidHandlerDefinitionError,
    MultipleCallbackParametersError,
    RegistryFrozenError,
)

_LOGGER = logging.getLogger("apiforge")

_API_METHOD_ATTR = "__apiforge_method__"


def _indexed(params: tuple[ParamDescriptor, ...], key: tuple[str, str]) -> tuple[ParamDescriptor, ...]:
    if all(p.index is None for p in params):
        return tuple(p.with_index(i) for i, p in enumerate(params))
    if any(p.index is None for p in params):
        raise InvalidHandlerDefinitionError(
            f"Handler {key[0]} {key[1]} mixes indexed and unindexed parameters"
        )
    if sorted(p.index for p in params) != list(range(len(params))):
        raise InvalidHandlerDefinitionError(
            f"Parameter indices of {key[0]} {key[1]} must form a dense 0..N-1 sequence"
        )
    return params


def api_method(
    method: str,
    route: str,
    *params: ParamDescriptor,
    returns: TypeDescriptor | str | None = None,
    summary: str | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Mark a method of a component class as a handler.

    The class is registered later with :meth:`HandlerRegistry.add_handler_class`.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(
            func,
            _API_METHOD_ATTR,
            {
                "method": method,
                "route": route,
                "params": params,
                "returns": returns,
                "summary": summary,
            },
        )
        return func

    return decorator


class HandlerRegistry:
    """Ordered set of handler descriptors keyed by ``(method, route)``."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[str, str], HandlerDescriptor] = {}
        self._owners: list[type] = []
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def owners(self) -> list[type]:
        return list(self._owners)

    def freeze(self) -> None:
        self._frozen = True

    def _check_open(self) -> None:
        if self._frozen:
            raise RegistryFrozenError("Registry is frozen; register handlers before init()")

    def register(self, descriptor: HandlerDescriptor) -> HandlerDescriptor:
        """Validate and add *descriptor*."""

        self._check_open()
        key = descriptor.key
        if key in self._handlers:
            raise DuplicateRegistrationError(f"Handler {key[0]} {key[1]}")
        params = _indexed(descriptor.params, key)
        if sum(1 for p in params if p.kind is ParamKind.CALLBACK) > 1:
            raise MultipleCallbackParametersError()
        if sum(1 for p in params if p.kind is ParamKind.OUT and p.override_output) > 1:
            raise InvalidHandlerDefinitionError(
                f"Handler {key[0]} {key[1]} declares more than one output-overriding out parameter"
            )
        if params is not descriptor.params:
            descriptor = dataclasses.replace(descriptor, params=params)
        self._handlers[key] = descriptor
        _LOGGER.debug("Registered handler %s %s", *key)
        return descriptor

    def route(
        self,
        path: str,
        method: str,
        *params: ParamDescriptor,
        returns: TypeDescriptor | str | None = None,
        summary: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register the decorated function for *method* and *path*."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(
                HandlerDescriptor(
                    method,
                    path,
                    func,
                    params,
                    return_schema=returns,
                    summary=summary or inspect.getdoc(func),
                )
            )
            return func

        return decorator

    def get(self, path: str, *params: ParamDescriptor, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self.route(path, "GET", *params, **options)

    def post(self, path: str, *params: ParamDescriptor, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self.route(path, "POST", *params, **options)

    def put(self, path: str, *params: ParamDescriptor, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self.route(path, "PUT", *params, **options)

    def delete(self, path: str, *params: ParamDescriptor, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self.route(path, "DELETE", *params, **options)

    def patch(self, path: str, *params: ParamDescriptor, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return self.route(path, "PATCH", *params, **options)

    def add_handler_class(self, cls: type) -> list[HandlerDescriptor]:
        """Register every ``@api_method`` of *cls*, owned by instances of *cls*."""

        self._check_open()
        registered = []
        for _, member in inspect.getmembers(cls, predicate=inspect.isfunction):
            meta = getattr(member, _API_METHOD_ATTR, None)
            if meta is None:
                continue
            registered.append(
                self.register(
                    HandlerDescriptor(
                        meta["method"],
                        meta["route"],
                        member,
                        meta["params"],
                        return_schema=meta["returns"],
                        owner=cls,
                        summary=meta["summary"] or inspect.getdoc(member),
                    )
                )
            )
        if not registered:
            raise InvalidHandlerDefinitionError(
                f"{cls.__qualname__} declares no api methods"
            )
        if cls not in self._owners:
            self._owners.append(cls)
        return registered

    def lookup(self, method: str, route: str) -> HandlerDescriptor | None:
        return self._handlers.get((method.upper(), route))

    def __iter__(self) -> Iterator[HandlerDescriptor]:
        return iter(list(self._handlers.values()))

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = ["HandlerRegistry", "api_method"]
