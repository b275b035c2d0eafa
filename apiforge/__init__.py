"""apiforge: typed request-invocation engine."""

__version__ = "0.1.0"

from .app import ManagedApi
from .callbacks import CallbackAdapter
from .cancellation import CancellationToken
from .config import Settings, configure_logging, load_settings
from .context import (
    ExecutionContext,
    InvocationState,
    current_context,
    get_header,
    set_header,
    set_status,
)
from .definitions import (
    BodyContents,
    HandlerDescriptor,
    InvocationRequest,
    ParamDescriptor,
    ParamKind,
    RawBodyType,
    TypeDescriptor,
    body_param,
    callback_param,
    dependency_param,
    header_param,
    out_param,
    path_param,
    query_param,
    raw_body_param,
    transport_param,
)
from .dependency import Dependency, DependencyGraph, DependencyNode, DependencyTime, Inject
from .exceptions import ApiforgeError, HTTPError
from .hooks import HookPhase, InvocationHooks, RequestLoggerHook, ResponseHeadersHook
from .registry import HandlerRegistry, api_method
from .responses import InvocationResult
from .streams import (
    Pipeable,
    StreamCoercer,
    StreamCoercionMode,
    StreamIntermediary,
    Writable,
    WritableBuffer,
)
from .testclient import Response as TestResponse
from .testclient import TestClient

__all__ = [
    "__version__",
    "ApiforgeError",
    "BodyContents",
    "CallbackAdapter",
    "CancellationToken",
    "Dependency",
    "DependencyGraph",
    "DependencyNode",
    "DependencyTime",
    "ExecutionContext",
    "HTTPError",
    "HandlerDescriptor",
    "HandlerRegistry",
    "HookPhase",
    "Inject",
    "InvocationHooks",
    "InvocationRequest",
    "InvocationResult",
    "InvocationState",
    "ManagedApi",
    "ParamDescriptor",
    "ParamKind",
    "Pipeable",
    "RawBodyType",
    "RequestLoggerHook",
    "ResponseHeadersHook",
    "Settings",
    "StreamCoercer",
    "StreamCoercionMode",
    "StreamIntermediary",
    "TestClient",
    "TestResponse",
    "TypeDescriptor",
    "Writable",
    "WritableBuffer",
    "api_method",
    "body_param",
    "callback_param",
    "configure_logging",
    "current_context",
    "dependency_param",
    "get_header",
    "header_param",
    "load_settings",
    "out_param",
    "path_param",
    "query_param",
    "raw_body_param",
    "set_header",
    "set_status",
    "transport_param",
]
