"""Simple in-memory transport adapter for ManagedApi."""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Mapping

from .app import ManagedApi
from .cancellation import CancellationToken
from .definitions import BodyContents, HandlerDescriptor, InvocationRequest
from .responses import InvocationResult
from .streams import WritableBuffer


@dataclass
class Response:
    """Container for invocation response data."""

    status_code: int
    text: str
    headers: Mapping[str, str]
    content: bytes
    result: InvocationResult
    chunks: list[bytes] | None = None

    def json(self) -> Any:
        """Return the body parsed as JSON."""
        return json.loads(self.text)


def match_path(template: str, concrete: str) -> dict[str, str] | None:
    """Match *concrete* against a ``{name}`` route template."""

    if "{" not in template:
        return {} if template == concrete else None
    names: list[str] = []
    pattern_parts: list[str] = []
    idx = 0
    length = len(template)
    while idx < length:
        if template[idx] == "{":
            end = template.find("}", idx)
            if end == -1:
                pattern_parts.append(re.escape(template[idx:]))
                break
            names.append(template[idx + 1 : end])
            pattern_parts.append(r"([^/]+)")
            idx = end + 1
            continue
        next_brace = template.find("{", idx)
        if next_brace == -1:
            next_brace = length
        pattern_parts.append(re.escape(template[idx:next_brace]))
        idx = next_brace
    match = re.match("^" + "".join(pattern_parts) + "$", concrete)
    if match is None:
        return None
    return dict(zip(names, match.groups()))


class _ChunkRecorder(WritableBuffer):
    def __init__(self) -> None:
        super().__init__()
        self.chunks: list[bytes] = []

    def write(self, chunk: bytes | str) -> bool:
        super().write(chunk)
        self.chunks.append(chunk.encode() if isinstance(chunk, str) else bytes(chunk))
        return True


def _render(body: Any) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode()
    return json.dumps(body).encode()


class TestClient:
    """Execute calls against a ``ManagedApi`` without a server."""

    __test__ = False  # prevent Pytest from treating this as a test case

    def __init__(self, api: ManagedApi) -> None:
        self.api = api

    def _route(self, method: str, path: str) -> tuple[HandlerDescriptor | None, dict[str, str]]:
        for descriptor in self.api.registry:
            if descriptor.method != method:
                continue
            values = match_path(descriptor.route, path)
            if values is not None:
                return descriptor, values
        return None, {}

    async def arequest(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        body: bytes | str | None = None,
        content_type: str | None = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        transport: Mapping[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> Response:
        """Send a call from inside a running event loop."""

        if body is not None and json_body is not None:
            raise ValueError("provide either json_body or body")
        method = method.upper()
        header_map = {k.lower(): v for k, v in (headers or {}).items()}
        contents: BodyContents | None = None
        if json_body is not None:
            contents = BodyContents.from_json(json_body)
            header_map.setdefault("content-type", "application/json")
        elif body is not None:
            raw = body.encode() if isinstance(body, str) else body
            mime = content_type or header_map.get("content-type") or (
                "text/plain" if isinstance(body, str) else "application/octet-stream"
            )
            contents = BodyContents.from_bytes(raw, mime)
            header_map.setdefault("content-type", mime)

        descriptor, path_params = self._route(method, path)
        request = InvocationRequest(
            query=dict(params or {}),
            path=path_params,
            headers=header_map,
            body=contents,
            transport=dict(transport or {}),
            cancellation=cancellation,
        )
        target = descriptor if descriptor is not None else (method, path)
        result = await self.api.invoke(target, request)

        chunks: list[bytes] | None = None
        if result.is_stream:
            recorder = _ChunkRecorder()
            await result.body.pipe(recorder)
            content = recorder.getvalue()
            chunks = recorder.chunks
        else:
            content = _render(result.body)
        try:
            text = content.decode()
        except UnicodeDecodeError:
            text = content.decode("latin1")
        return Response(result.status_code, text, dict(result.headers), content, result, chunks)

    def request(self, method: str, path: str, **options: Any) -> Response:
        """Send a call and return the response."""
        return asyncio.run(self.arequest(method, path, **options))

    def get(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        **options: Any,
    ) -> Response:
        """Send a GET request."""
        return self.request("GET", path, params=params, headers=headers, **options)

    def post(
        self,
        path: str,
        json_body: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        **options: Any,
    ) -> Response:
        """Send a POST request."""
        return self.request(
            "POST", path, json_body=json_body, params=params, headers=headers, **options
        )

    def put(self, path: str, json_body: Any = None, **options: Any) -> Response:
        return self.request("PUT", path, json_body=json_body, **options)

    def delete(self, path: str, **options: Any) -> Response:
        return self.request("DELETE", path, **options)


__all__ = ["Response", "TestClient", "match_path"]
