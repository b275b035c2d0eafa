"""End-to-end invocation through ManagedApi and the TestClient."""

import asyncio
import logging

import pytest

from apiforge import (
    BodyContents,
    CancellationToken,
    HandlerRegistry,
    InvocationRequest,
    ManagedApi,
    Settings,
    StreamCoercionMode,
    TestClient,
    api_method,
    body_param,
    callback_param,
    current_context,
    dependency_param,
    header_param,
    out_param,
    path_param,
    query_param,
    set_header,
    set_status,
    transport_param,
)
from apiforge.exceptions import NoActiveInvocationError, TeapotError
from apiforge.streams import collect


# ============================================================================
# Greeting handler
# ============================================================================

def test_hello_once(hello_registry: HandlerRegistry, client: TestClient) -> None:
    response = client.get("/hello", params={"name": "Mike"})
    assert response.status_code == 200
    assert response.text == "Hi Mike! "


def test_hello_three_times(hello_registry: HandlerRegistry, client: TestClient) -> None:
    response = client.get("/hello", params={"name": "Mike", "times": "3"})
    assert response.text == "Hi Mike! Hi Mike! Hi Mike! "


def test_hello_missing_name(hello_registry: HandlerRegistry, client: TestClient) -> None:
    response = client.get("/hello")
    assert response.status_code == 400
    assert response.text == "Missing required query parameter 'name'"


def test_hello_non_numeric_times(hello_registry: HandlerRegistry, client: TestClient) -> None:
    response = client.get("/hello", params={"name": "Mike", "times": "abc"})
    assert response.status_code == 400
    assert "times" in response.text


def test_unknown_route_is_404(hello_registry: HandlerRegistry, client: TestClient) -> None:
    assert client.get("/nope").status_code == 404


def test_invoke_by_method_and_route(hello_registry: HandlerRegistry, api: ManagedApi) -> None:
    result = asyncio.run(
        api.invoke(("get", "/hello"), InvocationRequest(query={"name": "Ann"}))
    )
    assert result.status_code == 200
    assert result.body == "Hi Ann! "


# ============================================================================
# Path params, JSON results and ambient context
# ============================================================================

def test_path_params_and_structured_body(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/users/{user_id}", path_param("user_id", "number"))
    def get_user(user_id: int) -> dict:
        return {"id": user_id}

    response = client.get("/users/7")
    assert response.status_code == 200
    assert response.json() == {"id": 7}


def test_handler_sets_header_and_status(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.post("/items", header_param("x-request-id"))
    async def create(request_id: str) -> str:
        set_header("X-Echo", request_id)
        set_status(201)
        return "created"

    response = client.post("/items", headers={"X-Request-Id": "abc"})
    assert response.status_code == 201
    assert response.headers["x-echo"] == "abc"


def test_context_is_isolated_between_concurrent_calls(registry: HandlerRegistry, api: ManagedApi) -> None:
    @registry.get("/whoami", query_param("name"))
    async def whoami(name: str) -> str:
        await asyncio.sleep(0.01)
        return current_context().request.query["name"]

    async def main() -> list:
        calls = [
            api.invoke(("GET", "/whoami"), InvocationRequest(query={"name": str(i)}))
            for i in range(20)
        ]
        return await asyncio.gather(*calls)

    results = asyncio.run(main())
    assert [r.body for r in results] == [str(i) for i in range(20)]


def test_current_context_outside_invocation() -> None:
    with pytest.raises(NoActiveInvocationError):
        current_context()


def test_get_header_on_api(registry: HandlerRegistry, client: TestClient, api: ManagedApi) -> None:
    @registry.get("/agent")
    def agent() -> str:
        return api.get_header("User-Agent")

    assert client.get("/agent", headers={"User-Agent": "pytest"}).text == "pytest"


# ============================================================================
# Callbacks
# ============================================================================

def test_callback_success(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/cb", callback_param())
    def handler(done) -> None:
        done(None, "from callback")

    assert client.get("/cb").text == "from callback"


def test_callback_error_status(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/teapot", callback_param())
    def handler(done) -> None:
        done(TeapotError())

    response = client.get("/teapot")
    assert response.status_code == 418
    assert response.text == "I'm a teapot"


def test_async_callback_handler(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/later", query_param("x", "number"), callback_param())
    async def handler(x: int, done) -> None:
        asyncio.get_running_loop().call_later(0.01, done, None, x * 2)

    assert client.get("/later", params={"x": "21"}).text == "42"


# ============================================================================
# Out parameters and streams
# ============================================================================

def test_out_param_overrides_result(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/out", query_param("word"), out_param())
    async def handler(word: str, out) -> str:
        if word == "bad":
            raise TeapotError("bad word")

        async def produce() -> None:
            for part in ("a", "b", word):
                out.write(part)
                await out.drain()
                await asyncio.sleep(0)
            out.end()

        asyncio.ensure_future(produce())
        return "ignored"

    response = client.get("/out", params={"word": "c"})
    assert response.status_code == 200
    assert response.text == "abc"
    assert response.result.stream_mode is StreamCoercionMode.INHERITS_STREAM
    assert client.get("/out", params={"word": "bad"}).status_code == 418


def test_out_param_backpressure_with_inline_drain(registry: HandlerRegistry, api: ManagedApi) -> None:
    @registry.get("/big", out_param())
    async def big(out) -> None:
        for _ in range(64):
            out.write(b"x" * 1024)
            await out.drain()
        out.end()

    async def main() -> bytes:
        result = await asyncio.wait_for(api.invoke(("GET", "/big")), 2)
        assert result.stream_mode is StreamCoercionMode.INHERITS_STREAM
        return await asyncio.wait_for(collect(result.body.get_readable()), 2)

    assert asyncio.run(main()) == b"x" * 64 * 1024


def test_out_param_failure_after_first_write_fails_stream(registry: HandlerRegistry, api: ManagedApi, caplog: pytest.LogCaptureFixture) -> None:
    @registry.get("/partial", out_param())
    async def partial(out) -> None:
        out.write("head")
        await asyncio.sleep(0.01)
        raise RuntimeError("lost upstream")

    async def main() -> tuple[int, list]:
        result = await api.invoke(("GET", "/partial"))
        chunks: list = []
        with pytest.raises(RuntimeError, match="lost upstream"):
            async for chunk in result.body.get_readable():
                chunks.append(chunk)
        return result.status_code, chunks

    with caplog.at_level(logging.ERROR, logger="apiforge"):
        status, chunks = asyncio.run(main())
    assert status == 200
    assert chunks == ["head"]
    assert "failed while streaming" in caplog.text


def test_out_param_without_override_keeps_return(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/side", out_param(override_output=False))
    def handler(out) -> dict:
        out.write("side channel")
        out.end()
        return {"ok": True}

    assert client.get("/side").json() == {"ok": True}


def test_out_param_rejected_when_streams_disabled(registry: HandlerRegistry) -> None:
    @registry.get("/out", out_param())
    def handler(out) -> None:
        out.end()

    api = ManagedApi(registry, settings=Settings(stream_mode="none"))
    response = TestClient(api).get("/out")
    assert response.status_code == 500


def test_async_generator_result_is_streamed(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/numbers")
    def numbers():
        async def gen():
            for i in range(3):
                yield f"{i};"

        return gen()

    response = client.get("/numbers")
    assert response.text == "0;1;2;"
    assert response.chunks == [b"0;", b"1;", b"2;"]


def test_duck_pipe_result_is_streamed(registry: HandlerRegistry, client: TestClient) -> None:
    class Source:
        async def pipe(self, destination, *, end: bool = True) -> None:
            destination.write(b"quack")
            await destination.drain()
            if end:
                destination.end()

    @registry.get("/duck")
    def duck() -> Source:
        return Source()

    response = client.get("/duck")
    assert response.text == "quack"
    assert response.result.stream_mode is StreamCoercionMode.DUCK_PIPE


# ============================================================================
# Components, dependencies and transport values
# ============================================================================

class Greeter:
    def __init__(self) -> None:
        self.greeting = "Hello"


class GreetingController:
    def __init__(self, greeter: Greeter) -> None:
        self.greeter = greeter

    @api_method("GET", "/greet/{name}", path_param("name"))
    def greet(self, name: str) -> str:
        return f"{self.greeter.greeting}, {name}"

    @api_method("GET", "/greeter", dependency_param("greeter", Greeter))
    def same_greeter(self, greeter: Greeter) -> bool:
        return greeter is self.greeter


def test_component_handlers_are_bound_to_instances(registry: HandlerRegistry, api: ManagedApi, client: TestClient) -> None:
    registry.add_handler_class(GreetingController)
    api.add_dependency(Greeter)
    api.add_dependency(GreetingController)

    assert client.get("/greet/Ada").text == "Hello, Ada"
    assert client.get("/greeter").text == "true"


def test_transport_value_is_passed(registry: HandlerRegistry, client: TestClient) -> None:
    @registry.get("/raw", transport_param("conn", "socket"))
    def raw(conn: object) -> str:
        return conn

    assert client.get("/raw", transport={"socket": "conn-1"}).text == "conn-1"


# ============================================================================
# Error mapping and cancellation
# ============================================================================

def test_unhandled_error_is_hidden(registry: HandlerRegistry, client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    @registry.get("/boom")
    def boom() -> None:
        raise RuntimeError("secret detail")

    with caplog.at_level(logging.ERROR, logger="apiforge"):
        response = client.get("/boom")
    assert response.status_code == 500
    assert response.text == "Internal Server Error"
    assert "secret detail" not in response.text
    assert "Unhandled exception" in caplog.text


def test_raise_errors_propagates(registry: HandlerRegistry) -> None:
    @registry.get("/boom")
    def boom() -> None:
        raise RuntimeError("propagate me")

    api = ManagedApi(registry, settings=Settings(raise_errors=True))
    with pytest.raises(RuntimeError, match="propagate me"):
        TestClient(api).get("/boom")


def test_surface_errors_off_hides_message(hello_registry: HandlerRegistry) -> None:
    api = ManagedApi(hello_registry, settings=Settings(surface_errors=False))
    response = TestClient(api).get("/hello")
    assert response.status_code == 400
    assert response.text == ""


def test_cancelled_before_start(hello_registry: HandlerRegistry, client: TestClient) -> None:
    token = CancellationToken()
    token.cancel()
    response = client.get("/hello", params={"name": "Mike"}, cancellation=token)
    assert response.status_code == 499


def test_cancelled_during_handler(registry: HandlerRegistry, client: TestClient) -> None:
    token = CancellationToken()
    finished: list[bool] = []

    @registry.get("/slow")
    async def slow() -> str:
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        await asyncio.sleep(5)
        finished.append(True)
        return "done"

    response = client.get("/slow", cancellation=token)
    assert response.status_code == 499
    assert finished == []


def test_undecodable_body_is_a_client_error(registry: HandlerRegistry, api: ManagedApi) -> None:
    @registry.post("/text", body_param("b", "string"))
    def text(b: str) -> str:
        return b

    body = BodyContents.from_bytes(b"\xff\xfe", "text/plain")
    result = asyncio.run(api.invoke(("POST", "/text"), InvocationRequest(body=body)))
    assert result.status_code == 400


def test_registry_frozen_after_first_call(hello_registry: HandlerRegistry, client: TestClient) -> None:
    client.get("/hello", params={"name": "Mike"})
    assert hello_registry.frozen


def test_concurrent_first_calls_share_one_component(registry: HandlerRegistry) -> None:
    built: list[object] = []

    class Warm:
        @api_method("GET", "/warm")
        def warm(self) -> str:
            return "warm"

    class Counted:
        def __init__(self) -> None:
            built.append(self)

        @api_method("GET", "/counted")
        def counted(self) -> int:
            return id(self)

    async def make_warm() -> Warm:
        await asyncio.sleep(0.01)
        return Warm()

    registry.add_handler_class(Warm)
    registry.add_handler_class(Counted)
    api = ManagedApi(registry)
    api.add_dependency(Warm, make_warm, [])

    async def main() -> list:
        return await asyncio.gather(*(api.invoke(("GET", "/counted")) for _ in range(5)))

    results = asyncio.run(main())
    assert len(built) == 1
    assert {r.body for r in results} == {id(built[0])}
