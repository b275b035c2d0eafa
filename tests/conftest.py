"""
Pytest configuration and shared fixtures for the apiforge test suite.

Tests are plain synchronous functions; coroutines are driven with
``asyncio.run`` and the in-memory ``TestClient`` performs calls.
"""

import sys
from pathlib import Path
from typing import Iterator

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from apiforge import (  # noqa: E402
    DependencyGraph,
    HandlerRegistry,
    ManagedApi,
    Settings,
    TestClient,
    query_param,
)


# ============================================================================
# Environment fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clean_apiforge_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Ensure ``APIFORGE_*`` variables from the shell do not leak into tests."""
    for name in (
        "APIFORGE_STREAM_MODE",
        "APIFORGE_SURFACE_ERRORS",
        "APIFORGE_RAISE_ERRORS",
        "APIFORGE_VALIDATE_PARSED_BODY",
        "APIFORGE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


# ============================================================================
# Engine fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Provide default settings."""
    return Settings()


@pytest.fixture
def registry() -> HandlerRegistry:
    """Provide an empty handler registry."""
    return HandlerRegistry()


@pytest.fixture
def graph() -> DependencyGraph:
    """Provide an empty dependency graph."""
    return DependencyGraph()


@pytest.fixture
def api(registry: HandlerRegistry, graph: DependencyGraph, settings: Settings) -> ManagedApi:
    """Provide a ``ManagedApi`` over the shared registry and graph."""
    return ManagedApi(registry, graph, settings=settings)


@pytest.fixture
def client(api: ManagedApi) -> TestClient:
    """Provide a test client bound to ``api``."""
    return TestClient(api)


# ============================================================================
# Sample handlers
# ============================================================================

@pytest.fixture
def hello_registry(registry: HandlerRegistry) -> HandlerRegistry:
    """Register the ``/hello`` greeting handler."""

    @registry.get(
        "/hello",
        query_param("name"),
        query_param("times", "number", default=lambda: 1),
    )
    def hello(name: str, times: int) -> str:
        return f"Hi {name}! " * times

    return registry
