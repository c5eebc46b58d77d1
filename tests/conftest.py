"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.db.connection import create_engine, create_session_factory, create_tables
from jobqueue.observability import tracing
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.store import JobStore


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database unique to the test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}"


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    """Isolated Prometheus registry so collectors can be created per test."""
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector bound to the isolated registry."""
    return MetricsCollector(registry=metrics_registry)


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create an async database engine with the schema in place."""
    engine = create_engine(database_url, busy_timeout_seconds=30, echo=False)
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def store(async_engine: AsyncEngine, metrics: MetricsCollector) -> JobStore:
    """Create a job store on the test database."""
    return JobStore(create_session_factory(async_engine), metrics=metrics)


@pytest.fixture
def idempotency_key() -> str:
    """Generate a unique idempotency key."""
    return f"test-{uuid4().hex}"


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {
        "host": "alpha",
        "steps": ["provision", "bootstrap"],
        "env": {"REGION": "fsn1"},
    }


@pytest.fixture
def span_exporter(monkeypatch: pytest.MonkeyPatch) -> InMemorySpanExporter:
    """Collect spans opened through the queue tracer in memory."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "_tracer", provider.get_tracer("jobqueue-tests"))
    return exporter
