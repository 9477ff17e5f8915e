"""Pytest fixtures and configuration for Evidentia tests.

Unit tests exercise parsers, intake and enrichment directly. API tests run
the FastAPI application in-process through httpx's ASGI transport, with
storage directories under pytest's tmp_path.
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from evidentia.config import Settings

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def fixed_clock():
    """Clock returning a fixed instant."""
    return lambda: FIXED_NOW


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Override settings for testing."""
    return Settings(
        app_name="Evidentia-Test",
        debug=True,
        cors_origins=["http://localhost:4200"],
        upload_path=str(tmp_path / "uploads"),
        quarantine_path=str(tmp_path / "quarantine"),
        max_file_size=1024 * 1024,
        large_file_threshold=64 * 1024,
        chunk_size=4 * 1024,
        sample_size=2 * 1024,
        yield_every_chunks=2,
        analysis_timeout_seconds=10.0,
        custom_parser_timeout_seconds=5.0,
        ai_enabled=False,
    )


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def registry(fixed_clock):
    """Initialized parser registry with the built-in parsers."""
    from evidentia.parsers.loader import CustomParserLoader
    from evidentia.parsers.registry import ParserRegistry

    parser_registry = ParserRegistry(loader=CustomParserLoader(timeout_seconds=5.0), clock=fixed_clock)
    await parser_registry.initialize()
    yield parser_registry
    await parser_registry.drain()


@pytest.fixture
def notifier():
    """Notifier that records published messages."""
    from evidentia.websocket import RecordingNotifier

    return RecordingNotifier()


@pytest_asyncio.fixture
async def pipeline(test_settings, registry, notifier, fixed_clock):
    """Analysis pipeline wired to the test registry and notifier."""
    from evidentia.intake.pipeline import AnalysisPipeline

    analysis_pipeline = AnalysisPipeline(test_settings, registry, notifier=notifier, clock=fixed_clock)
    yield analysis_pipeline
    await analysis_pipeline.shutdown()


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture
def app(test_settings) -> FastAPI:
    """Create a test application instance."""
    from evidentia.main import create_app

    return create_app(test_settings)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.pipeline.shutdown()
    await app.state.registry.drain()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_ioc_text() -> str:
    """Text containing a mix of indicators, some defanged."""
    return (
        "2026-03-01 10:00:00 ERROR Beacon to hxxp://evil-domain[.]com/payload.exe from 203.0.113.10\n"
        "2026-03-01 10:00:05 WARNING Dropped file hash 44d88612fea8a8f36de82e1278abb02f\n"
        "2026-03-01 10:00:09 INFO Contact attacker@badmail.net about CVE-2024-3400\n"
    )


PIPE_PARSER_SOURCE = '''
from evidentia.parsers.base import BaseParser, LogEvent, LogLevel


class PipeParser(BaseParser):
    """Parses 'timestamp|level|message' lines."""

    name = "pipe"
    supported_extensions = (".pipe",)

    def _probe_content(self, text):
        first = text.strip().splitlines()[0]
        return first.count("|") >= 2

    def _iter_events(self, text, context):
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            stamp, level, message = line.split("|", 2)
            timestamp, estimated = self.resolve_timestamp(stamp)
            yield LogEvent(
                timestamp=timestamp,
                timestamp_estimated=estimated,
                level=LogLevel.normalize(level),
                message=message.strip(),
                raw=line,
                line_number=number,
            )
'''


@pytest.fixture
def pipe_parser_source() -> str:
    """Valid custom parser source."""
    return PIPE_PARSER_SOURCE


@pytest.fixture
def pipe_sample() -> str:
    return (
        "2026-03-01T10:00:00+00:00|error|Login failed for root from 198.51.100.23\n"
        "2026-03-01T10:00:03+00:00|info|Session closed\n"
    )
