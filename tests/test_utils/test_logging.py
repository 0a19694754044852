"""
Tests for structlog configuration.
"""

from collections.abc import Iterator

import pytest
import structlog
from structlog.processors import EventRenamer, JSONRenderer

from comicrawl.core.config import Settings
from comicrawl.utils import logging as app_logging
from conftest import TEST_API_KEY


@pytest.fixture
def restore_structlog() -> Iterator[None]:
    """Put structlog back to its defaults after the test."""
    yield
    structlog.reset_defaults()


def configure_with(monkeypatch: pytest.MonkeyPatch, **overrides: object) -> list[object]:
    settings = Settings(api_key=TEST_API_KEY, **overrides)
    monkeypatch.setattr(app_logging, "get_settings", lambda: settings)
    app_logging.configure_logging()
    return structlog.get_config()["processors"]


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.mark.unit
    def test_production_renders_json(
        self, monkeypatch: pytest.MonkeyPatch, restore_structlog: None
    ) -> None:
        """Test production output renames the event key and ends in JSON."""
        processors = configure_with(monkeypatch, debug=False, log_level="INFO")

        assert processors[0] is structlog.contextvars.merge_contextvars
        assert any(isinstance(p, EventRenamer) for p in processors)
        assert structlog.processors.format_exc_info in processors
        assert isinstance(processors[-1], JSONRenderer)

    @pytest.mark.unit
    def test_debug_renders_console(
        self, monkeypatch: pytest.MonkeyPatch, restore_structlog: None
    ) -> None:
        """Test debug output goes to the colored console renderer."""
        processors = configure_with(monkeypatch, debug=True, log_level="DEBUG")

        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert not any(isinstance(p, EventRenamer) for p in processors)
