"""
Tests for the structlog configuration.
"""

import json
import logging

import pytest
import structlog

from aves.config import settings
from aves.observability.logging import setup_logging


@pytest.fixture
def json_logging(monkeypatch, capsys):
    # capsys first, so the handler writes to the captured stdout
    root = logging.getLogger()
    saved_level = root.level
    monkeypatch.setattr(settings, "DEBUG", False)
    setup_logging()
    installed = root.handlers[:]
    yield
    structlog.reset_defaults()
    for handler in installed:
        root.removeHandler(handler)
    root.setLevel(saved_level)


def _last_line(capsys) -> dict:
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return json.loads(lines[-1])


class TestSetupLogging:

    def test_structlog_event_is_json_with_service(self, json_logging, capsys):
        structlog.get_logger("aves.test").info("annotation_approved", annotation_id="a-1")
        line = _last_line(capsys)
        assert line["event"] == "annotation_approved"
        assert line["annotation_id"] == "a-1"
        assert line["level"] == "info"
        assert line["service"] == settings.APP_NAME
        assert line["version"] == settings.APP_VERSION
        assert "timestamp" in line

    def test_stdlib_records_share_the_format(self, json_logging, capsys):
        logging.getLogger("aves.stdlib").warning("pool %s exhausted", "primary")
        line = _last_line(capsys)
        assert line["event"] == "pool primary exhausted"
        assert line["level"] == "warning"
        assert line["service"] == settings.APP_NAME

    def test_context_bound_fields_included(self, json_logging, capsys):
        with structlog.contextvars.bound_contextvars(job_id="job-9"):
            structlog.get_logger("aves.test").info("generation_started")
        assert _last_line(capsys)["job_id"] == "job-9"

    def test_noisy_libraries_quietened(self, json_logging):
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("openai").level == logging.WARNING
