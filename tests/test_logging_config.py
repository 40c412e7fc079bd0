from __future__ import annotations

import json
import logging

import pytest
import structlog

from memorystore_iam.config import Settings
from memorystore_iam.logging_config import setup_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)


def test_json_lines_on_stderr(capsys):
    setup_logging(Settings(env="staging", log_format="json"))

    structlog.get_logger("sample").info("sample_event", answer=42)

    captured = capsys.readouterr()
    assert captured.out == ""
    record = json.loads(captured.err.strip().splitlines()[-1])
    assert record["event"] == "sample_event"
    assert record["answer"] == 42
    assert record["level"] == "info"
    assert record["app"] == "memorystore-iam-redis"
    assert record["env"] == "staging"
    assert "timestamp" in record


def test_level_filters_lower_records(capsys):
    setup_logging(Settings(log_level="WARNING"))

    log = structlog.get_logger("sample")
    log.info("dropped_event")
    log.warning("kept_event")

    err = capsys.readouterr().err
    assert "dropped_event" not in err
    assert "kept_event" in err


def test_chatty_libraries_stay_at_info_or_above():
    setup_logging(Settings(log_level="DEBUG"))

    assert logging.getLogger("google.auth").level == logging.INFO
    assert logging.getLogger("grpc").level == logging.INFO
