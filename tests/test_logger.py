# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from loguru import logger
from opentelemetry.sdk.trace import TracerProvider

from coreason_oauth_client.utils.logger import configure_logging


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    yield
    configure_logging()


def json_records(out: str, message: str) -> list[dict[str, Any]]:
    records = []
    for line in out.strip().splitlines():
        if message not in line:
            continue
        try:
            records.append(json.loads(line)["record"])
        except (json.JSONDecodeError, KeyError):
            pass
    return records


def test_json_configuration(capfd: pytest.CaptureFixture[str]) -> None:
    """COREASON_LOG_JSON=true writes serialized records to stdout only."""
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true", "COREASON_LOG_LEVEL": "INFO"}):
        configure_logging()
        logger.info("Test JSON message")

        out, err = capfd.readouterr()

    assert not err
    records = json_records(out, "Test JSON message")
    assert len(records) == 1
    assert records[0]["message"] == "Test JSON message"
    assert records[0]["level"]["name"] == "INFO"


def test_default_text_logging(capfd: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "false"}):
        configure_logging()
        logger.info("Text message")

        out, err = capfd.readouterr()

    assert "Text message" in err
    assert "Text message" not in out
    assert not err.strip().startswith("{")


def test_level_filters_messages(capfd: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true", "COREASON_LOG_LEVEL": "warning"}):
        configure_logging()
        logger.info("Quiet message")
        logger.warning("Loud message")

        out, _ = capfd.readouterr()

    assert not json_records(out, "Quiet message")
    assert json_records(out, "Loud message")


def test_trace_id_injection(capfd: pytest.CaptureFixture[str]) -> None:
    """Records logged inside a span carry its trace and span ids."""
    tracer = TracerProvider().get_tracer(__name__)

    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true"}):
        configure_logging()
        with tracer.start_as_current_span("test_span") as span:
            logger.info("Trace message")
            ctx = span.get_span_context()

        out, _ = capfd.readouterr()

    records = json_records(out, "Trace message")
    assert len(records) == 1
    assert records[0]["extra"]["trace_id"] == format(ctx.trace_id, "032x")
    assert records[0]["extra"]["span_id"] == format(ctx.span_id, "016x")


def test_no_trace_id_outside_span(capfd: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true"}):
        configure_logging()
        logger.info("Untraced message")

        out, _ = capfd.readouterr()

    records = json_records(out, "Untraced message")
    assert "trace_id" not in records[0]["extra"]


def test_standard_logging_interception(capfd: pytest.CaptureFixture[str]) -> None:
    """Libraries logging through the standard library end up in the same sink."""
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true"}):
        configure_logging()
        logging.getLogger("httpx").info("Standard logging message")

        out, _ = capfd.readouterr()

    records = json_records(out, "Standard logging message")
    assert len(records) == 1
    assert records[0]["level"]["name"] == "INFO"


def test_custom_log_level_interception(capfd: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true"}):
        configure_logging()
        logging.addLevelName(25, "CUSTOM")
        logging.log(25, "Custom level message")

        out, _ = capfd.readouterr()

    records = json_records(out, "Custom level message")
    assert records[0]["level"]["name"] == "Level 25"


def test_invalid_log_level_fallback() -> None:
    with patch.dict(os.environ, {"COREASON_LOG_LEVEL": "INVALID_LEVEL"}):
        configure_logging()

    assert logging.getLogger().level == logging.INFO


def test_success_log_level_fallback() -> None:
    """Loguru knows SUCCESS, the standard library does not: its root logger falls back to INFO."""
    with patch.dict(os.environ, {"COREASON_LOG_LEVEL": "SUCCESS"}):
        configure_logging()

    assert logging.getLogger().level == logging.INFO


def test_nothing_written_to_disk(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    configure_logging()
    logger.info("Ephemeral message")

    assert list(tmp_path.iterdir()) == []
