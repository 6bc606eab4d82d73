# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import pytest
from conftest import FakeIdP
from opentelemetry.sdk.trace import TracerProvider

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.oidc_provider import OIDCProvider
from coreason_oidc.utils.logger import configure_logging, logger
from coreason_oidc.validator import IdTokenVerifier


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    yield
    configure_logging()


def test_json_toggle(capsys: pytest.CaptureFixture[str]) -> None:
    """Verify COREASON_LOG_JSON=true switches to stdout and uses JSON."""
    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true", "COREASON_LOG_LEVEL": "INFO"}):
        configure_logging()
        logger.info("JSON Message")

        captured = capsys.readouterr()
        assert captured.err == ""

        log_record = json.loads(captured.out)
        assert log_record["record"]["message"] == "JSON Message"
        assert log_record["record"]["level"]["name"] == "INFO"


def test_invalid_log_level(capsys: pytest.CaptureFixture[str]) -> None:
    """Verify invalid log level defaults to INFO."""
    with patch.dict(os.environ, {"COREASON_LOG_LEVEL": "INVALID_LEVEL_XYZ"}):
        configure_logging()
        logger.info("Info message")
        logger.debug("Debug message")

        captured = capsys.readouterr()
        assert "Info message" in captured.err
        assert "Debug message" not in captured.err


def test_debug_level(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_LOG_LEVEL": "debug"}):
        configure_logging()
        logger.debug("Debug message")

        assert "Debug message" in capsys.readouterr().err


def test_reconfiguration_does_not_duplicate(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging()
    configure_logging()
    configure_logging()

    logger.info("Single message")

    assert capsys.readouterr().err.count("Single message") == 1


def test_stdlib_logging_is_intercepted(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging()
    logging.getLogger("httpx").warning("Intercepted message")

    assert "Intercepted message" in capsys.readouterr().err


def test_trace_ids_injected(capsys: pytest.CaptureFixture[str]) -> None:
    tracer = TracerProvider().get_tracer(__name__)

    with patch.dict(os.environ, {"COREASON_LOG_JSON": "true"}):
        configure_logging()
        with tracer.start_as_current_span("test-span") as span:
            logger.info("Inside span")
            expected = format(span.get_span_context().trace_id, "032x")

        extra = json.loads(capsys.readouterr().out)["record"]["extra"]
        assert extra["trace_id"] == expected
        assert len(extra["span_id"]) == 16


def test_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "oidc.log"

    with patch.dict(os.environ, {"COREASON_LOG_FILE": str(log_file)}):
        configure_logging()
        logger.info("File message")
        logger.complete()

    record = json.loads(log_file.read_text().splitlines()[0])
    assert record["record"]["message"] == "File message"


def test_subject_is_anonymized(
    capsys: pytest.CaptureFixture[str], idp: FakeIdP, config: OIDCClientConfig, make_id_token: Callable[..., str]
) -> None:
    configure_logging()
    verifier = IdTokenVerifier(config, OIDCProvider(config, idp.fetcher()))

    verifier.verify(make_id_token({"sub": "alice@example.com"}))

    err = capsys.readouterr().err
    assert "ID Token validated for user" in err
    assert "alice@example.com" not in err


def test_concurrent_logging() -> None:
    configure_logging()

    def log_worker() -> None:
        for i in range(100):
            logger.info(f"Worker thread {threading.get_ident()} iteration {i}")

    threads = [threading.Thread(target=log_worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
