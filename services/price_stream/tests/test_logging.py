"""
Tests for the shared structlog configuration
"""

import json
import logging

import pytest
import structlog

from shared.utils.logger import NOISY_LOGGERS, configure_logging, get_logger


@pytest.fixture
def json_logs(capsys):
    """Configure JSON logging into captured stdout, restoring root handlers afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    noisy_levels = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}

    configure_logging(log_level="INFO", log_format="json")

    def lines():
        return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]

    yield lines

    root.handlers = handlers
    root.setLevel(level)
    for name, noisy_level in noisy_levels.items():
        logging.getLogger(name).setLevel(noisy_level)
    structlog.contextvars.clear_contextvars()


def test_component_context_is_on_every_event(json_logs):
    logger = get_logger("tests.logging", component="connection")

    logger.info("price_stream_connected", url="wss://example.test")

    [event] = json_logs()
    assert event["event"] == "price_stream_connected"
    assert event["component"] == "connection"
    assert event["url"] == "wss://example.test"
    assert event["level"] == "info"


def test_stdlib_records_use_the_same_renderer(json_logs):
    logging.getLogger("uvicorn.error").warning("server shutting down")

    [event] = json_logs()
    assert event["event"] == "server shutting down"
    assert event["logger"] == "uvicorn.error"
    assert event["level"] == "warning"


def test_transport_debug_chatter_is_quiet_above_debug(json_logs):
    logging.getLogger("websockets.client").info("> TEXT '{...}' [42 bytes]")

    assert json_logs() == []


def test_debug_level_lets_transport_records_through(capsys):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    noisy_levels = {name: logging.getLogger(name).level for name in NOISY_LOGGERS}
    try:
        configure_logging(log_level="DEBUG", log_format="json")
        logging.getLogger("websockets.client").debug("< PONG")

        [line] = capsys.readouterr().out.splitlines()
        assert json.loads(line)["event"] == "< PONG"
    finally:
        root.handlers = handlers
        root.setLevel(level)
        for name, noisy_level in noisy_levels.items():
            logging.getLogger(name).setLevel(noisy_level)
