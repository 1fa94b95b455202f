import logging

import pytest

from roomlink.config import ClientRuntimeConfig, HubRuntimeConfig
from roomlink.logging_config import configure_client_logging, configure_hub_logging, parse_level


@pytest.fixture
def root_handlers():
    root = logging.getLogger()
    saved_level = root.level
    yield root
    for h in list(root.handlers):
        if type(h) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(h)
            h.close()
    root.setLevel(saved_level)
    logging.captureWarnings(False)


def test_parse_level_accepts_names_numbers_and_junk() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("WARN", logging.INFO) == logging.WARNING
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("loud", logging.INFO) == logging.INFO


def test_hub_logs_to_console_and_file(root_handlers, tmp_path) -> None:
    log_file = tmp_path / "logs" / "roomlinkd.log"
    configure_hub_logging(HubRuntimeConfig(log_file=str(log_file)), override_level="DEBUG")

    kinds = sorted(type(h).__name__ for h in root_handlers.handlers)
    assert kinds == ["FileHandler", "StreamHandler"]
    assert root_handlers.level == logging.DEBUG
    assert log_file.exists()

    # Calling again replaces rather than stacks handlers.
    first = list(root_handlers.handlers)
    configure_hub_logging(HubRuntimeConfig())
    for h in first:
        h.close()
    assert [type(h).__name__ for h in root_handlers.handlers] == ["StreamHandler"]


def test_client_with_log_file_keeps_console_clean(root_handlers, tmp_path) -> None:
    log_file = tmp_path / "client.log"
    configure_client_logging(ClientRuntimeConfig(log_file=str(log_file)), override_level="INFO")

    assert [type(h).__name__ for h in root_handlers.handlers] == ["FileHandler"]
    logging.getLogger("roomlink.test").info("recorded")
    for h in root_handlers.handlers:
        h.flush()
    assert "recorded" in log_file.read_text(encoding="utf-8")


def test_client_console_passes_only_warnings(root_handlers) -> None:
    configure_client_logging(ClientRuntimeConfig(), override_level="DEBUG")

    (console,) = root_handlers.handlers
    assert isinstance(console, logging.StreamHandler)
    assert console.level == logging.WARNING
    assert root_handlers.level == logging.DEBUG
