"""Test logging configuration."""

import logging
import sys
from pathlib import Path

import structlog
from structlog.testing import LogCapture

from autotunnel.common.logging import get_logger, setup_logging


class TestLogging:
    """Test logging functionality."""

    def setup_method(self) -> None:
        """Reset logging configuration before each test."""
        structlog.reset_defaults()
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    def test_setup_logging_default(self) -> None:
        setup_logging()
        logger = get_logger("test")
        assert logger is not None
        assert hasattr(logger, "info")
        assert hasattr(logger, "error")

    def test_setup_logging_with_level(self) -> None:
        setup_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_asyncssh_kept_at_warning(self) -> None:
        setup_logging(level="DEBUG")
        assert logging.getLogger("asyncssh").level == logging.WARNING

    def test_setup_logging_json_format(self) -> None:
        setup_logging(json_format=True)
        logger = get_logger("test")

        cap = LogCapture()
        structlog.configure(processors=[cap])

        logger.info("tunnel running", forwards=2)

        assert len(cap.entries) == 1
        assert cap.entries[0]["event"] == "tunnel running"
        assert cap.entries[0]["forwards"] == 2

    def test_setup_logging_with_file(self, tmp_path: Path) -> None:
        log_file = tmp_path / "test.log"
        setup_logging(log_file=str(log_file))

        python_logger = logging.getLogger("test_file")
        python_logger.info("test message")

        for handler in logging.getLogger().handlers:
            handler.flush()

        assert log_file.exists()
        assert "test message" in log_file.read_text()

    def test_console_handler_uses_stderr(self) -> None:
        setup_logging()
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert handlers[0].stream is sys.stderr
