"""Tests for logging setup."""

import logging

import pytest
from rich.logging import RichHandler

from imageforge.log import attach_file_log, configure_logging, detach_file_log


@pytest.fixture
def package_logger():
    """Restore the imageforge logger after each test."""
    logger = logging.getLogger("imageforge")
    handlers, level = list(logger.handlers), logger.level
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_console_handler(self, package_logger):
        """A single rich handler is installed at the requested level."""
        configure_logging("WARNING")
        configure_logging("DEBUG")

        assert package_logger.level == logging.DEBUG
        assert len(package_logger.handlers) == 1
        assert isinstance(package_logger.handlers[0], RichHandler)

    def test_log_file(self, package_logger, tmp_path):
        """Records are appended to the log file when one is given."""
        log_file = tmp_path / "logs" / "imageforge.log"
        configure_logging("INFO", log_file)

        logging.getLogger("imageforge.test").info("hello from test")
        logging.getLogger("imageforge.test").debug("too verbose")
        for handler in package_logger.handlers:
            handler.flush()

        content = log_file.read_text()
        assert "INFO" in content
        assert "imageforge.test: hello from test" in content
        assert "too verbose" not in content


class TestFileLog:
    """Tests for attach_file_log and detach_file_log."""

    def test_attach_and_detach(self, tmp_path):
        """Attached handlers receive records until detached."""
        logger = logging.getLogger("imageforge.session-test")
        logger.setLevel(logging.DEBUG)
        handler = attach_file_log(tmp_path / "build.log", logger=logger)

        logger.debug("first")
        detach_file_log(handler, logger)
        logger.debug("second")

        content = (tmp_path / "build.log").read_text()
        assert "first" in content
        assert "second" not in content
        assert handler not in logger.handlers
