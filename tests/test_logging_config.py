"""
Brief: Tests for detour.config.logging_config.init_logging and its formatter.

Inputs:
  - None

Outputs:
  - None
"""

import logging
from pathlib import Path

from detour.config.logging_config import BracketLevelFormatter, init_logging


def test_init_logging_file_handler_writes(tmp_path):
    """
    Brief: init_logging creates a file handler and writes bracketed entries.

    Inputs:
      - cfg: file path and level

    Outputs:
      - None: Asserts file created and contains the tagged message
    """
    log_path = tmp_path / "logs" / "detour.log"
    logger = init_logging(
        {"level": "debug", "stderr": False, "file": str(log_path)},
        logger_name="detour.test.file",
    )
    logging.getLogger("detour.test.file.child").debug("file message")
    for h in logger.handlers:
        h.flush()
    content = Path(log_path).read_text()
    assert "file message" in content
    assert "[debug]" in content
    assert "detour.test.file.child" in content


def test_init_logging_replaces_handlers():
    """
    Brief: Re-initializing does not stack handlers.

    Inputs:
      - cfg: default stderr handler, applied twice

    Outputs:
      - None: Asserts exactly one StreamHandler and the latest level
    """
    name = "detour.test.reinit"
    init_logging({"level": "info"}, logger_name=name)
    logger = init_logging({"level": "warn"}, logger_name=name)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)
    assert logger.level == logging.WARNING
    assert logger.propagate is False


def test_init_logging_without_outputs_uses_null_handler():
    """
    Brief: With stderr disabled and no file, a NullHandler keeps logging quiet.

    Inputs:
      - cfg: stderr False

    Outputs:
      - None: Asserts a single NullHandler and INFO fallback for unknown levels
    """
    logger = init_logging(
        {"level": "chatty", "stderr": False, "propagate": True},
        logger_name="detour.test.null",
    )
    assert [type(h) for h in logger.handlers] == [logging.NullHandler]
    assert logger.level == logging.INFO
    assert logger.propagate is True


def test_bracket_formatter_tags_and_utc_time():
    """
    Brief: The formatter emits lowercase tags and a Z-suffixed timestamp.

    Inputs:
      - a WARNING record created at epoch 0

    Outputs:
      - None: Asserts '[warn]' and '1970-01-01T00:00:00Z'
    """
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(message)s")
    record = logging.LogRecord("x", logging.WARNING, __file__, 1, "careful", None, None)
    record.created = 0.0
    assert fmt.format(record) == "1970-01-01T00:00:00Z [warn] careful"

    record = logging.LogRecord("x", 25, __file__, 1, "odd", None, None)
    record.created = 0.0
    assert "[lvl25]" in fmt.format(record)
