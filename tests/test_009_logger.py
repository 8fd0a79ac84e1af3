import logging

import pytest

from dmvwatch.core.constants import LOG_FILE, RunOutcome
from dmvwatch.core.logger import (
    CONSOLE_FORMAT,
    LogContext,
    RunTagFormatter,
    get_logger,
    log_exception,
    run_context,
    setup_logging,
)


@pytest.fixture
def app_logger(tmp_path):
    logger = setup_logging(level="DEBUG", log_dir=tmp_path / "logs", file_enabled=True)
    yield logger
    setup_logging(level="INFO", file_enabled=False)


def _log_text(app_logger, tmp_path):
    for handler in app_logger.handlers:
        handler.flush()
    return (tmp_path / "logs" / LOG_FILE).read_text(encoding="utf-8")


def test_child_loggers_write_to_log_file(app_logger, tmp_path):
    get_logger("services.scheduler").info("Scheduler started")

    text = _log_text(app_logger, tmp_path)
    assert "Scheduler started" in text
    assert "dmvwatch.services.scheduler | - |" in text


def test_run_records_carry_query_and_outcome(app_logger, tmp_path):
    logger = get_logger("services.scheduler")
    logger.info("Dispatching", extra=run_context("top-io"))
    logger.warning("Trigger skipped", extra=run_context("top-cpu", RunOutcome.SKIPPED))

    text = _log_text(app_logger, tmp_path)
    assert "| top-io | " in text
    assert "| top-cpu skipped | " in text


def test_log_exception_tags_the_failed_run(app_logger, tmp_path):
    try:
        raise RuntimeError("driver crashed")
    except RuntimeError as e:
        log_exception(get_logger("services.scheduler"), e, "Unexpected error during run", query_id="top-io")

    text = _log_text(app_logger, tmp_path)
    assert "top-io failed" in text
    assert "Unexpected error during run: driver crashed" in text
    assert "Traceback" in text


def test_setup_replaces_handlers(app_logger):
    logger = setup_logging(level="WARNING", file_enabled=False)
    assert logger is app_logger
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING


def test_log_context_reports_failure(app_logger, caplog):
    logger = get_logger("test")
    with caplog.at_level(logging.INFO, logger=app_logger.name):
        with pytest.raises(ValueError):
            with LogContext(logger, "Comparing runs"):
                raise ValueError("bad row")

    messages = [record.getMessage() for record in caplog.records]
    assert "Comparing runs... started" in messages
    assert any("failed after" in message and "bad row" in message for message in messages)


def test_colored_tag_highlights_outcome_only_on_console():
    record = logging.LogRecord("dmvwatch.x", logging.ERROR, __file__, 1, "boom", None, None)
    record.__dict__.update(run_context("top-io", RunOutcome.FAILED))

    colored = RunTagFormatter(CONSOLE_FORMAT, colors=True).format(record)
    plain = RunTagFormatter(CONSOLE_FORMAT).format(record)

    assert "top-io \033[31mfailed\033[0m" in colored
    assert "top-io failed | boom" in plain
    assert "\033[" not in plain
    assert record.levelname == "ERROR"
