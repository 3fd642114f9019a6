"""Tests for logging setup."""

import json
import logging

from converge.utils.logging import ConsoleFormatter, JSONFormatter, LogContext, get_logger, setup_logging


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("converge.test", logging.INFO, __file__, 1, "created %s", ("db",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Tests for JSON and console formatters."""

    def test_json_formatter_includes_structured_fields(self) -> None:
        data = json.loads(JSONFormatter().format(make_record(resource_id="database.main", operation="create")))

        assert data["message"] == "created db"
        assert data["level"] == "INFO"
        assert data["resource_id"] == "database.main"
        assert data["operation"] == "create"
        assert "resource_kind" not in data

    def test_console_formatter_prefixes_resource(self) -> None:
        line = ConsoleFormatter().format(make_record(resource_id="database.main"))
        assert "[database.main] created db" in line


class TestLogContext:
    """Tests for LogContext."""

    def test_fields_attached_to_records(self, caplog) -> None:
        log = LogContext(get_logger("converge.test"), resource_id="app.web", operation="update")

        with caplog.at_level(logging.INFO, logger="converge.test"):
            log.info("updating", extra={"operation": "read"})

        record = caplog.records[-1]
        assert record.resource_id == "app.web"
        assert record.operation == "read"


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_writes_json_lines_file(self, tmp_path) -> None:
        setup_logging("warning", log_dir=str(tmp_path / "logs"))
        try:
            get_logger("converge.test").debug("kept in file only")
            for handler in logging.getLogger().handlers:
                handler.flush()

            files = list((tmp_path / "logs").glob("converge-*.jsonl"))
            assert len(files) == 1
            lines = [json.loads(line) for line in files[0].read_text().splitlines()]
            assert lines[-1]["message"] == "kept in file only"
        finally:
            logging.getLogger().handlers.clear()

    def test_console_only(self) -> None:
        setup_logging("error", log_dir=None)
        try:
            handlers = logging.getLogger().handlers
            assert len(handlers) == 1
            assert handlers[0].level == logging.ERROR
        finally:
            logging.getLogger().handlers.clear()
