"""
Tests for logging helpers.
"""

import json
import logging

from episodic_memory.logging_utils import (
    StorageLoggerAdapter,
    StructuredJsonFormatter,
    configure_logging,
    get_storage_logger,
)


def _record(msg: str = "hello %s", args=("world",), **extra) -> logging.LogRecord:
    record = logging.LogRecord("episodic_memory.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJsonFormatter:
    def test_single_line_json(self):
        line = StructuredJsonFormatter().format(_record())

        assert "\n" not in line
        payload = json.loads(line)
        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "episodic_memory.test"

    def test_extra_fields_included(self):
        payload = json.loads(
            StructuredJsonFormatter().format(_record(component="migrator", batch=3))
        )

        assert payload["component"] == "migrator"
        assert payload["batch"] == 3

    def test_unserializable_extra_stringified(self):
        payload = json.loads(StructuredJsonFormatter().format(_record(target=object())))

        assert payload["target"].startswith("<object object")


class TestConfigureLogging:
    def test_named_logger_gets_one_handler(self):
        name = "episodic_memory.test_configure"
        configure_logging(level=logging.DEBUG, logger_name=name)
        logger = configure_logging(level=logging.DEBUG, json_format=True, logger_name=name)

        try:
            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
            assert logger.level == logging.DEBUG
            assert logging.getLogger("asyncpg").level == logging.WARNING
        finally:
            logger.handlers.clear()


class TestStorageLogger:
    def test_name(self):
        assert get_storage_logger("sqlite").name == "episodic_memory.sqlite"

    def test_adapter_adds_context(self, caplog):
        adapter = StorageLoggerAdapter(get_storage_logger("migration"), {"component": "migrator"})

        with caplog.at_level(logging.INFO, logger="episodic_memory.migration"):
            adapter.info("batch done")

        assert caplog.records[-1].component == "migrator"
