"""
Tests for structured logging
"""

import io
import json
import logging

from money_market.logging_config import JSONFormatter, log_action, setup_logging


def _capture(name):
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, stream


class TestStructuredLogging:

    def test_log_action_fields(self):
        logger, stream = _capture("money_market.test.action")

        log_action(logger, "info", "Investment opened", user_id="u1", action="invest",
                   resource="investment:i1", extra={"amount": "100.00"})

        entry = json.loads(stream.getvalue())
        assert entry["message"] == "Investment opened"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "money_market.test.action"
        assert entry["user_id"] == "u1"
        assert entry["resource"] == "investment:i1"
        assert entry["extra"] == {"amount": "100.00"}

    def test_absent_fields_are_omitted(self):
        logger, stream = _capture("money_market.test.plain")

        logger.warning("plain message")

        entry = json.loads(stream.getvalue())
        assert set(entry) == {"timestamp", "level", "logger", "message"}

    def test_below_level_is_dropped(self):
        logger, stream = _capture("money_market.test.level")

        log_action(logger, "debug", "noise", action="noop")

        assert stream.getvalue() == ""

    def test_setup_logging_replaces_handlers(self, tmp_path):
        log_file = tmp_path / "fund.log"
        setup_logging("INFO", "money_market.test.setup", log_file=str(log_file))
        logger = setup_logging("INFO", "money_market.test.setup", log_file=str(log_file))

        assert len(logger.handlers) == 1
        logger.info("written")
        logger.handlers[0].flush()
        assert json.loads(log_file.read_text())["message"] == "written"
        logger.handlers[0].close()
