"""Tests for logging setup."""

import json
import logging

import structlog

from voiceai.logging_config import LOG_FILE, bind_tenant, setup_logging


def test_events_reach_the_json_file_with_tenant(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        setup_logging(tmp_path, json_logs=True)
        setup_logging(tmp_path, json_logs=True)
        ours = [h for h in root.handlers if (h.get_name() or "").startswith("voiceai.")]
        assert len(ours) == 2

        bind_tenant("t1")
        structlog.get_logger("voiceai.test").info("calls_fetched", count=3)
        for handler in ours:
            handler.flush()

        line = (tmp_path / LOG_FILE).read_text(encoding="utf-8").strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "calls_fetched"
        assert event["count"] == 3
        assert event["tenant_id"] == "t1"
        assert event["logger"] == "voiceai.test"
        assert event["level"] == "info"
    finally:
        structlog.contextvars.clear_contextvars()
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        structlog.reset_defaults()
