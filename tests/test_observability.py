"""Tests for configuration helpers, structured logging and redacted previews."""

import json
import logging

import pytest

from stepflow import config
from stepflow.config import EngineConfig
from stepflow.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    preview_value,
    redact,
    set_trace_context,
)
from stepflow.observability.logging import HumanReadableFormatter, StructuredFormatter


def make_record(message="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("stepflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# === CONFIG ===


class TestConfig:
    def test_defaults_without_file(self):
        cfg = EngineConfig()
        assert cfg.unresolved_references == "warn"
        assert cfg.preview_max_chars == 200
        assert "password" in cfg.redact_keys

    def test_reads_config_file(self, tmp_path, monkeypatch):
        path = tmp_path / "configuration.json"
        path.write_text(
            json.dumps(
                {
                    "logging": {"level": "debug", "format": "json"},
                    "compiler": {"unresolved_references": "error"},
                    "engine": {"preview_max_chars": 50, "redact_keys": ["SSN"]},
                }
            )
        )
        monkeypatch.setattr(config, "STEPFLOW_CONFIG_FILE", path)
        monkeypatch.delenv("STEPFLOW_LOG_LEVEL", raising=False)
        monkeypatch.delenv("LOG_FORMAT", raising=False)

        assert config.get_log_level() == "DEBUG"
        assert config.get_log_format() == "json"
        assert EngineConfig() == EngineConfig(
            unresolved_references="error", preview_max_chars=50, redact_keys=["ssn"]
        )

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("STEPFLOW_LOG_LEVEL", "warning")
        monkeypatch.setenv("STEPFLOW_UNRESOLVED_REFERENCES", "IGNORE")

        assert config.get_log_level() == "WARNING"
        assert config.get_unresolved_policy() == "ignore"

    def test_corrupt_file_is_ignored(self, tmp_path, monkeypatch):
        path = tmp_path / "configuration.json"
        path.write_text("{not json")
        monkeypatch.setattr(config, "STEPFLOW_CONFIG_FILE", path)

        assert config.get_stepflow_config() == {}

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            EngineConfig(unresolved_references="explode")


# === LOGGING ===


class TestLogging:
    def test_structured_formatter_includes_context(self):
        set_trace_context(workflow_id="wf-1", execution_id="exec-123")

        entry = json.loads(
            StructuredFormatter().format(make_record(event="step_started", step_index=2))
        )

        assert entry["message"] == "hello"
        assert entry["workflow_id"] == "wf-1"
        assert entry["execution_id"] == "exec-123"
        assert entry["event"] == "step_started"
        assert entry["step_index"] == 2

    def test_structured_formatter_strips_ansi(self):
        entry = json.loads(StructuredFormatter().format(make_record("\033[31mred\033[0m")))
        assert entry["message"] == "red"

    def test_human_formatter_prefix(self):
        set_trace_context(workflow_id="wf-1", execution_id="abcdef0123456789", step_id="step3")

        line = HumanReadableFormatter().format(make_record(event="step_finished"))

        assert "[wf:wf-1 | exec:23456789 | step:step3]" in line
        assert line.endswith("[step_finished]")

    def test_trace_context_merge_and_clear(self):
        set_trace_context(workflow_id="wf-1")
        set_trace_context(step_id="step1")
        assert get_trace_context() == {"workflow_id": "wf-1", "step_id": "step1"}

        clear_trace_context()
        assert get_trace_context() == {}

    def test_configure_logging(self):
        configure_logging(level="debug", format="json")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)


# === REDACTION ===


class TestRedaction:
    def test_nested_keys_are_masked(self):
        value = {"user": {"email": "a@b.c", "Password": "x"}, "items": [{"apiToken": "t"}]}

        assert redact(value) == {
            "user": {"email": "a@b.c", "Password": "***"},
            "items": [{"apiToken": "***"}],
        }
        assert value["user"]["Password"] == "x"

    def test_preview_truncates(self):
        preview = preview_value({"text": "x" * 50}, max_chars=20)
        assert preview == '{"text": "' + "x" * 10 + "..."
        assert len(preview) == 23

    def test_preview_of_string(self):
        assert preview_value("plain") == "plain"
