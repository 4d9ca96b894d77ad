import json
import logging

from tab_agent_core.config.settings import settings
from tab_agent_core.infrastructure.logging.logger import JsonLinesFormatter


def make_record(extra):
    record = logging.LogRecord("tab_agent_core", logging.INFO, __file__, 1, "Tool executed", None, None)
    record.extra = extra
    return record


def test_structured_fields_are_merged_into_the_line():
    line = JsonLinesFormatter().format(make_record({"tab_id": "42", "tool": "find"}))
    payload = json.loads(line)
    assert payload["msg"] == "Tool executed"
    assert payload["level"] == "INFO"
    assert payload["tab_id"] == "42" and payload["tool"] == "find"
    assert payload["ts"].endswith("Z")


def test_content_fields_are_redacted_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "log_redact_content", True)
    line = JsonLinesFormatter().format(make_record({"tab_id": "42", "content": "secret page text"}))
    payload = json.loads(line)
    assert payload["tab_id"] == "42"
    assert payload["content"] == "<redacted 16 chars>"
