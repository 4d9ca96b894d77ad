"""JSON Lines 日志。

每条记录一行 JSON：ts / level / name / msg，以及调用方通过
extra={"extra": {...}} 传入的结构化字段（tab_id、type、tool 等）。
开启 log_redact_content 时，对话内容相关字段只保留长度。
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from tab_agent_core.config.settings import settings


# 可能包含用户对话或页面内容的字段
_CONTENT_FIELDS = frozenset({"content", "message", "result", "arguments", "payload"})


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    redacted = {}
    for key, value in fields.items():
        if key in _CONTENT_FIELDS and value is not None:
            redacted[key] = f"<redacted {len(str(value))} chars>"
        else:
            redacted[key] = value
    return redacted


class JsonLinesFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(_redact(extra) if settings.log_redact_content else extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("tab_agent_core")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "agent.log", encoding="utf-8")
    fh.setFormatter(JsonLinesFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()
