"""Single-line JSON logs on stdout.

Structured fields go under ``extra={"context": {...}}``. Credential-like keys
are masked at any depth before a record is written.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Mapping

SECRET_CONTEXT_KEYS = frozenset({"access_token", "api_token", "api_key", "password", "authorization"})
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "pypdf")
LOGGER_PREFIX = "relay"


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "***" if str(key).lower() in SECRET_CONTEXT_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if isinstance(context, Mapping) and context:
            entry["context"] = _redact(context)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger bound to a fixed context such as client id and lead id.

    Per-call fields are passed as ``context=`` and override bound ones.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {**(self.extra or {}), **(kwargs.pop("context", None) or {})}
        if context:
            kwargs["extra"] = {**kwargs.get("extra", {}), "context": context}
        return msg, kwargs

    def bind(self, **context: Any) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**(self.extra or {}), **context})
