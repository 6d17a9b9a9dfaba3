"""JSON logging configuration for the expense bot."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        # Conversation keys are top-level so one chat can be filtered across loggers.
        for key in ("channel", "chat_id"):
            if key in context:
                log_data[key] = context.pop(key)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Replace root handlers with a single stdout JSON handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"expense_bot.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges a bound context into every record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            combined_context = {**self.extra, **(context or {})}
            kwargs["extra"] = {"context": combined_context}
        return msg, kwargs


# Channels whose chat id is the user's phone number.
PHONE_CHAT_CHANNELS = {"whatsapp"}


def mask_chat_id(chat_id: str, channel: str) -> str:
    """Keep the last four digits of a phone-number chat id."""
    chat_id = str(chat_id)
    if channel not in PHONE_CHAT_CHANNELS or len(chat_id) <= 4:
        return chat_id
    return "*" * (len(chat_id) - 4) + chat_id[-4:]


def chat_logger(name: str, chat_id: str, channel: str) -> LoggerAdapter:
    """Logger bound to one conversation. Phone numbers never reach the log stream."""
    return LoggerAdapter(get_logger(name), {"chat_id": mask_chat_id(chat_id, channel), "channel": channel})
