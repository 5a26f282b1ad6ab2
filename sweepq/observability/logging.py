from __future__ import annotations

import logging
import os
import re
from collections.abc import MutableMapping
from typing import Any, Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_EMAIL_PATTERN = re.compile(r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")


def _resolve_level() -> int:
    level_name = os.getenv("SWEEPQ_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def mask_email(text: str) -> str:
    """Mask the local part of any email address in text (a***@example.com)."""
    return _EMAIL_PATTERN.sub(r"\1***@\2", text)


class EmailRedactionFilter(logging.Filter):
    """Masks mailbox addresses in rendered log messages.

    Enabled with SWEEPQ_LOG_REDACT_EMAILS=true. User emails are identity keys
    throughout the engine, so they show up in most log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_email(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class UserLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the user it concerns."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[user={self.extra['user']}] {msg}", kwargs


def get_logger(name: str) -> logging.Logger:
    """Return a module logger configured with a single stream handler."""
    global _HANDLER_ATTACHED

    level = _resolve_level()

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        if os.getenv("SWEEPQ_LOG_REDACT_EMAILS", "false").lower() == "true":
            handler.addFilter(EmailRedactionFilter())
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(level)
        _HANDLER_ATTACHED = True
    else:
        logging.getLogger().setLevel(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def get_user_logger(name: str, user: str) -> UserLoggerAdapter:
    """Module logger bound to a single user for per-user processing loops."""
    return UserLoggerAdapter(get_logger(name), {"user": user})
