"""Centralized logging configuration.

This module provides:
- JSONFormatter for structured logging (one JSON object per line)
- PlainFormatter for local debugging
- setup_logging() wiring a single stderr handler on the root logger

Log messages use a bracketed tag prefix, e.g. "[VAULT] Saved client".
The JSON formatter lifts the tag into its own field.
"""

import json
import logging
import re
import sys

_TAG_PATTERN = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)


def split_tag(message: str) -> tuple:
    """Split "[TAG] message" into ("TAG", "message"); untagged gives (None, message)."""
    tag_match = _TAG_PATTERN.match(message)
    if tag_match:
        return tag_match.group(1), tag_match.group(2)
    return None, message


def redact(token: str, visible: int = 6) -> str:
    """Shorten a credential so it can appear in logs."""
    if not token:
        return "<none>"
    return f"{token[:visible]}..."


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service_name: str = None):
        super().__init__()
        self.service_name = service_name or "mcp-oauth-proxy"

    def format(self, record: logging.LogRecord) -> str:
        tag, message = split_tag(record.getMessage())

        log_entry = {
            "service": self.service_name,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "logger": record.name,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    service_name: str = None,
    level: str = "INFO",
    json_logs: bool = False,
) -> logging.Logger:
    """Configure root logging.

    Args:
        service_name: Name stamped on structured log entries.
        level: Root log level name.
        json_logs: Emit JSON lines instead of plain text.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(JSONFormatter(service_name) if json_logs else PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Suppress noisy HTTP client logs (upstream IDP calls use httpx)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"[STARTUP] Logging configured (level={level}, format={'json' if json_logs else 'plain'})")

    return root_logger
