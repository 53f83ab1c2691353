"""
Logging configuration tests.
"""

import json
import logging

from logging_config import JSONFormatter, redact, setup_logging, split_tag


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("oauth.provider", logging.INFO, __file__, 10, message, None, None)


def test_split_tag():
    assert split_tag("[VAULT] Saved client: abc") == ("VAULT", "Saved client: abc")
    assert split_tag("no tag here") == (None, "no tag here")


def test_redact_keeps_only_a_prefix():
    assert redact("abcdefghijklmnop") == "abcdef..."
    assert redact("") == "<none>"
    assert redact(None) == "<none>"


def test_json_formatter_lifts_tag():
    entry = json.loads(JSONFormatter("proxy-test").format(_record("[OAUTH] Registered client: abc")))

    assert entry["service"] == "proxy-test"
    assert entry["level"] == "INFO"
    assert entry["tag"] == "OAUTH"
    assert entry["message"] == "Registered client: abc"
    assert entry["logger"] == "oauth.provider"


def test_setup_logging_installs_single_handler():
    root = setup_logging("proxy-test", level="DEBUG", json_logs=True)
    try:
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging("proxy-test")
        assert len(root.handlers) == 1
    finally:
        root.handlers.clear()
        root.setLevel(logging.WARNING)
