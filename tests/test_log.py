"""Unit tests for logging switches and redaction."""

from __future__ import annotations

import logging

import pytest

from authmanager import log


class TestLoggingSwitch:
    """Tests for enable_logging / log_level handling."""

    def test_disabled_by_default(self) -> None:
        """The package logger drops everything until enabled."""
        logger = log.get_logger()
        assert not log.is_enabled()
        assert not logger.isEnabledFor(logging.CRITICAL)

    def test_enable_applies_level(self) -> None:
        """Enabling applies the configured level."""
        log.configure_logging(enabled=True, level="warn")
        logger = log.get_logger()
        assert logger.isEnabledFor(logging.WARNING)
        assert not logger.isEnabledFor(logging.INFO)

    def test_level_survives_disable(self) -> None:
        """Disabling and re-enabling keeps the chosen level."""
        log.configure_logging(enabled=True, level="debug")
        log.set_enabled(False)
        assert not log.get_logger().isEnabledFor(logging.ERROR)
        log.set_enabled(True)
        assert log.get_logger().isEnabledFor(logging.DEBUG)

    def test_unknown_level(self) -> None:
        """Unknown level names are rejected."""
        with pytest.raises(ValueError, match="Unknown log level"):
            log.set_level("verbose")

    def test_child_loggers_follow(self, caplog: pytest.LogCaptureFixture) -> None:
        """Module loggers under the package honour the switch."""
        child = logging.getLogger("authmanager.manager")
        with caplog.at_level(logging.NOTSET):
            child.info("hidden")
            log.configure_logging(enabled=True, level="info")
            child.info("visible")
        assert "hidden" not in caplog.text
        assert "visible" in caplog.text


class TestRedaction:
    """Tests for redact_sensitive_data."""

    def test_sensitive_keys_redacted(self) -> None:
        """Secrets, tokens, codes and flow parameters are masked."""
        data = {
            "client_id": "abc",
            "client_secret": "s3cret",
            "access_token": "tok",
            "code": "c",
            "state": "st",
            "nonce": "n",
            "code_verifier": "v",
            "password": "pw",
        }
        redacted = log.redact_sensitive_data(data)
        assert redacted["client_id"] == "abc"
        for key in data.keys() - {"client_id"}:
            assert redacted[key] == "[REDACTED]"

    def test_nested_structures(self) -> None:
        """Dicts inside lists are redacted too and input is untouched."""
        data = {"items": [{"refresh_token": "r", "name": "n"}]}
        redacted = log.redact_sensitive_data(data)
        assert redacted == {"items": [{"refresh_token": "[REDACTED]", "name": "n"}]}
        assert data["items"][0]["refresh_token"] == "r"

    def test_max_depth(self) -> None:
        """Recursion stops at max_depth."""
        assert log.redact_sensitive_data({"a": {"b": 1}}, max_depth=1) == {"a": "[MAX_DEPTH]"}

    def test_scalars(self) -> None:
        """Scalars and None pass through."""
        assert log.redact_sensitive_data("plain") == "plain"
        assert log.redact_sensitive_data(None) is None
