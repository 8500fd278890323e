"""Tests for logging setup and credential masking."""

import logging
import os
from unittest.mock import patch

import pytest

from logger import LOGGER_NAME, CredentialMaskingFilter, mask_credentials, mask_secret, setup_logging
from models import SessionKey


class TestMaskSecret:
    @pytest.mark.parametrize("secret", ["", "   "])
    def test_empty(self, secret):
        assert mask_secret(secret) == ""

    @pytest.mark.parametrize("secret", ["a", "abcd", "abcdefgh"])
    def test_short_secrets_fully_starred(self, secret):
        assert mask_secret(secret) == "*" * len(secret)

    def test_reveals_at_most_a_quarter_per_end(self):
        masked = mask_secret("abcdefghijk")
        assert masked == "ab...jk"

    def test_long_secret_uses_default_window(self):
        secret = "0123456789" * 4
        assert mask_secret(secret) == "012345...6789"

    def test_session_key_repr_hides_credential(self):
        key = SessionKey("abcdefghijk", "abc123")
        assert "abcdefghijk" not in repr(key)
        assert "abc123" in repr(key)


class TestMaskCredentials:
    def test_bearer_and_token(self):
        text = "headers={'Authorization': 'Bearer abcdefghijklmnop'} upstream=Token qrstuvwxyz0123456"
        masked = mask_credentials(text)
        assert "abcdefghijklmnop" not in masked
        assert "qrstuvwxyz0123456" not in masked
        assert "Bearer abcd...mnop" in masked

    def test_plain_text_untouched(self):
        text = "Backend auth token=abc1...ef status=200"
        assert mask_credentials(text) == text


class TestCredentialMaskingFilter:
    def _record(self, msg, *args):
        return logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 1, msg, args, None)

    def test_masks_formatted_args(self):
        record = self._record("auth header=%s", "Bearer supersecretvalue123")
        assert CredentialMaskingFilter().filter(record) is True
        assert "supersecretvalue123" not in record.getMessage()

    def test_leaves_clean_records_alone(self):
        record = self._record("persona=%s", "abc123")
        CredentialMaskingFilter().filter(record)
        assert record.args == ("abc123",)
        assert record.getMessage() == "persona=abc123"


class TestSetupLogging:
    @pytest.fixture
    def restore_logging(self):
        yield
        setup_logging(os.environ.get("LOG_PATH"))

    def test_credentials_masked_in_log_file(self, tmp_path, restore_logging):
        log_file = tmp_path / "proxy.log"
        with patch.dict(os.environ, {"LOG_LEVEL": "INFO", "LOG_COLOR": "false"}):
            logger = setup_logging(str(log_file))
        logger.info("forwarding Authorization: Bearer leakedtoken-123456")
        for handler in logger.handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "forwarding Authorization: Bearer" in content
        assert "leakedtoken-123456" not in content

    def test_disable(self, restore_logging):
        with patch.dict(os.environ, {"LOG_LEVEL": "DISABLE"}):
            logger = setup_logging("/tmp/unused.log")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.NullHandler)
