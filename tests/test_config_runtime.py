"""Settings loading, runtime wiring and log redaction."""

import pydantic
import pytest

from accountcore.config import Settings, get_settings, reset_settings_cache
from accountcore.logging import _redact_pii, hash_email, sanitize_error_message
from accountcore.service.notifications import EmailNotificationDispatcher, WebhookNotificationDispatcher
from accountcore.service.runtime import _mask_url_password, build_dispatcher, reset_runtime_for_tests
from accountcore.storage.memory import MemoryStore
from accountcore.storage.memory_cache import MemoryCache

from conftest import TEST_SECRET


class TestSettings:
    def test_short_jwt_secret_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret="too-short")

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_lockout_counts_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret=TEST_SECRET, max_login_attempts=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "  ")
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
        reset_settings_cache()
        try:
            settings = get_settings()
            assert settings.redis_url is None
            assert settings.max_login_attempts == 7
            assert settings.rotate_refresh_tokens is True
        finally:
            reset_settings_cache()


class TestRuntime:
    def test_test_mode_uses_in_process_backends(self):
        runtime = reset_runtime_for_tests()
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.auth.store is runtime.store

    def test_dispatcher_selection(self):
        settings = Settings(jwt_secret=TEST_SECRET)
        assert isinstance(build_dispatcher(settings), EmailNotificationDispatcher)
        hooked = Settings(jwt_secret=TEST_SECRET, notification_webhook_url="https://events.example.com")
        assert isinstance(build_dispatcher(hooked), WebhookNotificationDispatcher)

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None


class TestLogRedaction:
    def test_credential_fields_masked(self):
        event = _redact_pii(None, "info", {"password": "hunter2hunter2", "code": "123", "email_hash": "abcdef12"})
        assert event["password"] == "hu***r2"
        assert event["code"] == "***"
        assert event["email_hash"] == "abcdef12"

    def test_hash_email_is_case_insensitive(self):
        assert hash_email("Alice@Example.com ") == hash_email("alice@example.com")
        assert hash_email(None) is None

    def test_sanitize_error_message(self):
        cleaned = sanitize_error_message("connect to postgresql://app:pw@db/accounts failed")
        assert "pw@db" not in cleaned
        assert sanitize_error_message("") == "An error occurred"
