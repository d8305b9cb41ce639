"""
Configuration loading tests.

Run with: pytest tests/test_config.py -v
"""

import os

import pytest

from src.config import (
    DEFAULT_MODEL,
    SYNC_FIELDS,
    ConfigError,
    Settings,
    load_environment,
)

ALL_VARS = (
    "FRESHCHAT_TOKEN", "FRESHCHAT_DOMAIN", "FRESHCHAT_RPM", "OPENAI_API_KEY",
    "OPENAI_MODEL", "OPENAI_RPM", "DATABASE_URL", "LOOKBACK_HOURS", "VERBOSE_LOG",
    "BATCH_SIZE", "RATE_LIMIT_DELAY", "BATCH_DELAY", "MAX_CONVERSATIONS",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ALL_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettingsFromEnv:

    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.freshchat_token is None
        assert settings.openai_model == DEFAULT_MODEL
        assert settings.openai_rpm == 500
        assert settings.lookback_hours == 2
        assert settings.batch_size == 50
        assert settings.rate_limit_delay_ms == 1000
        assert settings.batch_delay_ms == 5000
        assert settings.max_conversations == 100
        assert settings.verbose_log is False

    def test_reads_values(self, clean_env):
        clean_env.setenv("FRESHCHAT_TOKEN", " tok ")
        clean_env.setenv("LOOKBACK_HOURS", "6")
        clean_env.setenv("VERBOSE_LOG", "true")
        clean_env.setenv("OPENAI_MODEL", "gpt-4o")

        settings = Settings.from_env()

        assert settings.freshchat_token == "tok"
        assert settings.lookback_hours == 6
        assert settings.verbose_log is True
        assert settings.openai_model == "gpt-4o"

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "999999"])
    def test_invalid_ints_fall_back(self, clean_env, raw):
        clean_env.setenv("BATCH_SIZE", raw)
        assert Settings.from_env().batch_size == 50

    def test_blank_string_is_unset(self, clean_env):
        clean_env.setenv("DATABASE_URL", "   ")
        assert Settings.from_env().database_url is None


class TestRequire:

    def test_lists_every_missing_field(self):
        with pytest.raises(ConfigError) as exc_info:
            Settings(freshchat_token="t").require(*SYNC_FIELDS)

        assert str(exc_info.value) == (
            "Missing required configuration: FRESHCHAT_DOMAIN, DATABASE_URL"
        )

    def test_returns_self_when_complete(self):
        settings = Settings(
            freshchat_token="t", freshchat_domain="acme.freshchat.com", database_url="postgresql://x"
        )
        assert settings.require(*SYNC_FIELDS) is settings


class TestBaseUrl:

    @pytest.mark.parametrize("domain,expected", [
        ("acme.freshchat.com", "https://acme.freshchat.com/v2"),
        ("https://acme.freshchat.com/", "https://acme.freshchat.com/v2"),
        ("http://localhost:8080", "http://localhost:8080/v2"),
    ])
    def test_base_url(self, domain, expected):
        assert Settings(freshchat_domain=domain).freshchat_base_url == expected


class TestLoadEnvironment:

    def test_prefers_env_local(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SUPPORTSYNC_TEST_VALUE", "placeholder")
        monkeypatch.delenv("SUPPORTSYNC_TEST_VALUE")
        (tmp_path / ".env").write_text("SUPPORTSYNC_TEST_VALUE=from-env\n")
        (tmp_path / ".env.local").write_text("SUPPORTSYNC_TEST_VALUE=from-local\n")

        loaded = load_environment(tmp_path)

        assert loaded == tmp_path / ".env.local"
        assert os.environ["SUPPORTSYNC_TEST_VALUE"] == "from-local"

    def test_does_not_override_existing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SUPPORTSYNC_TEST_VALUE", "from-shell")
        (tmp_path / ".env").write_text("SUPPORTSYNC_TEST_VALUE=from-file\n")

        load_environment(tmp_path)

        assert os.environ["SUPPORTSYNC_TEST_VALUE"] == "from-shell"

    def test_no_file(self, tmp_path):
        assert load_environment(tmp_path) is None
