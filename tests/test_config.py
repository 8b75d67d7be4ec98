import pytest
from tablecall.config import Settings, resolve_webhook_secret, validate_config

ALL_VARS = [
    "RETELL_WEBHOOK_API_KEY", "RETELL_API_KEY", "OPENAI_API_KEY", "OPENAI_MODEL",
    "OPENAI_BASE_URL", "EXTRACTION_TIMEOUT", "EXTRACTION_LEASE_SECONDS",
    "HUMAN_DURATION_THRESHOLD_MS", "MAX_WRITE_ATTEMPTS", "DEFAULT_TIMEZONE",
    "SUPABASE_URL", "SUPABASE_SECRET_KEY", "LOG_LEVEL", "PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ALL_VARS:
        monkeypatch.delenv(var, raising=False)


class TestValidateConfig:
    def test_missing_all_required_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            validate_config()
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "OPENAI_API_KEY" in err
        assert "RETELL_WEBHOOK_API_KEY or RETELL_API_KEY" in err

    def test_empty_string_counts_as_missing(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "")
        monkeypatch.setenv("RETELL_WEBHOOK_API_KEY", "whk")
        with pytest.raises(SystemExit):
            validate_config()

    def test_fallback_secret_is_enough(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("RETELL_API_KEY", "key_test")
        validate_config()

    def test_optional_missing_warns(self, monkeypatch, caplog):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("RETELL_WEBHOOK_API_KEY", "whk")
        with caplog.at_level("WARNING"):
            validate_config()
        assert "SUPABASE_URL" in caplog.text


class TestWebhookSecret:
    def test_dedicated_key_wins(self, monkeypatch):
        monkeypatch.setenv("RETELL_WEBHOOK_API_KEY", "whk")
        monkeypatch.setenv("RETELL_API_KEY", "key_test")
        assert resolve_webhook_secret() == "whk"

    def test_falls_back_with_warning(self, monkeypatch, caplog):
        monkeypatch.setenv("RETELL_API_KEY", "key_test")
        with caplog.at_level("WARNING"):
            assert resolve_webhook_secret() == "key_test"
        assert "falling back" in caplog.text

    def test_none_set(self):
        assert resolve_webhook_secret() == ""


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env()
        assert settings.extraction_timeout == 20.0
        assert settings.extraction_lease_seconds == 120.0
        assert settings.human_duration_threshold_ms == 5000
        assert settings.max_write_attempts == 3
        assert settings.default_timezone == "UTC"
        assert settings.port == 8765
        assert settings.uses_supabase is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://proj.supabase.co/")
        monkeypatch.setenv("SUPABASE_SECRET_KEY", "srk")
        monkeypatch.setenv("HUMAN_DURATION_THRESHOLD_MS", "8000")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = Settings.from_env()
        assert settings.supabase_url == "https://proj.supabase.co"
        assert settings.uses_supabase is True
        assert settings.human_duration_threshold_ms == 8000
        assert settings.log_level == "DEBUG"
