"""Tests for YAML settings loading."""
import pytest

from config import settings as settings_module
from config.settings import Settings, load_settings, validate_settings


@pytest.fixture(autouse=True)
def _reset_cached_settings():
    yield
    settings_module._settings = None


def write_config(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.nudge.delay_s == 120
        assert settings.escalation.max_retries == 3
        assert settings.database.store_backend == "memory"
        assert settings.conversation.ai_states == ["welcome", "major", "major_other", "custom_time"]

    def test_sections_are_read(self, tmp_path):
        path = write_config(tmp_path, """
log_level: DEBUG
nudge:
  delay_s: 30
  affirmative_keywords: [vâng]
escalation:
  max_retries: 5
  reset_user_data: true
  hotline: 1800 1234
database:
  store_backend: file
  store_file_dir: /tmp/sessions
llm:
  provider: openai
  timeout_s: 4
""")
        settings = load_settings(path)
        assert settings.log_level == "DEBUG"
        assert settings.nudge.delay_s == 30
        assert settings.nudge.affirmative_keywords == ["vâng"]
        assert settings.escalation.max_retries == 5
        assert settings.escalation.reset_user_data is True
        assert settings.escalation.hotline == "1800 1234"
        assert settings.database.store_backend == "file"
        assert settings.llm.provider == "openai"
        assert settings.llm.timeout_s == 4
        assert settings.llm.max_retries == 2

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_ENC_KEY", "k" * 32)
        path = write_config(tmp_path, "security:\n  encryption_key: ${TEST_ENC_KEY}\n")
        assert load_settings(path).security.encryption_key == "k" * 32

    def test_unset_env_var_leaves_key_empty(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_ENC_KEY_MISSING", raising=False)
        path = write_config(tmp_path, "security:\n  encryption_key: ${TEST_ENC_KEY_MISSING}\n")
        assert load_settings(path).security.encryption_key == ""

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("ADMISSIONS_CONFIG", path)
        assert load_settings().app_name == "FromEnv"

    def test_invalid_backend_rejected(self, tmp_path):
        path = write_config(tmp_path, "database:\n  store_backend: redis\n")
        with pytest.raises(ValueError, match="store backend"):
            load_settings(path)


class TestValidateSettings:
    def test_defaults_are_valid(self):
        validate_settings(Settings())

    def test_non_positive_delay(self):
        settings = Settings()
        settings.nudge.delay_s = 0
        with pytest.raises(ValueError, match="delay_s"):
            validate_settings(settings)

    def test_zero_max_retries(self):
        settings = Settings()
        settings.escalation.max_retries = 0
        with pytest.raises(ValueError, match="max_retries"):
            validate_settings(settings)
