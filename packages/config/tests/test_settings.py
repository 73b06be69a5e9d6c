"""Tests for WriterSettings loading and retry preset selection."""

import pytest

from franz_common.exceptions import ConfigurationError
from franz_config import (
    RetrySettings,
    SettingsFileNotFoundError,
    WriterSettings,
    load_settings,
)


class TestDefaults:

    def test_defaults_without_file_or_env(self):
        settings = load_settings(environ={})

        assert settings.provider == "echo"
        assert settings.default_model == "gemini-2.5-flash"
        assert settings.default_temperature == 0.7
        assert settings.export.timeout_seconds == 30.0
        assert settings.export.cleanup_after_days == 7
        assert settings.documents.backend == "memory"
        assert settings.event_bus == {"backend": "memory"}

    def test_unknown_keys_are_ignored(self):
        settings = WriterSettings.from_dict({"provider": "gemini", "colour": "blue"})
        assert settings.provider == "gemini"


class TestFileLoading:

    def test_file_with_substitution(self, settings_file):
        settings = load_settings(settings_file, environ={"TEST_GEMINI_KEY": "secret"})

        assert settings.provider == "gemini"
        assert settings.api_key == "secret"
        assert settings.default_temperature == 0.4
        assert settings.export.timeout_seconds == 45
        assert settings.retry.grounding == "FAST"
        assert settings.documents.backend == "file"

    def test_env_beats_file(self, settings_file):
        settings = load_settings(
            settings_file,
            environ={
                "TEST_GEMINI_KEY": "secret",
                "FRANZ_PROVIDER": "echo",
                "FRANZ_EXPORT_TIMEOUT": "5",
                "AI_RETRY_GROUNDING": "CONSERVATIVE",
            },
        )

        assert settings.provider == "echo"
        assert settings.export.timeout_seconds == 5.0
        assert settings.retry.grounding == "CONSERVATIVE"
        # untouched nested values survive the merge
        assert settings.retry.workflow_overrides == {"poem-generation": "AGGRESSIVE"}

    def test_settings_path_from_env(self, settings_file):
        settings = load_settings(
            environ={"FRANZ_SETTINGS": str(settings_file), "TEST_GEMINI_KEY": "k"}
        )
        assert settings.api_key == "k"

    def test_missing_explicit_file(self, temp_dir):
        with pytest.raises(SettingsFileNotFoundError):
            load_settings(temp_dir / "absent.yaml", environ={})

    def test_unsupported_format(self, temp_dir):
        path = temp_dir / "settings.toml"
        path.write_text("provider = 'echo'")
        with pytest.raises(ConfigurationError, match="Unsupported"):
            load_settings(path, environ={})

    def test_empty_file(self, temp_dir):
        path = temp_dir / "empty.yaml"
        path.write_text("")
        assert load_settings(path, environ={}).provider == "echo"

    def test_api_key_from_google_env(self):
        settings = load_settings(environ={"GOOGLE_API_KEY": "g"})
        assert settings.api_key == "g"

    def test_bad_document_backend(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={"FRANZ_DOCUMENT_STORE": "firestore"})


class TestRetrySettings:

    def test_operation_defaults(self):
        retry = RetrySettings()
        assert retry.preset_for("text_generation") == "STANDARD"
        assert retry.preset_for("image_generation") == "AGGRESSIVE"
        assert retry.preset_for("grounding") == "RATE_LIMIT"
        assert retry.preset_for("unknown-op") == "STANDARD"

    def test_override_precedence(self):
        retry = RetrySettings(
            workflow_overrides={"poem": "fast"},
            stage_overrides={"image": "none"},
        )
        assert retry.preset_for("text_generation", "poem", "image") == "NONE"
        assert retry.preset_for("text_generation", "poem", "other") == "FAST"
        assert retry.preset_for("grounding", "other", "other") == "RATE_LIMIT"

    def test_only_stage_operations_have_presets(self):
        settings = WriterSettings.from_dict({"retry": {"default": "fast", "thinking": "none"}})

        assert not hasattr(settings.retry, "thinking")
        assert settings.retry.preset_for("thinking") == "FAST"

    def test_preset_names_are_normalized(self):
        assert RetrySettings(grounding="rate-limit").grounding == "RATE_LIMIT"

    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError, match="Unknown retry preset"):
            RetrySettings(text_generation="YOLO")
