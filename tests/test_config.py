"""Tests for configuration loading and validation."""

import pytest
import yaml

from ctxloop.config import CONFIG_FIELDS, Config, ModelPreset, validate_config_value


class TestLoad:
    def test_defaults_without_files(self, tmp_dir):
        config = Config.load(str(tmp_dir))
        assert config.active_model == "local"
        assert set(config.models) == {"local", "claude", "gpt"}
        assert config.auto_compact is True
        assert config.max_iterations == 400
        assert config._config_source == ""

    def test_project_file(self, config_yaml_file, tmp_dir):
        config = Config.load(str(tmp_dir))
        assert config._config_source == str(config_yaml_file)
        assert config.max_retry_attempts == 4
        assert config.max_iterations == 50
        assert config.tool_timeout == 30
        sonnet = config.models["sonnet"]
        assert sonnet.thinking_budget == 8000
        assert sonnet.supports_cache_control is True
        assert sonnet.native_tool_calls is True

    def test_invalid_values_fall_back_to_default(self, tmp_dir, sample_config_data):
        sample_config_data["max-iterations"] = "lots"
        sample_config_data["auto-compact"] = "maybe"
        with open(tmp_dir / ".ctxloop.yml", "w") as f:
            yaml.dump(sample_config_data, f)
        config = Config.load(str(tmp_dir))
        assert config.max_iterations == CONFIG_FIELDS["max-iterations"].default
        assert config.auto_compact is True

    def test_global_file(self, tmp_dir, isolated_config_home):
        isolated_config_home.mkdir(parents=True)
        with open(isolated_config_home / "config.yml", "w") as f:
            yaml.dump({"active-model": "m", "acd-enabled": True,
                       "models": {"m": {"provider": "openai", "model": "openai/gpt-4o"}}}, f)
        config = Config.load(str(tmp_dir))
        assert config.active_model == "m"
        assert config.acd_enabled is True

    def test_env_overrides(self, tmp_dir, monkeypatch):
        monkeypatch.setenv("CTXLOOP_MODEL", "gpt")
        monkeypatch.setenv("CTXLOOP_AUTONOMOUS", "true")
        config = Config.load(str(tmp_dir))
        assert config.active_model == "gpt"
        assert config.autonomous is True

    def test_save_and_reload(self, tmp_dir):
        config = Config.load(str(tmp_dir))
        config.tool_timeout = 99
        target = tmp_dir / ".ctxloop.yml"
        config.save(str(target))

        reloaded = Config.load(str(tmp_dir))
        assert reloaded.tool_timeout == 99
        assert reloaded.models["claude"].thinking_budget == 8000


class TestValidation:
    @pytest.mark.parametrize("key,value,expected", [
        ("auto-compact", "yes", True),
        ("auto-compact", "off", False),
        ("max-retry-attempts", "5", 5),
        ("session-dir", ".sessions", ".sessions"),
        ("active-model", "gpt", "gpt"),
    ])
    def test_valid(self, key, value, expected):
        ok, coerced, _ = validate_config_value(key, value)
        assert ok
        assert coerced == expected

    def test_out_of_range(self):
        ok, coerced, message = validate_config_value("max-retry-attempts", 50)
        assert not ok
        assert coerced == 10
        assert "between" in message

    def test_unknown_key(self):
        ok, _, message = validate_config_value("nonsense", 1)
        assert not ok
        assert "Unknown" in message

    def test_set_config_value(self, tmp_dir):
        config = Config.load(str(tmp_dir))
        assert config.set_config_value("tool-timeout", "60", persist=False) == (True, "")
        assert config.tool_timeout == 60
        assert config.get_config_value("tool-timeout") == 60
        ok, _ = config.set_config_value("active-model", "missing", persist=False)
        assert not ok


class TestPresets:
    def test_retry_attempts_follow_mode(self, tmp_dir):
        config = Config.load(str(tmp_dir))
        assert config.retry_attempts() == 3
        config.autonomous = True
        assert config.retry_attempts() == 6

    def test_provider_kwargs(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        preset = ModelPreset(name="c", provider="anthropic", model="anthropic/claude",
                             thinking_budget=4000, native_tool_calls=True)
        kwargs = preset.get_provider_kwargs()
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["thinking_budget"] == 4000
        assert kwargs["native_tool_calls"] is True
        assert kwargs["provider"] == "anthropic"

    def test_yaml_mapping_skips_unset_values(self):
        preset = ModelPreset.from_yaml("m", {"model": "openai/gpt-4o", "cache-control": 1})
        assert preset.provider == "openai"
        assert preset.supports_cache_control is True
        data = preset.to_yaml()
        assert data["model"] == "openai/gpt-4o"
        assert "api-key" not in data
        assert "thinking-budget" not in data

    def test_active_preset_fallback(self):
        config = Config(active_model="missing")
        assert config.get_active_preset().name == "default"
