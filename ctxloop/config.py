"""
Configuration: model presets plus agent runtime settings.

Loading priority:
  1. Project dir .ctxloop.yml
  2. Git root .ctxloop.yml
  3. Global ~/.ctxloop/config.yml

``.env`` files in ~/.ctxloop and the project dir are loaded first, without
overriding variables already set.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from dotenv import load_dotenv

CONFIG_DIR = Path.home() / ".ctxloop"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".ctxloop.yml"

Validation = tuple[bool, Any, str]  # (valid, coerced_value, error_msg)

_TRUE_WORDS = ("1", "true", "yes", "on")
_FALSE_WORDS = ("0", "false", "no", "off")

_PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "databricks": "DATABRICKS_API_KEY",
}


# ── Field validation ──


def _parse_bool(value: Any) -> Validation:
    if isinstance(value, bool):
        return True, value, ""
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True, True, ""
    if word in _FALSE_WORDS:
        return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _int_between(lo: int, hi: int) -> Callable[[Any], Validation]:
    def check(value: Any) -> Validation:
        if isinstance(value, bool):
            return False, lo, "Must be an integer"
        try:
            number = int(value)
        except (TypeError, ValueError):
            return False, lo, "Must be an integer"
        if not lo <= number <= hi:
            return False, min(max(number, lo), hi), f"Must be between {lo} and {hi}"
        return True, number, ""
    return check


def _non_empty_str(value: Any) -> Validation:
    text = "" if value is None else str(value).strip()
    if not text:
        return False, "", "Must not be empty"
    return True, text, ""


@dataclass(frozen=True)
class ConfigFieldSpec:
    """One agent-level setting as written in YAML (``kebab-case``)."""
    key: str
    default: Any
    description: str
    validator: Callable[[Any], Validation]

    @property
    def field_name(self) -> str:
        return self.key.replace("-", "_")


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {spec.key: spec for spec in (
    ConfigFieldSpec("auto-compact", True,
                    "Summarise the conversation automatically at 80% context use", _parse_bool),
    ConfigFieldSpec("check-todo-staleness", True,
                    "Warn when reading a TODO list written by an earlier session", _parse_bool),
    ConfigFieldSpec("max-retry-attempts", 3,
                    "Attempts per provider call in interactive sessions", _int_between(1, 10)),
    ConfigFieldSpec("autonomous-max-retry-attempts", 6,
                    "Attempts per provider call in autonomous sessions", _int_between(1, 10)),
    ConfigFieldSpec("autonomous", False,
                    "Long unattended run: slower retry backoff and more attempts", _parse_bool),
    ConfigFieldSpec("acd-enabled", False,
                    "Dehydrate finished turns to fragments and enable the rehydrate tool", _parse_bool),
    ConfigFieldSpec("max-iterations", 400,
                    "Maximum model calls per user turn", _int_between(1, 1000)),
    ConfigFieldSpec("tool-timeout", 480,
                    "Seconds a single tool call may run", _int_between(1, 3600)),
    ConfigFieldSpec("verbose", False, "Log INFO to the console and DEBUG to the log file", _parse_bool),
    ConfigFieldSpec("session-dir", ".ctxloop",
                    "Directory holding sessions, thinned payloads and fragments", _non_empty_str),
)}


def validate_config_value(key: str, value: Any) -> Validation:
    """Check and coerce ``value`` for ``key``. Returns ``(valid, coerced, error)``."""
    if key == "active-model":
        return True, str(value), ""
    spec = CONFIG_FIELDS.get(key)
    if spec is None:
        return False, value, f"Unknown configuration key: {key}"
    return spec.validator(value)


# ── Model presets ──

# YAML key -> ModelPreset attribute
_PRESET_YAML_KEYS = {
    "provider": "provider",
    "model": "model",
    "description": "description",
    "api-base": "api_base",
    "api-key": "api_key",
    "api-key-env": "api_key_env",
    "temperature": "temperature",
    "max-tokens": "max_tokens",
    "context-window": "context_window",
    "thinking-budget": "thinking_budget",
    "cache-control": "supports_cache_control",
    "native-tool-calls": "native_tool_calls",
}


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 4096
    context_window: int = 128000
    thinking_budget: Optional[int] = None
    supports_cache_control: bool = False
    native_tool_calls: bool = False
    description: str = ""

    @classmethod
    def from_yaml(cls, name: str, data: Dict[str, Any]) -> "ModelPreset":
        kwargs = {attr: data[key] for key, attr in _PRESET_YAML_KEYS.items() if key in data}
        kwargs.setdefault("provider", "openai")
        kwargs.setdefault("model", "openai/gpt-4o-mini")
        for flag in ("supports_cache_control", "native_tool_calls"):
            if flag in kwargs:
                kwargs[flag] = bool(kwargs[flag])
        return cls(name=name, **kwargs)

    def to_yaml(self) -> Dict[str, Any]:
        """YAML mapping with unset optional values left out."""
        out: Dict[str, Any] = {}
        for key, attr in _PRESET_YAML_KEYS.items():
            value = getattr(self, attr)
            if value is None or value == "":
                continue
            out[key] = value
        return out

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        env_var = self.api_key_env or _PROVIDER_KEY_ENV.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_provider_kwargs(self) -> dict:
        """Keyword arguments for LiteLLMProvider, passed directly rather than via env vars."""
        return {
            "model": self.model,
            "provider": self.provider,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "context_window": self.context_window,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
            "thinking_budget": self.thinking_budget,
            "native_tool_calls": self.native_tool_calls,
            "supports_cache_control": self.supports_cache_control,
        }


def default_presets() -> Dict[str, ModelPreset]:
    return {
        "local": ModelPreset(
            name="local", provider="openai", model="openai/model",
            api_base="http://localhost:8080/v1", api_key="not-needed",
            description="Local OpenAI-compatible server on :8080",
            max_tokens=4096, context_window=32000,
        ),
        "claude": ModelPreset(
            name="claude", provider="anthropic",
            model="anthropic/claude-sonnet-4-20250514",
            api_key_env="ANTHROPIC_API_KEY",
            description="Claude Sonnet with extended thinking",
            max_tokens=32000, context_window=200000,
            thinking_budget=8000, supports_cache_control=True,
            native_tool_calls=True,
        ),
        "gpt": ModelPreset(
            name="gpt", provider="openai", model="openai/gpt-4o",
            api_key_env="OPENAI_API_KEY",
            description="OpenAI GPT-4o",
            max_tokens=16000, context_window=128000,
            native_tool_calls=True,
        ),
    }


# ── Config ──

# Environment variable -> (field, parser returning a Validation)
_ENV_OVERRIDES = {
    "CTXLOOP_MODEL": ("active_model", lambda v: (True, v, "")),
    "CTXLOOP_VERBOSE": ("verbose", _parse_bool),
    "CTXLOOP_AUTONOMOUS": ("autonomous", _parse_bool),
}


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    auto_compact: bool = True
    check_todo_staleness: bool = True
    max_retry_attempts: int = 3
    autonomous_max_retry_attempts: int = 6
    autonomous: bool = False
    acd_enabled: bool = False
    max_iterations: int = 400
    tool_timeout: int = 480
    verbose: bool = False
    session_dir: str = ".ctxloop"
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        project_path = Path(project_dir).resolve()
        for env_file in (CONFIG_DIR / ".env", project_path / ".env"):
            if env_file.is_file():
                load_dotenv(env_file, override=False)

        config = cls(project_root=str(project_path))
        source = cls._locate_config_file(project_path)
        if source is None or not config._apply_yaml(source):
            config.use_default_presets()
        if source is not None:
            config._config_source = str(source)

        config._apply_env()
        return config

    @classmethod
    def _locate_config_file(cls, project_path: Path) -> Optional[Path]:
        candidates = [project_path / PROJECT_CONFIG_NAME]
        git_root = cls._find_git_root(project_path)
        if git_root and git_root != project_path:
            candidates.append(git_root / PROJECT_CONFIG_NAME)
        candidates.append(CONFIG_FILE)
        return next((c for c in candidates if c.is_file()), None)

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return candidate
        return None

    def use_default_presets(self) -> None:
        self.models = default_presets()
        self.active_model = "local"

    def _apply_yaml(self, filepath: Path) -> bool:
        """Read settings and presets from ``filepath``. False if it had no presets."""
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            return False

        self.active_model = str(data.get("active-model", "local"))
        for key, spec in CONFIG_FIELDS.items():
            if key in data:
                valid, coerced, _ = spec.validator(data[key])
                setattr(self, spec.field_name, coerced if valid else spec.default)

        self.models = {
            name: ModelPreset.from_yaml(name, entry or {})
            for name, entry in (data.get("models") or {}).items()
        }
        return bool(self.models)

    def _apply_env(self) -> None:
        for env_var, (attr, parse) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if not raw:
                continue
            valid, value, _ = parse(raw)
            if valid:
                setattr(self, attr, value)

    def save(self, filepath: Optional[str] = None) -> None:
        if filepath:
            target = Path(filepath)
        elif self._config_source:
            target = Path(self._config_source)
        else:
            target = CONFIG_FILE
        target.parent.mkdir(parents=True, exist_ok=True)

        data: Dict[str, Any] = {"active-model": self.active_model}
        data.update({key: getattr(self, spec.field_name) for key, spec in CONFIG_FIELDS.items()})
        data["models"] = {name: preset.to_yaml() for name, preset in self.models.items()}

        with open(target, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        return ModelPreset(name="default", provider="openai", model="openai/model",
                           api_base="http://localhost:8080/v1", api_key="not-needed")

    def retry_attempts(self) -> int:
        """Attempts per provider call for the current mode."""
        return self.autonomous_max_retry_attempts if self.autonomous else self.max_retry_attempts

    def summary(self) -> dict:
        preset = self.get_active_preset()
        on_off = lambda flag: "ON" if flag else "OFF"
        return {
            "Active model": f"{self.active_model} → {preset.model}",
            "Provider": preset.provider,
            "Context window": f"{preset.context_window:,} tokens",
            "Thinking budget": preset.thinking_budget or "(none)",
            "API key": "✓" if preset.resolve_api_key() else "✗ not set",
            "Auto compact": on_off(self.auto_compact),
            "Autonomous": on_off(self.autonomous),
            "Retry attempts": self.retry_attempts(),
            "Dehydration": on_off(self.acd_enabled),
            "Tool timeout": f"{self.tool_timeout}s",
            "Session dir": self.session_dir,
            "Config": self._config_source or "(defaults)",
        }

    def get_config_value(self, key: str) -> Any:
        if key == "active-model":
            return self.active_model
        spec = CONFIG_FIELDS.get(key)
        return getattr(self, spec.field_name) if spec else None

    def set_config_value(self, key: str, value: Any, persist: bool = True) -> tuple[bool, str]:
        """Validate and set one setting. Returns ``(success, error_message)``."""
        if key == "active-model":
            if value not in self.models:
                return False, f"Model '{value}' not found."
            self.active_model = value
        else:
            valid, coerced, error = validate_config_value(key, value)
            if not valid:
                return False, error
            setattr(self, CONFIG_FIELDS[key].field_name, coerced)

        if persist:
            self.save()
        return True, ""
