"""
Configuration: model presets and runtime limits with project-level config.

Loading priority:
  1. Project dir .turnloop.yml
  2. Git root .turnloop.yml
  3. Global ~/.turnloop/config.yml

``.env`` files (global, then project) are loaded first; ``TURNLOOP_*``
environment variables are applied last and win over every file. Invalid
values raise :class:`~turnloop.errors.ConfigError` instead of being clamped.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Any

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

CONFIG_DIR = Path.home() / ".turnloop"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".turnloop.yml"

PERMISSION_MODES = {"default", "bypass", "plan", "acceptEdits", "dontAsk"}


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "float", "bool", "list"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    if isinstance(value, bool):
        return False, 0, "Must be an integer"
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_optional_positive_int(value: Any) -> tuple[bool, Optional[int], str]:
    if value is None or value == "":
        return True, None, ""
    valid, parsed, _ = _validate_int_range(value, 1, 10_000_000)
    if not valid:
        return False, None, "Must be a positive integer"
    return True, parsed, ""


def _validate_percentage(value: Any) -> tuple[bool, Optional[float], str]:
    """Percentage in (0, 100]; empty means unset."""
    if value is None or value == "":
        return True, None, ""
    if isinstance(value, bool):
        return False, None, "Must be a number"
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return False, None, "Must be a number"
    if not 0 < parsed <= 100:
        return False, None, "Must be greater than 0 and at most 100"
    return True, parsed, ""


def _validate_enum(value: Any, valid_values: set) -> tuple[bool, str, str]:
    """Validate value is in allowed set (case-sensitive, permission modes are camelCase)."""
    val_str = str(value).strip()
    if val_str not in valid_values:
        return False, "", f"Must be one of: {', '.join(sorted(valid_values))}"
    return True, val_str, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _validate_name_list(value: Any) -> tuple[bool, List[str], str]:
    """Tool names, as a YAML list or a comma-separated string."""
    if isinstance(value, str):
        raw_values = value.split(",")
    elif isinstance(value, list):
        raw_values = [str(item) for item in value]
    else:
        return False, [], "Must be a list of tool names"
    return True, [item.strip() for item in raw_values if item.strip()], ""


# Configuration field registry with validation
CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "active-model": ConfigFieldSpec(
        key="active-model",
        field_name="active_model",
        description="Currently active model preset name",
        value_type="str",
        default="sonnet",
    ),
    "max-turns": ConfigFieldSpec(
        key="max-turns",
        field_name="max_turns",
        description="Maximum model round-trips for one user message",
        value_type="int",
        default=50,
        validator=lambda v: _validate_int_range(v, 1, 500),
    ),
    "permission-mode": ConfigFieldSpec(
        key="permission-mode",
        field_name="permission_mode",
        description="How tool calls are approved: default, bypass, plan, acceptEdits, dontAsk",
        value_type="str",
        default="default",
        validator=lambda v: _validate_enum(v, PERMISSION_MODES),
    ),
    "approval-timeout": ConfigFieldSpec(
        key="approval-timeout",
        field_name="approval_timeout",
        description="Seconds to wait for an approval answer before denying",
        value_type="int",
        default=60,
        validator=lambda v: _validate_int_range(v, 1, 3600),
    ),
    "tool-parallelism": ConfigFieldSpec(
        key="tool-parallelism",
        field_name="tool_parallelism",
        description="Max concurrent read-only tool calls",
        value_type="int",
        default=4,
        validator=lambda v: _validate_int_range(v, 1, 12),
    ),
    "compact-enabled": ConfigFieldSpec(
        key="compact-enabled",
        field_name="compact_enabled",
        description="Run the auto-compaction cascade when the context fills up",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "microcompact-enabled": ConfigFieldSpec(
        key="microcompact-enabled",
        field_name="microcompact_enabled",
        description="Clear old oversized tool output before each request",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "session-memory-enabled": ConfigFieldSpec(
        key="session-memory-enabled",
        field_name="session_memory_enabled",
        description="Prefer durable session notes over a one-shot summary when compacting",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "max-output-tokens": ConfigFieldSpec(
        key="max-output-tokens",
        field_name="max_output_tokens",
        description="Lower the reserved output tokens below the model default",
        value_type="int",
        default=None,
        validator=_validate_optional_positive_int,
    ),
    "autocompact-pct-override": ConfigFieldSpec(
        key="autocompact-pct-override",
        field_name="autocompact_pct_override",
        description="Compact once this percentage of the input space is used",
        value_type="float",
        default=None,
        validator=_validate_percentage,
    ),
    "auto-save": ConfigFieldSpec(
        key="auto-save",
        field_name="auto_save",
        description="Save the session after every turn",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Log at INFO level",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
    "system-prompt": ConfigFieldSpec(
        key="system-prompt",
        field_name="system_prompt",
        description="System prompt sent with every request",
        value_type="str",
        default="",
    ),
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)

    if spec.value_type == "str":
        return True, "" if value is None else str(value), ""
    if spec.value_type == "bool":
        return _validate_bool(value)
    return True, value, ""


@dataclass
class ModelPreset:
    name: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def get_llm_kwargs(self) -> dict:
        """Keyword arguments for :class:`~turnloop.llm.LiteLLMTransport`."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }


def default_presets() -> Dict[str, ModelPreset]:
    return {
        "sonnet": ModelPreset(
            name="sonnet", model="anthropic/claude-sonnet-4-20250514",
            api_key_env="ANTHROPIC_API_KEY", description="Claude Sonnet 4",
        ),
        "opus": ModelPreset(
            name="opus", model="anthropic/claude-opus-4-5",
            api_key_env="ANTHROPIC_API_KEY", description="Claude Opus 4.5",
        ),
        "haiku": ModelPreset(
            name="haiku", model="anthropic/claude-haiku-4-5",
            api_key_env="ANTHROPIC_API_KEY", description="Claude Haiku 4.5",
        ),
    }


# env var -> (config key, transform of the raw string)
ENV_OVERRIDES = {
    "TURNLOOP_MAX_OUTPUT_TOKENS": ("max-output-tokens", None),
    "TURNLOOP_AUTOCOMPACT_PCT_OVERRIDE": ("autocompact-pct-override", None),
    "TURNLOOP_DISABLE_COMPACT": ("compact-enabled", "negate"),
    "TURNLOOP_DISABLE_MICROCOMPACT": ("microcompact-enabled", "negate"),
    "TURNLOOP_PERMISSION_MODE": ("permission-mode", None),
    "TURNLOOP_MAX_TURNS": ("max-turns", None),
    "TURNLOOP_VERBOSE": ("verbose", None),
}


@dataclass
class Config:
    active_model: str = "sonnet"
    models: Dict[str, ModelPreset] = field(default_factory=default_presets)
    max_turns: int = 50
    permission_mode: str = "default"
    approval_timeout: int = 60
    tool_parallelism: int = 4
    compact_enabled: bool = True
    microcompact_enabled: bool = True
    session_memory_enabled: bool = True
    max_output_tokens: Optional[int] = None
    autocompact_pct_override: Optional[float] = None
    auto_save: bool = True
    verbose: bool = False
    system_prompt: str = ""
    allowed_tools: List[str] = field(default_factory=list)
    denied_tools: List[str] = field(default_factory=list)
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                break

        config._apply_env()
        config.project_root = str(project_path)
        return config

    def _set_validated(self, key: str, value: Any):
        is_valid, coerced, error_msg = validate_config_value(key, value)
        if not is_valid:
            raise ConfigError(key, error_msg)
        setattr(self, CONFIG_FIELDS[key].field_name, coerced)

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(str(filepath), f"not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(str(filepath), "top level must be a mapping")

        for key in CONFIG_FIELDS:
            if key in data:
                self._set_validated(key, data[key])

        permissions = data.get("permissions") or {}
        for list_key, attr in (("allow", "allowed_tools"), ("deny", "denied_tools")):
            if list_key in permissions:
                valid, names, error_msg = _validate_name_list(permissions[list_key])
                if not valid:
                    raise ConfigError(f"permissions.{list_key}", error_msg)
                setattr(self, attr, names)

        if data.get("models"):
            self.models = {}
            for name, m in data["models"].items():
                self.models[name] = ModelPreset(
                    name=name,
                    model=m.get("model", name),
                    api_base=m.get("api-base"), api_key=m.get("api-key"),
                    api_key_env=m.get("api-key-env"),
                    temperature=m.get("temperature", 0.0),
                    description=m.get("description", ""),
                )

    def _apply_env(self):
        for env_var, (key, transform) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None or raw.strip() == "":
                continue
            if transform == "negate":
                is_valid, flag, error_msg = _validate_bool(raw)
                if not is_valid:
                    raise ConfigError(env_var, error_msg)
                setattr(self, CONFIG_FIELDS[key].field_name, not flag)
                continue
            try:
                self._set_validated(key, raw)
            except ConfigError as e:
                raise ConfigError(env_var, str(e).split(": ", 1)[-1]) from e

        model = os.environ.get("TURNLOOP_MODEL")
        if model:
            if model not in self.models:
                self.models[model] = ModelPreset(name=model, model=model)
            self.active_model = model

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data = {key: getattr(self, spec.field_name) for key, spec in CONFIG_FIELDS.items()}
        data["permissions"] = {"allow": list(self.allowed_tools), "deny": list(self.denied_tools)}
        data["models"] = {}
        for name, m in self.models.items():
            entry = {"model": m.model, "description": m.description, "temperature": m.temperature}
            if m.api_base:
                entry["api-base"] = m.api_base
            if m.api_key:
                entry["api-key"] = m.api_key
            if m.api_key_env:
                entry["api-key-env"] = m.api_key_env
            data["models"][name] = entry

        with open(target, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        raise ConfigError("active-model", "no model presets configured")

    @property
    def model(self) -> str:
        """litellm model identifier of the active preset."""
        return self.get_active_preset().model

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None

    def get_config_value(self, key: str) -> Any:
        """Get configuration value by key."""
        if key not in CONFIG_FIELDS:
            return None
        spec = CONFIG_FIELDS[key]
        return getattr(self, spec.field_name, spec.default)

    def set_config_value(self, key: str, value: Any) -> tuple[bool, str]:
        """
        Set configuration value with validation.

        Returns:
            (success, error_message)
        """
        if key == "active-model" and value not in self.models:
            return False, f"Model '{value}' not found."
        is_valid, coerced_value, error_msg = validate_config_value(key, value)
        if not is_valid:
            return False, error_msg
        setattr(self, CONFIG_FIELDS[key].field_name, coerced_value)
        return True, ""
