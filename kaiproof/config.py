"""
kaiproof Configuration

Configuration with YAML files, environment variables and validation.

Sources (in order of precedence):
    1. Environment variables (KAIPROOF_*)
    2. Runtime overrides (``ConfigManager.set``)
    3. Config file passed to :func:`load_config` / ``--config``
    4. Default values

Unknown keys in a config file raise :class:`ConfigError`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from kaiproof.errors import KaiproofError

T = TypeVar("T")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(KaiproofError):
    """Configuration error."""

    code = "CONFIG_ERROR"


class ValidationError(ConfigError):
    """Configuration validation error."""

    code = "CONFIG_VALIDATION_ERROR"


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    The environment variable, when set, wins over any value set from a file
    or at runtime.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        value = self._coerce(value) if isinstance(value, str) else value
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce a string to the type of the default."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
        except ValueError as ex:
            raise ValidationError(f"{self.env_var or 'value'}: cannot parse {value!r}") from ex
        return value  # type: ignore


@dataclass
class WebAuthnConfig:
    """Relying party and prompt settings."""
    rp_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="phi.network",
        env_var="KAIPROOF_RP_ID",
        description="Relying party id passkeys are registered under",
        validator=lambda x: bool(x) and "/" not in x and ":" not in x,
    ))
    rp_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Kai-Voh",
        env_var="KAIPROOF_RP_NAME",
        description="Relying party display name",
    ))
    origin: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://phi.network",
        env_var="KAIPROOF_ORIGIN",
        description="Origin written into clientDataJSON",
        validator=lambda x: x.startswith("https://") or x.startswith("http://localhost"),
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="KAIPROOF_PROMPT_TIMEOUT",
        description="Credential prompt timeout in seconds",
        validator=lambda x: 0 < x <= 600,
    ))
    enforce_rp_id: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="KAIPROOF_ENFORCE_RP_ID",
        description="Require authenticatorData.rpIdHash to match rp_id when verifying",
    ))


@dataclass
class ZkConfig:
    """ZK verification settings."""
    verification_key_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="KAIPROOF_ZK_VKEY",
        description="Pinned Groth16 verification key (snarkjs JSON); empty disables ZK checks",
    ))


@dataclass
class CacheConfig:
    """Verification cache settings."""
    path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="KAIPROOF_CACHE_PATH",
        description="JSON file backing the verification cache; empty keeps it in memory",
    ))
    version: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="KVB-1.0",
        env_var="KAIPROOF_CACHE_VERSION",
        description="Verification version mixed into cache keys",
        validator=lambda x: bool(x),
    ))
    max_entries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="KAIPROOF_CACHE_MAX_ENTRIES",
        description="In-memory cache capacity",
        validator=lambda x: x > 0,
    ))


@dataclass
class StoreConfig:
    """Passkey store settings."""
    passkey_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="KAIPROOF_PASSKEY_STORE",
        description="JSON file holding registered passkeys; empty keeps them in memory",
    ))


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="KAIPROOF_LOG_LEVEL",
        description="Log level",
        validator=lambda x: x.lower() in LOG_LEVELS,
    ))
    json: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="KAIPROOF_LOG_JSON",
        description="Emit structured JSON log lines",
    ))


@dataclass
class KaiproofConfig:
    """Root configuration."""
    webauthn: WebAuthnConfig = field(default_factory=WebAuthnConfig)
    zk: ZkConfig = field(default_factory=ZkConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """Loads, overrides and validates a :class:`KaiproofConfig`."""

    def __init__(self, config: Optional[KaiproofConfig] = None):
        self._config = config or KaiproofConfig()
        self._config_paths: List[Path] = []

    @property
    def config(self) -> KaiproofConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as ex:
            raise ConfigError(f"Configuration file {path} is not valid YAML: {ex}") from ex
        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        self._apply_dict(data)
        self._config_paths.append(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if key not in getattr(config_obj, "__dataclass_fields__", {}):
                    raise ConfigError(f"Unknown configuration key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigError(f"Configuration section {path} must be a mapping")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("webauthn.rp_id", "localhost")
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        obj = self._resolve(path)
        return obj.get() if isinstance(obj, ConfigValue) else obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if part not in getattr(obj, "__dataclass_fields__", {}):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        """Validate all configuration values; returns a list of errors."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting (type, default, env var) for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def load_config(path: Optional[Union[str, Path]] = None) -> KaiproofConfig:
    """Build a validated configuration from defaults, an optional YAML file and the environment."""

    manager = ConfigManager()
    if path is not None:
        manager.load_from_file(path)
    errors = manager.validate()
    if errors:
        raise ValidationError("; ".join(errors), errors=errors)
    return manager.config
