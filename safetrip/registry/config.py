"""
Registry Configuration

Typed settings for the identity registry, read from YAML files and
SAFETRIP_* environment variables.

Precedence, highest first:
    1. Environment variables (SAFETRIP_*)
    2. Values set at runtime or loaded from a file
    3. Defaults declared below

Files are looked up in ./safetrip.yaml, ./config/safetrip.yaml and
~/.safetrip/config.yaml when no explicit file is given.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

T = TypeVar("T")

DEFAULT_CONFIG_PATHS = (
    Path("safetrip.yaml"),
    Path("config") / "safetrip.yaml",
    Path.home() / ".safetrip" / "config.yaml",
)


class ConfigError(Exception):
    """Unknown setting, unreadable file or malformed document."""
    pass


class ConfigValidationError(ConfigError):
    """A setting was given a value its validator rejects."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    One setting: a default, an optional environment binding and an
    optional validator. Strings are coerced to the type of the default.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self.default if self._value is None else self._value

    def set(self, value: T) -> None:
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator is not None and not self.validator(value):
            raise ConfigValidationError(f"Rejected config value: {value!r}")
        self._value = value

    def _coerce(self, raw: str) -> T:
        if isinstance(self.default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")  # type: ignore
        if isinstance(self.default, int):
            return int(raw)  # type: ignore
        return raw  # type: ignore


@dataclass
class LimitsConfig:
    """Bounds applied to registry inputs."""
    max_batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="SAFETRIP_MAX_BATCH_SIZE",
        description="Maximum number of identities in one bulk verification",
        validator=lambda x: 0 < x <= 10000,
    ))
    max_string_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=512,
        env_var="SAFETRIP_MAX_STRING_LENGTH",
        description="Maximum length of free-text fields",
        validator=lambda x: 0 < x <= 65536,
    ))
    max_reason_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="SAFETRIP_MAX_REASON_LENGTH",
        description="Maximum length of an audit justification",
        validator=lambda x: 0 < x <= 65536,
    ))


@dataclass
class PersistenceConfig:
    """Snapshot persistence settings."""
    state_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="safetrip-state.json",
        env_var="SAFETRIP_STATE_PATH",
        description="Registry snapshot file used by the CLI",
    ))
    verify_audit_on_load: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="SAFETRIP_VERIFY_AUDIT_ON_LOAD",
        description="Verify the audit hash chain when a snapshot is loaded",
    ))


@dataclass
class AuditConfig:
    """Audit log settings."""
    checkpoint_interval: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="SAFETRIP_AUDIT_CHECKPOINT_INTERVAL",
        description="Sign a checkpoint every N audit entries (0 disables)",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Log output settings."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="INFO",
        env_var="SAFETRIP_LOG_LEVEL",
        description="Logging level",
        validator=lambda x: x.upper() in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SAFETRIP_LOG_FORMAT",
        description="Log line format: json or text",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RegistryConfig:
    """Root of the settings tree."""
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        return section_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


def _is_section(obj: Any) -> bool:
    return hasattr(obj, "__dataclass_fields__") and not isinstance(obj, ConfigValue)


def walk_settings(section: Any, prefix: str = "") -> Iterator[Tuple[str, ConfigValue]]:
    """Yield ``(dotted_path, ConfigValue)`` for every leaf under ``section``."""
    for name in section.__dataclass_fields__:
        child = getattr(section, name)
        path = f"{prefix}.{name}" if prefix else name
        if isinstance(child, ConfigValue):
            yield path, child
        elif _is_section(child):
            yield from walk_settings(child, path)


def section_values(section: Any) -> Dict[str, Any]:
    """Current values under ``section`` as a nested dict."""
    return {
        name: getattr(section, name).get()
        if isinstance(getattr(section, name), ConfigValue)
        else section_values(getattr(section, name))
        for name in section.__dataclass_fields__
    }


def apply_config_dict(config: Any, data: Dict[str, Any], prefix: str = "") -> None:
    """Apply a nested mapping onto ``config``. Unknown keys are an error."""
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if key not in config.__dataclass_fields__:
            raise ConfigError(f"Unknown config key: {path}")
        target = getattr(config, key)
        if isinstance(target, ConfigValue):
            target.set(value)
        elif isinstance(value, dict):
            apply_config_dict(target, value, path)
        else:
            raise ConfigError(f"Expected a mapping at {path}")


class ConfigManager:
    """
    Process-wide holder of the active RegistryConfig.

    A thread-safe singleton; ``reset`` drops every override and loaded file.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = RegistryConfig()
                instance._config_paths = []
                instance._watchers = []
                cls._instance = instance
            return cls._instance

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Merge a YAML file into the active configuration."""
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

        if data is not None:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            apply_config_dict(self._config, data)
        if path not in self._config_paths:
            self._config_paths.append(path)
        self._notify()

    def load_defaults(self) -> List[Path]:
        """Load whichever of the default files exist; returns those loaded."""
        loaded = [path for path in DEFAULT_CONFIG_PATHS if path.is_file()]
        for path in loaded:
            self.load_from_file(path)
        return loaded

    def _resolve(self, path: str) -> Any:
        node: Any = self._config
        for part in path.split("."):
            if not _is_section(node) or part not in node.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            node = getattr(node, part)
        return node

    def get(self, path: str) -> Any:
        """Value at a dotted path, or a dict for a whole section."""
        node = self._resolve(path)
        return node.get() if isinstance(node, ConfigValue) else section_values(node)

    def set(self, path: str, value: Any) -> None:
        """e.g. ``set("limits.max_batch_size", 50)``"""
        node = self._resolve(path)
        if not isinstance(node, ConfigValue):
            raise ConfigError(f"Not a setting: {path}")
        node.set(value)
        self._notify()

    def reset(self) -> None:
        self._config = RegistryConfig()
        self._config_paths = []
        self._notify()

    def watch(self, callback: Callable[[RegistryConfig], None]) -> None:
        """Call ``callback`` with the active config after every load, set or reset."""
        if callback not in self._watchers:
            self._watchers.append(callback)

    def _notify(self) -> None:
        for watcher in list(self._watchers):
            watcher(self._config)

    def validate(self) -> List[str]:
        """Problems with the effective values, environment included."""
        errors: List[str] = []
        for path, setting in walk_settings(self._config):
            try:
                value = setting.get()
            except (TypeError, ValueError) as exc:
                errors.append(f"{path}: {exc}")
                continue
            if setting.validator is not None and not setting.validator(value):
                errors.append(f"{path}: rejected value {value!r}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Nested description of every setting, for documentation."""
        schema: Dict[str, Any] = {"properties": {}}
        for path, setting in walk_settings(self._config):
            node = schema["properties"]
            *sections, leaf = path.split(".")
            for name in sections:
                node = node.setdefault(name, {})
            node[leaf] = {
                "type": type(setting.default).__name__,
                "default": str(setting.default),
                "description": setting.description,
            }
            if setting.env_var:
                node[leaf]["env_var"] = setting.env_var
        return schema


def get_config() -> RegistryConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
