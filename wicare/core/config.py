"""
Configuration system for WiCare.

Provides YAML-based configuration with:
- Dot-notation access
- Environment variable overrides
- Hot reload support
- Pydantic validation

Also hosts the device settings store, which persists the DeviceConfig
(host, port, transport mode) edited from the dashboard.
"""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, Callable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileModifiedEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEVICE_HOST = "172.20.10.9"
DEFAULT_DEVICE_PORT = 8080


# ============================================================================
# Typed Configuration Models
# ============================================================================


class TransportMode(str, Enum):
    """How telemetry is pulled from the device."""

    STREAMING = "streaming"
    POLLING = "polling"


class DeviceConfig(BaseModel):
    """Address and transport of the monitored sensor appliance."""

    host: str = DEFAULT_DEVICE_HOST
    port: int = Field(default=DEFAULT_DEVICE_PORT, ge=1, le=65535)
    transport_mode: TransportMode = TransportMode.POLLING

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Host must not be empty")
        if "://" in v or any(c.isspace() for c in v):
            raise ValueError(f"Host must be a bare hostname or IP address, got '{v}'")
        return v

    @field_validator("port", mode="before")
    @classmethod
    def validate_port_type(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("Port must be an integer")
        return v


class ConnectivityConfig(BaseModel):
    """Health probing and transport fallback policy."""

    probe_timeout_seconds: float = Field(default=4.0, gt=0.0, le=30.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    max_poll_failures: int = Field(default=3, ge=1)
    # None disables re-upgrading from polling back to streaming
    stream_upgrade_interval_seconds: float | None = Field(default=None, gt=0.0)
    # Session-owned recheck timer while disconnected; None = manual only
    recheck_interval_seconds: float | None = Field(default=None, gt=0.0)


class BufferConfig(BaseModel):
    """Sliding window for the live waveform."""

    capacity: int = Field(default=100, ge=1, le=100_000)


class CalibrationConfig(BaseModel):
    """Calibration routine schedule."""

    steps: int = Field(default=10, ge=1, le=100)
    duration_seconds: float = Field(default=3.0, ge=0.0)


class AlertConfig(BaseModel):
    """Alert state machine options."""

    debug_enabled: bool = False
    history_size: int = Field(default=50, ge=0)
    emergency_number: str = "119"


class PushNotifierConfig(BaseModel):
    """Configuration for escalation push notifications."""

    enabled: bool = False
    provider: str = "ntfy"  # pushover | ntfy
    pushover_user_key: str = ""
    pushover_api_token: str = ""
    ntfy_server: str = "https://ntfy.sh"
    ntfy_topic: str = ""
    timeout_seconds: float = Field(default=10.0, ge=1.0)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in ("pushover", "ntfy"):
            raise ValueError(f"Provider must be 'pushover' or 'ntfy', got '{v}'")
        return v


class NotifiersConfig(BaseModel):
    """Configuration for all notifiers."""

    push: PushNotifierConfig = Field(default_factory=PushNotifierConfig)


class DashboardConfig(BaseModel):
    """Configuration for the dashboard API."""

    host: str = "0.0.0.0"
    port: int = Field(default=5000, ge=1, le=65535)
    websocket_update_interval_ms: int = Field(default=1000, ge=50, le=5000)


class SystemConfig(BaseModel):
    """Top-level system configuration."""

    name: str = "wicare"
    log_level: str = "INFO"
    settings_path: str = "~/.config/wicare/device.yaml"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return v


class WiCareConfig(BaseModel):
    """Complete WiCare configuration."""

    system: SystemConfig = Field(default_factory=SystemConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    notifiers: NotifiersConfig = Field(default_factory=NotifiersConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)


# ============================================================================
# Configuration Change Tracking
# ============================================================================


@dataclass
class ConfigChange:
    """Represents a configuration change."""

    path: str  # Dot-notation path
    old_value: Any
    new_value: Any
    timestamp: float


# ============================================================================
# Configuration Loader
# ============================================================================


class ConfigLoader:
    """Loads and merges configuration from YAML files."""

    # Pattern for environment variable references: ${VAR} or ${VAR:-default}
    ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")
    ENV_PREFIX = "WICARE_"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        """Load single YAML file with env var substitution."""
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()
        content = self._substitute_env_vars(content)

        return yaml.safe_load(content) or {}

    def load_directory(self, dir_path: Path) -> dict[str, Any]:
        """Load and merge all YAML files in directory."""
        if not dir_path.is_dir():
            raise NotADirectoryError(f"Config directory not found: {dir_path}")

        config: dict[str, Any] = {}

        # Sorted for deterministic merging
        for yaml_file in sorted(dir_path.glob("*.yaml")):
            file_config = self.load_yaml(yaml_file)
            config = self.merge(config, file_config)

        return config

    def merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge override into base."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self.merge(result[key], value)
            else:
                result[key] = value

        return result

    def _substitute_env_vars(self, content: str) -> str:
        """Replace ${VAR} and ${VAR:-default} with environment values."""

        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            default = match.group(2)
            value = os.environ.get(var_name)

            if value is not None:
                return value
            elif default is not None:
                return default
            else:
                return match.group(0)

        return self.ENV_PATTERN.sub(replacer, content)

    def apply_env_overrides(self, config: dict[str, Any]) -> dict[str, Any]:
        """
        Apply environment variable overrides.

        Sections are separated by a double underscore so that keys can keep
        their own underscores:

        WICARE_CONNECTIVITY__POLL_INTERVAL_SECONDS=0.5
            -> connectivity.poll_interval_seconds = 0.5
        """
        for key, value in os.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue

            path_parts = key[len(self.ENV_PREFIX) :].lower().split("__")
            if not all(path_parts):
                continue
            self._set_nested(config, path_parts, self._parse_value(value))

        return config

    def _set_nested(self, obj: dict[str, Any], path: list[str], value: Any) -> None:
        """Set a nested value using a list of keys."""
        for key in path[:-1]:
            if key not in obj or not isinstance(obj[key], dict):
                obj[key] = {}
            obj = obj[key]
        obj[path[-1]] = value

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value


# ============================================================================
# Configuration Watcher
# ============================================================================


class ConfigWatcher:
    """Watches config files for changes."""

    def __init__(self, paths: list[Path]):
        self._paths = paths
        self._observer = Observer()
        self._callbacks: list[Callable[[Path], None]] = []
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start watching for changes."""
        if self._started:
            return

        handler = _ConfigFileHandler(self._on_change)

        for path in self._paths:
            watch_path = path if path.is_dir() else path.parent
            self._observer.schedule(handler, str(watch_path), recursive=False)

        self._observer.start()
        self._started = True

    def stop(self) -> None:
        """Stop watching."""
        if not self._started:
            return

        self._observer.stop()
        self._observer.join()
        self._started = False

    def add_callback(self, callback: Callable[[Path], None]) -> None:
        """Add callback for file changes."""
        self._callbacks.append(callback)

    def _on_change(self, path: Path) -> None:
        """Called when a config file changes."""
        for callback in self._callbacks:
            callback(path)


class _ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for config changes."""

    def __init__(self, callback: Callable[[Path], None]):
        self._callback = callback

    def on_modified(self, event: FileModifiedEvent) -> None:
        if event.is_directory:
            return
        src_path = os.fsdecode(event.src_path)
        if src_path.endswith((".yaml", ".yml")):
            self._callback(Path(src_path))


# ============================================================================
# Main Configuration Class
# ============================================================================


class Config:
    """
    Main configuration container with hot reload support.

    Usage:
        config = Config.load(Path("/etc/wicare/config.yaml"))
        interval = config.get("connectivity.poll_interval_seconds", 1.0)

        # Or with typed access:
        interval = config.connectivity.poll_interval_seconds
    """

    def __init__(self, data: dict[str, Any], source_path: Path | None = None):
        self._data = data
        self._source_path = source_path
        self._loader = ConfigLoader()
        self._watcher: ConfigWatcher | None = None
        self._change_callbacks: list[Callable[[list[ConfigChange]], None]] = []

        self._typed = WiCareConfig.model_validate(data)

    @classmethod
    def load(cls, path: Path) -> Config:
        """Load configuration from YAML file."""
        loader = ConfigLoader()
        data = loader.load_yaml(path)
        data = loader.apply_env_overrides(data)
        return cls(data, source_path=path)

    @classmethod
    def load_directory(cls, dir_path: Path) -> Config:
        """Load and merge all YAML files in directory."""
        loader = ConfigLoader()
        data = loader.load_directory(dir_path)
        data = loader.apply_env_overrides(data)
        return cls(data, source_path=dir_path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create configuration from dictionary."""
        return cls(data)

    @classmethod
    def default(cls) -> Config:
        """Create configuration with all defaults."""
        return cls({})

    def get(self, path: str, default: T = None) -> T:
        """
        Get config value by dot-notation path.

        Example: config.get("connectivity.max_poll_failures", 3)
        """
        keys = path.split(".")
        value: Any = self._data

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default  # type: ignore

        return value  # type: ignore

    def set(self, path: str, value: Any) -> None:
        """Set config value (in-memory only, call save() to persist)."""
        keys = path.split(".")
        obj = self._data

        for key in keys[:-1]:
            if key not in obj:
                obj[key] = {}
            obj = obj[key]

        obj[keys[-1]] = value

        self._typed = WiCareConfig.model_validate(self._data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to YAML file."""
        save_path = path or self._source_path
        if not save_path:
            raise ValueError("No path specified and no source path available")

        if save_path.is_dir():
            save_path = save_path / "config.yaml"

        temp_path = save_path.with_suffix(".yaml.tmp")
        temp_path.write_text(yaml.dump(self._data, default_flow_style=False, sort_keys=False))
        temp_path.replace(save_path)

    def reload(self) -> list[ConfigChange]:
        """Reload from disk, return list of changes."""
        if not self._source_path:
            return []

        old_data = self._data

        if self._source_path.is_dir():
            new_data = self._loader.load_directory(self._source_path)
        else:
            new_data = self._loader.load_yaml(self._source_path)

        new_data = self._loader.apply_env_overrides(new_data)
        # Validate before swapping so a bad edit leaves the old config intact
        self._typed = WiCareConfig.model_validate(new_data)
        self._data = new_data

        return self._diff(old_data, self._data)

    def enable_hot_reload(
        self, callback: Callable[[list[ConfigChange]], None] | None = None
    ) -> None:
        """Enable file watching for automatic reload."""
        if not self._source_path:
            raise ValueError("Cannot enable hot reload without a source path")

        if callback:
            self._change_callbacks.append(callback)

        if self._watcher:
            return

        self._watcher = ConfigWatcher([self._source_path])
        self._watcher.add_callback(self._on_file_change)
        self._watcher.start()

    def disable_hot_reload(self) -> None:
        """Disable file watching."""
        if self._watcher:
            self._watcher.stop()
            self._watcher = None

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors: list[str] = []

        try:
            WiCareConfig.model_validate(self._data)
        except ValidationError as e:
            errors.append(str(e))

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Get configuration as dictionary."""
        return self._data.copy()

    def _on_file_change(self, path: Path) -> None:
        """Called when a config file changes."""
        try:
            changes = self.reload()
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.warning(f"Ignoring invalid config change in {path}: {e}")
            return

        for callback in self._change_callbacks:
            callback(changes)

    def _diff(
        self, old: dict[str, Any], new: dict[str, Any], prefix: str = ""
    ) -> list[ConfigChange]:
        """Calculate differences between two config dicts."""
        changes: list[ConfigChange] = []
        now = time.time()

        all_keys = set(old.keys()) | set(new.keys())

        for key in all_keys:
            path = f"{prefix}.{key}" if prefix else key
            old_val = old.get(key)
            new_val = new.get(key)

            if old_val == new_val:
                continue

            if isinstance(old_val, dict) and isinstance(new_val, dict):
                changes.extend(self._diff(old_val, new_val, path))
            else:
                changes.append(ConfigChange(path, old_val, new_val, now))

        return changes

    # ========================================================================
    # Typed Accessors
    # ========================================================================

    @property
    def source_path(self) -> Path | None:
        return self._source_path

    @property
    def typed(self) -> WiCareConfig:
        return self._typed

    @property
    def system(self) -> SystemConfig:
        return self._typed.system

    @property
    def device(self) -> DeviceConfig:
        return self._typed.device

    @property
    def connectivity(self) -> ConnectivityConfig:
        return self._typed.connectivity

    @property
    def buffer(self) -> BufferConfig:
        return self._typed.buffer

    @property
    def calibration(self) -> CalibrationConfig:
        return self._typed.calibration

    @property
    def alerts(self) -> AlertConfig:
        return self._typed.alerts

    @property
    def notifiers(self) -> NotifiersConfig:
        return self._typed.notifiers

    @property
    def dashboard(self) -> DashboardConfig:
        return self._typed.dashboard


# ============================================================================
# Device Settings Store
# ============================================================================


class SettingsStore:
    """
    Persists the DeviceConfig edited from the dashboard.

    Every failure is non-fatal: loading falls back to the defaults and saving
    reports False. The core only reads and writes through
    load_device_config() and save_device_config().
    """

    def __init__(self, path: Path, defaults: DeviceConfig | None = None):
        self._path = Path(path).expanduser()
        self._defaults = defaults or DeviceConfig()
        self._watcher: ConfigWatcher | None = None
        self._last_known: DeviceConfig | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load_device_config(self) -> DeviceConfig:
        """Load the stored device config, or the defaults on any failure."""
        try:
            data = ConfigLoader().load_yaml(self._path)
            config = DeviceConfig.model_validate(data.get("device", data))
        except FileNotFoundError:
            logger.info(f"No device settings at {self._path}, using defaults")
            config = self._defaults.model_copy()
        except (OSError, yaml.YAMLError, ValidationError, AttributeError) as e:
            logger.warning(f"Could not load device settings from {self._path}: {e}")
            config = self._defaults.model_copy()

        self._last_known = config
        return config

    def save_device_config(self, config: DeviceConfig) -> bool:
        """Persist the device config. Returns False if it could not be written."""
        data = {"device": config.model_dump(mode="json")}

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._path.with_suffix(".yaml.tmp")
            temp_path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))
            temp_path.replace(self._path)
        except OSError as e:
            logger.warning(f"Could not save device settings to {self._path}: {e}")
            return False

        self._last_known = config
        logger.info(f"Device settings saved to {self._path}")
        return True

    def watch(self, callback: Callable[[DeviceConfig], None]) -> None:
        """
        Report external edits of the settings file.

        The callback runs on the watchdog thread and only fires when the
        stored config differs from the last one loaded or saved here.
        """
        if self._watcher:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)

        def on_change(path: Path) -> None:
            if path.resolve() != self._path.resolve():
                return
            previous = self._last_known
            config = self.load_device_config()
            if config != previous:
                callback(config)

        self._watcher = ConfigWatcher([self._path.parent])
        self._watcher.add_callback(on_change)
        self._watcher.start()

    def stop_watching(self) -> None:
        if self._watcher:
            self._watcher.stop()
            self._watcher = None
