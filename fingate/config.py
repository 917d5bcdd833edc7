"""
FIN Gateway Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (FINGATE_*)
    2. Runtime overrides
    3. User config file (~/.fingate/config.yaml)
    4. Project config file (./fingate.yaml)
    5. Default values

The originator identity is never read from module globals by the engine.
Callers resolve an ``OriginatorConfig`` once (``get_originator()``) and pass
it to the assembler explicitly.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BIC_RE = re.compile(r"^[A-Z0-9]{8}([A-Z0-9]{3})?$")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports a default, an environment variable binding, a validator and
    secret masking.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # masked in to_dict()
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass(frozen=True)
class OriginatorConfig:
    """
    Identity and trailer settings of the sending institution.

    Passed explicitly to MessageAssembler and BlockBuilder.
    """
    sender_bic: str = "BOMGBRS1XXX"
    application_id: str = "F"
    service_id: str = "01"
    default_priority: str = "N"
    test_and_training: bool = False
    chk_length: int = 12
    chk_key: Optional[str] = None
    generate_mur: bool = False

    def __post_init__(self) -> None:
        bic = (self.sender_bic or "").replace(" ", "").upper()
        if not _BIC_RE.match(bic):
            raise ConfigValidationError(f"Invalid sender BIC: {self.sender_bic!r}")
        object.__setattr__(self, "sender_bic", bic)
        if self.default_priority not in ("N", "U"):
            raise ConfigValidationError(f"Invalid priority: {self.default_priority!r}")
        if not 4 <= self.chk_length <= 64:
            raise ConfigValidationError(f"CHK length out of range: {self.chk_length}")


@dataclass
class OriginatorSettings:
    """Configuration for the sending institution."""
    sender_bic: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="BOMGBRS1XXX",
        env_var="FINGATE_SENDER_BIC",
        description="BIC of the sending institution (8 or 11 characters)",
        validator=lambda x: bool(_BIC_RE.match(str(x).replace(" ", "").upper())),
    ))
    application_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="F",
        env_var="FINGATE_APPLICATION_ID",
        description="Block 1 application identifier (F = FIN)",
        validator=lambda x: x in ("F", "A", "L"),
    ))
    default_priority: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="N",
        env_var="FINGATE_DEFAULT_PRIORITY",
        description="Priority used when a header carries none (N or U)",
        validator=lambda x: x in ("N", "U"),
    ))
    test_and_training: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="FINGATE_TEST_AND_TRAINING",
        description="Append the {TNG:} marker to trailers",
    ))
    chk_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=12,
        env_var="FINGATE_CHK_LENGTH",
        description="Number of hex characters kept in the CHK trailer",
        validator=lambda x: 4 <= x <= 64,
    ))
    chk_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="FINGATE_CHK_KEY",
        description="Optional HMAC key for the CHK trailer",
        secret=True,
    ))
    generate_mur: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="FINGATE_GENERATE_MUR",
        description="Generate a {108:} user reference on release when none is set",
    ))


@dataclass
class ValidationSettings:
    """Configuration for field validation."""
    narrative_max_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3500,
        env_var="FINGATE_NARRATIVE_MAX",
        description="Maximum length of :79 narrative fields",
        validator=lambda x: 0 < x <= 10000,
    ))
    iban_checksum: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="FINGATE_IBAN_CHECKSUM",
        description="Verify the ISO 13616 mod-97 check digits of IBANs",
    ))


@dataclass
class InboundSettings:
    """Configuration for inbound ingestion."""
    max_payload_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024 * 1024,
        env_var="FINGATE_INBOUND_MAX_BYTES",
        description="Largest raw payload accepted for ingestion",
        validator=lambda x: x > 0,
    ))
    require_known_mt: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="FINGATE_INBOUND_REQUIRE_KNOWN_MT",
        description="Record UNKNOWN_MT parse errors for unregistered MT codes",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="FINGATE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="FINGATE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class GatewayConfig:
    """
    Root configuration for the gateway.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    originator: OriginatorSettings = field(default_factory=OriginatorSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    inbound: InboundSettings = field(default_factory=InboundSettings)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, masking secret values."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if obj.secret and value:
                    return "***"
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)

    def originator_config(self) -> OriginatorConfig:
        """Freeze the originator section into a value object."""
        o = self.originator
        return OriginatorConfig(
            sender_bic=o.sender_bic.get(),
            application_id=o.application_id.get(),
            default_priority=o.default_priority.get(),
            test_and_training=o.test_and_training.get(),
            chk_length=o.chk_length.get(),
            chk_key=o.chk_key.get() or None,
            generate_mur=o.generate_mur.get(),
        )


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Each manager owns its own ``GatewayConfig``; ``get_config_manager()``
    hands out a process-wide default instance.
    """

    DEFAULT_PATHS = (
        Path("fingate.yaml"),
        Path("config/fingate.yaml"),
        Path.home() / ".fingate" / "config.yaml",
    )

    def __init__(self, config: Optional[GatewayConfig] = None):
        self._config = config or GatewayConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[GatewayConfig], None]] = []
        self._lock = threading.RLock()

    @property
    def config(self) -> GatewayConfig:
        """Get the current configuration."""
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Malformed configuration file {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")

        with self._lock:
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)
        logger.debug("Loaded configuration from %s", path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist.

        Unreadable default files are logged and skipped; an explicit
        ``load_from_file`` call raises instead.
        """
        for path in self.DEFAULT_PATHS:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning("Skipping configuration file %s: %s", path, e)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("originator.sender_bic", "COBADEFFXXX")
        """
        with self._lock:
            self._resolve_value(path).set(value)
        for watcher in self._watchers:
            watcher(self._config)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("originator.chk_length")
        """
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve_value(self, path: str) -> ConfigValue:
        parts = path.split(".")
        obj: Any = self._config
        for part in parts:
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if not isinstance(obj, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        return obj

    def watch(self, callback: Callable[[GatewayConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                except ValueError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "" if obj.secret else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


_default_manager: Optional[ConfigManager] = None
_default_lock = threading.Lock()


def get_config_manager() -> ConfigManager:
    """Get the process-wide configuration manager, loading default files once."""
    global _default_manager
    with _default_lock:
        if _default_manager is None:
            _default_manager = ConfigManager()
            _default_manager.load_defaults()
        return _default_manager


def get_config() -> GatewayConfig:
    """Get the current gateway configuration."""
    return get_config_manager().config


def get_originator() -> OriginatorConfig:
    """Resolve the configured originator identity."""
    return get_config().originator_config()
