"""
NEARBRIDGE Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (NEARBRIDGE_*)
    2. Runtime overrides and loaded files
    3. User config file (~/.nearbridge/config.yaml)
    4. Project config file (./nearbridge.yaml)
    5. Default values
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from nearbridge.observability import BridgeComponent, get_logger

T = TypeVar("T")

logger = get_logger("config", BridgeComponent.CONFIG)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


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

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class SourceChainConfig:
    """Ethereum side: network and custodian contract."""
    chain_id: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="NEARBRIDGE_ETH_CHAIN_ID",
        description="Chain id the connected wallet and reader must report",
        validator=lambda x: x > 0,
    ))
    custodian_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="0x6BFaD42cFC4EfC96f529D786D643Ff4A8B89FA52",
        env_var="NEARBRIDGE_ETHER_CUSTODIAN_ADDRESS",
        description="Address of the ether custodian contract",
        validator=lambda x: isinstance(x, str) and x.startswith("0x"),
    ))
    custodian_abi: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="[]",
        env_var="NEARBRIDGE_ETHER_CUSTODIAN_ABI",
        description="ABI text of the ether custodian contract (passed through untouched)",
    ))
    safe_reorg_margin: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="NEARBRIDGE_SAFE_REORG_MARGIN",
        description="Blocks subtracted from the head to get the replacement search lower bound",
        validator=lambda x: x >= 0,
    ))


@dataclass
class DestinationChainConfig:
    """NEAR side: the account that mints and the budgets attached to a mint."""
    evm_account: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="aurora",
        env_var="NEARBRIDGE_AURORA_EVM_ACCOUNT",
        description="NEAR account exposing deposit and is_used_proof",
        validator=lambda x: bool(x),
    ))
    explorer_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="https://explorer.near.org",
        env_var="NEARBRIDGE_NEAR_EXPLORER_URL",
        description="Base URL of the NEAR explorer",
    ))
    mint_gas: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        # 200 Tgas: enough for execution, low enough for a 2fa tx to stay within 300 Tgas
        default=200 * 10**12,
        env_var="NEARBRIDGE_MINT_GAS",
        description="Gas attached to the deposit call",
        validator=lambda x: x > 0,
    ))
    mint_deposit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        # Minting grows contract state by < 600 bytes, staked at 10^20 yocto per byte
        default=600 * 10**20,
        env_var="NEARBRIDGE_MINT_DEPOSIT",
        description="Attached deposit (yoctoNEAR) covering storage staking",
        validator=lambda x: x >= 0,
    ))
    deposit_method: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="deposit",
        env_var="NEARBRIDGE_DEPOSIT_METHOD",
        description="Method called to mint with a proof",
    ))
    proof_used_method: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="is_used_proof",
        env_var="NEARBRIDGE_PROOF_USED_METHOD",
        description="View method telling whether a proof was consumed",
    ))


@dataclass
class TransferConfig:
    """Parameters of the lock, sync and mint steps."""
    needed_confirmations: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="NEARBRIDGE_NEEDED_CONFIRMATIONS",
        description="Confirmations required before a proof is accepted",
        validator=lambda x: x >= 0,
    ))
    relay_margin: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="NEARBRIDGE_EVENT_RELAYER_MARGIN",
        description="Extra confirmations left for the event relayer to mint",
        validator=lambda x: x >= 0,
    ))
    sync_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=20.0,
        env_var="NEARBRIDGE_SYNC_INTERVAL",
        description="Minimum seconds between two confirmation checks",
        validator=lambda x: x > 0,
    ))
    lock_method: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="depositToNear",
        env_var="NEARBRIDGE_LOCK_METHOD",
        description="Custodian method locking ether",
    ))
    lock_event_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Deposited",
        env_var="NEARBRIDGE_LOCK_EVENT",
        description="Event emitted by the custodian on lock",
    ))
    source_token_name: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ETH",
        env_var="NEARBRIDGE_SOURCE_TOKEN_NAME",
        description="Display name of the locked asset",
    ))
    decimals: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=18,
        env_var="NEARBRIDGE_DECIMALS",
        description="Precision of the locked asset",
        validator=lambda x: 0 <= x <= 77,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="NEARBRIDGE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    structured_logs: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="NEARBRIDGE_STRUCTURED_LOGS",
        description="Emit JSON log lines",
    ))


@dataclass
class BridgeConfig:
    """
    Root configuration for NEARBRIDGE.

    Aggregates all component configurations and provides
    export functionality.
    """
    source: SourceChainConfig = field(default_factory=SourceChainConfig)
    destination: DestinationChainConfig = field(default_factory=DestinationChainConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


def apply_dict(config: BridgeConfig, data: Dict[str, Any]) -> None:
    """Apply nested dictionary values onto ``config``; unknown keys are ignored."""
    def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            if not hasattr(config_obj, key):
                logger.warning("Ignoring unknown config key", key=key)
                continue
            attr = getattr(config_obj, key)
            if isinstance(attr, ConfigValue):
                attr.set(value)
            elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                apply_to_config(attr, value)

    apply_to_config(config, data)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = BridgeConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[BridgeConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed configuration file {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")

        apply_dict(self._config, data)
        if path not in self._config_paths:
            self._config_paths.append(path)
        logger.info("Loaded configuration file", path=str(path))

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path.home() / ".nearbridge" / "config.yaml",
            Path("config/nearbridge.yaml"),
            Path("nearbridge.yaml"),
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning("Skipping default configuration file", path=str(path), error=str(e))

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("transfer.relay_margin", 5)
        """
        parts = path.split(".")
        obj: Any = self._config

        try:
            for part in parts[:-1]:
                obj = getattr(obj, part)
            attr = getattr(obj, parts[-1])
        except AttributeError as e:
            raise ConfigError(f"Invalid config path: {path}") from e

        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("source.chain_id")
        """
        obj: Any = self._config
        try:
            for part in path.split("."):
                obj = getattr(obj, part)
        except AttributeError as e:
            raise ConfigError(f"Invalid config path: {path}") from e

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[BridgeConfig], None]) -> None:
        """Register a callback for configuration reloads."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        return validate_config(self._config)


def validate_config(config: BridgeConfig) -> List[str]:
    errors: List[str] = []

    def visit(obj: Any, path: str = "") -> None:
        if isinstance(obj, ConfigValue):
            try:
                value = obj.get()
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            except (TypeError, ValueError, ArithmeticError) as e:
                errors.append(f"{path}: {e}")
        elif hasattr(obj, "__dataclass_fields__"):
            for field_name in obj.__dataclass_fields__:
                field_path = f"{path}.{field_name}" if path else field_name
                visit(getattr(obj, field_name), field_path)

    visit(config)
    return errors


def get_config() -> BridgeConfig:
    """Get the current NEARBRIDGE configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
