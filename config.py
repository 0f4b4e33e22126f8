"""Configuration management for the XRP vault orchestrator."""

import logging
import os
from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from core.errors import ConfigurationError
from units import DEFAULT_LOT_SIZE_UBA, DEFAULT_MINTING_DECIMALS

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "ORCHESTRATOR_CONFIG"  # TOML file used by the API process
CLIENT_MODES = ("live", "mock")
NETWORKS = ("mainnet", "testnet")


@dataclass
class OrchestratorConfig:
    """Orchestrator configuration."""

    # Environment
    network: str = "testnet"
    client_mode: str = "mock"  # "live" | "mock"

    # Collaborator endpoints
    bridge_api_url: str = ""
    flare_rpc_url: str = ""
    vault_address: str = ""
    vault_asset: str = "FXRP"
    xrpl_rpc_url: str = ""
    price_api_url: str = "https://api.coingecko.com/api/v3"
    database_path: str = "orchestrator.db"

    # Cadences (seconds)
    bridge_poll_interval: float = 5.0
    reconcile_interval: float = 20.0
    reconcile_timeout: float = 10.0
    max_poll_failures: int = 3
    deposit_delay_ceiling: float = 600.0
    withdrawal_delay_ceiling: float = 900.0
    failed_activity_retention: float = 86400.0
    price_cache_ttl: float = 30.0

    # Amounts
    balance_tolerance: Decimal = Decimal("0.0000001")
    lot_size_uba: int = DEFAULT_LOT_SIZE_UBA
    minting_decimals: int = DEFAULT_MINTING_DECIMALS

    log_level: str = "INFO"

    @property
    def is_mock(self) -> bool:
        return self.client_mode == "mock"

    @classmethod
    def load(cls, config_path: str = "") -> "OrchestratorConfig":
        """Load from a TOML file if one is given or named by ``ORCHESTRATOR_CONFIG``,
        else from the environment.
        """
        config_path = config_path or os.getenv(CONFIG_PATH_ENV, "")
        if config_path:
            return cls.from_file(Path(config_path))
        return cls.from_env()

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables.

        Call ``load_dotenv`` first to pick up a ``.env`` file.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f.name.upper())
            if raw is not None and raw != "":
                values[f.name] = raw
        return cls._build(values)

    @classmethod
    def from_file(cls, config_path: Path) -> "OrchestratorConfig":
        """Load configuration from TOML file.

        Args:
            config_path: Path to configuration file

        Returns:
            OrchestratorConfig instance

        Raises:
            ConfigurationError: If config is invalid
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        logger.info(f"Loading configuration from {config_path}")

        try:
            with open(config_path, "r") as f:
                config_data = toml.load(f)
        except (OSError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to parse configuration file: {e}")

        # Accept both flat files and an [orchestrator] table
        config_data = config_data.get("orchestrator", config_data)
        known = {f.name for f in fields(cls)}
        unknown = set(config_data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls._build({k: v for k, v in config_data.items() if k in known})

    @classmethod
    def _build(cls, values: Dict[str, Any]) -> "OrchestratorConfig":
        converted: Dict[str, Any] = {}
        try:
            for f in fields(cls):
                if f.name not in values:
                    continue
                value = values[f.name]
                if f.type in (float, "float"):
                    converted[f.name] = float(value)
                elif f.type in (int, "int"):
                    converted[f.name] = int(value)
                elif f.type in (Decimal, "Decimal"):
                    converted[f.name] = Decimal(str(value))
                else:
                    converted[f.name] = str(value)
        except (TypeError, ValueError, InvalidOperation) as e:
            raise ConfigurationError(f"Invalid configuration: {e}")
        return cls(**converted)

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.network not in NETWORKS:
            raise ConfigurationError(f"network must be one of {NETWORKS}, got {self.network!r}")
        if self.client_mode not in CLIENT_MODES:
            raise ConfigurationError(f"client_mode must be one of {CLIENT_MODES}, got {self.client_mode!r}")

        if not self.is_mock:
            for name in ("bridge_api_url", "flare_rpc_url", "vault_address", "xrpl_rpc_url"):
                if not getattr(self, name):
                    raise ConfigurationError(f"{name} is required in live mode")

        for name in (
            "bridge_poll_interval",
            "reconcile_interval",
            "reconcile_timeout",
            "deposit_delay_ceiling",
            "withdrawal_delay_ceiling",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        if self.max_poll_failures < 1:
            raise ConfigurationError("max_poll_failures must be at least 1")
        if not Decimal("0") <= self.balance_tolerance < Decimal("1"):
            raise ConfigurationError("balance_tolerance must be in [0, 1)")
        if self.lot_size_uba < 1:
            raise ConfigurationError("lot_size_uba must be at least 1")
        if self.minting_decimals < 0:
            raise ConfigurationError("minting_decimals must not be negative")

        logger.info("Configuration validated successfully")

    def summary(self) -> Dict[str, Optional[str]]:
        """Non-secret settings for startup logging."""
        return {
            "network": self.network,
            "client_mode": self.client_mode,
            "bridge_api_url": self.bridge_api_url or None,
            "vault_address": self.vault_address or None,
            "database_path": self.database_path,
        }
