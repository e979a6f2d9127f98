"""
Land Registry Governance TOML Configuration Loader

Loads every section of config.toml at startup with environment variable
overrides (dataclass + from_dict + from_file per section).

Environment variable mapping:
    [app] log_level                  → LANDREG_LOG_LEVEL
    [database.sqlite] path           → LANDREG_DB_PATH
    [ledger] confirmation_timeout    → LANDREG_LEDGER_CONFIRMATION_TIMEOUT
    [content] ipfs_api_url           → LANDREG_IPFS_API_URL
    [sweep] interval                 → LANDREG_SWEEP_INTERVAL
    ...

Sensitive values (API tokens) MUST come from env vars, never TOML.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import (
    GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS,
    GOVERNANCE_DEFAULT_VOTING_THRESHOLD,
    GOVERNANCE_MAX_ACTIONS,
    GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS,
    GOVERNANCE_TIMELOCK_MAX_DELAY_SECONDS,
    GOVERNANCE_TIMELOCK_MIN_DELAY_SECONDS,
    LANDREG_CONTENT_SCHEME,
    LANDREG_DATABASE_PATH,
    LANDREG_IPFS_API_URL,
    LEDGER_BLOCK_TIME_SECONDS,
    LEDGER_CONFIRMATION_TIMEOUT_SECONDS,
    SWEEP_DEFAULT_INTERVAL_SECONDS,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of config.toml
# ---------------------------------------------------------------------------


@dataclass
class AppSectionConfig:
    """[app] section."""
    environment: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppSectionConfig":
        return cls(
            environment=data.get("environment", "development"),
            log_level=data.get("log_level", "INFO"),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_ENVIRONMENT"):
            self.environment = v
        if v := os.environ.get("LANDREG_LOG_LEVEL"):
            self.log_level = v


# -- Database -----------------------------------------------------------

@dataclass
class SQLiteConfig:
    """[database.sqlite]."""
    path: str = str(LANDREG_DATABASE_PATH)
    wal_mode: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SQLiteConfig":
        return cls(
            path=data.get("path", str(LANDREG_DATABASE_PATH)),
            wal_mode=data.get("wal_mode", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_DB_PATH"):
            self.path = v


@dataclass
class DatabaseConfig:
    """[database] section."""
    type: str = "sqlite"
    sqlite: SQLiteConfig = field(default_factory=SQLiteConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            type=data.get("type", "sqlite"),
            sqlite=SQLiteConfig.from_dict(data.get("sqlite", {})),
        )

    def apply_env(self) -> None:
        self.sqlite.apply_env()


# -- Governance ---------------------------------------------------------

@dataclass
class GovernanceSettings:
    """[governance] section: defaults applied to new proposals."""
    voting_period: int = GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS
    voting_threshold: Decimal = GOVERNANCE_DEFAULT_VOTING_THRESHOLD
    timelock_delay: int = GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS
    min_timelock_delay: int = GOVERNANCE_TIMELOCK_MIN_DELAY_SECONDS
    max_timelock_delay: int = GOVERNANCE_TIMELOCK_MAX_DELAY_SECONDS
    max_actions: int = GOVERNANCE_MAX_ACTIONS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceSettings":
        return cls(
            voting_period=int(data.get("voting_period", GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS)),
            voting_threshold=_to_decimal(
                data.get("voting_threshold", GOVERNANCE_DEFAULT_VOTING_THRESHOLD),
                "governance.voting_threshold",
            ),
            timelock_delay=int(data.get("timelock_delay", GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS)),
            min_timelock_delay=int(data.get("min_timelock_delay", GOVERNANCE_TIMELOCK_MIN_DELAY_SECONDS)),
            max_timelock_delay=int(data.get("max_timelock_delay", GOVERNANCE_TIMELOCK_MAX_DELAY_SECONDS)),
            max_actions=int(data.get("max_actions", GOVERNANCE_MAX_ACTIONS)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_VOTING_PERIOD"):
            self.voting_period = int(v)
        if v := os.environ.get("LANDREG_VOTING_THRESHOLD"):
            self.voting_threshold = _to_decimal(v, "LANDREG_VOTING_THRESHOLD")
        if v := os.environ.get("LANDREG_TIMELOCK_DELAY"):
            self.timelock_delay = int(v)

    def validate(self) -> None:
        if self.voting_period <= 0:
            raise ConfigurationError("governance.voting_period must be > 0")
        if not (Decimal(0) <= self.voting_threshold <= Decimal(100)):
            raise ConfigurationError("governance.voting_threshold must be within 0..100")
        if self.min_timelock_delay < 0 or self.min_timelock_delay > self.max_timelock_delay:
            raise ConfigurationError("governance timelock bounds are inconsistent")
        if not (self.min_timelock_delay <= self.timelock_delay <= self.max_timelock_delay):
            raise ConfigurationError("governance.timelock_delay outside of its bounds")
        if self.max_actions < 1:
            raise ConfigurationError("governance.max_actions must be >= 1")


# -- Ledger -------------------------------------------------------------

@dataclass
class LedgerConfig:
    """[ledger] section."""
    confirmation_timeout: float = LEDGER_CONFIRMATION_TIMEOUT_SECONDS
    governor_address: str = ""
    block_time: float = LEDGER_BLOCK_TIME_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            confirmation_timeout=float(
                data.get("confirmation_timeout", LEDGER_CONFIRMATION_TIMEOUT_SECONDS)
            ),
            governor_address=data.get("governor_address", ""),
            block_time=float(data.get("block_time", LEDGER_BLOCK_TIME_SECONDS)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_LEDGER_CONFIRMATION_TIMEOUT"):
            self.confirmation_timeout = float(v)
        if v := os.environ.get("LANDREG_GOVERNOR_ADDRESS"):
            self.governor_address = v


# -- Content ------------------------------------------------------------

@dataclass
class ContentConfig:
    """[content] section."""
    scheme: str = str(LANDREG_CONTENT_SCHEME)
    ipfs_api_url: str = str(LANDREG_IPFS_API_URL)
    api_token: str = ""  # env only
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentConfig":
        return cls(
            scheme=data.get("scheme", str(LANDREG_CONTENT_SCHEME)),
            ipfs_api_url=data.get("ipfs_api_url", str(LANDREG_IPFS_API_URL)),
            timeout=float(data.get("timeout", 30.0)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_IPFS_API_URL"):
            self.ipfs_api_url = v
        if v := os.environ.get("LANDREG_IPFS_API_TOKEN"):
            self.api_token = v


# -- Sweep --------------------------------------------------------------

@dataclass
class SweepConfig:
    """[sweep] section."""
    enabled: bool = True
    interval: float = SWEEP_DEFAULT_INTERVAL_SECONDS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SweepConfig":
        return cls(
            enabled=data.get("enabled", True),
            interval=float(data.get("interval", SWEEP_DEFAULT_INTERVAL_SECONDS)),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("LANDREG_SWEEP_INTERVAL"):
            self.interval = float(v)


def _to_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigurationError(f"{name} is not a number: {value!r}") from e


# -----------------------------------------------------------------------
# Top-level unified config
# -----------------------------------------------------------------------

@dataclass
class GovernanceConfig:
    """
    Unified governance service configuration.

    Loads every section of config.toml and applies environment variable
    overrides. This is the single source of truth at runtime.
    """
    app: AppSectionConfig = field(default_factory=AppSectionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    governance: GovernanceSettings = field(default_factory=GovernanceSettings)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceConfig":
        """Create GovernanceConfig from a parsed TOML dict."""
        return cls(
            app=AppSectionConfig.from_dict(data.get("app", {})),
            database=DatabaseConfig.from_dict(data.get("database", {})),
            governance=GovernanceSettings.from_dict(data.get("governance", {})),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            content=ContentConfig.from_dict(data.get("content", {})),
            sweep=SweepConfig.from_dict(data.get("sweep", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "GovernanceConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults (with env overrides) are used.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.app.apply_env()
        self.database.apply_env()
        self.governance.apply_env()
        self.ledger.apply_env()
        self.content.apply_env()
        self.sweep.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.app.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log_level: {self.app.log_level}")
        if self.database.type != "sqlite":
            raise ConfigurationError("Only 'sqlite' database type is supported")
        self.governance.validate()
        if self.ledger.confirmation_timeout <= 0:
            raise ConfigurationError("ledger.confirmation_timeout must be > 0")
        if self.ledger.block_time <= 0:
            raise ConfigurationError("ledger.block_time must be > 0")
        if self.sweep.interval <= 0:
            raise ConfigurationError("sweep.interval must be > 0")
        if not self.content.scheme:
            raise ConfigurationError("content.scheme cannot be empty")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "app": {
                "environment": self.app.environment,
                "log_level": self.app.log_level,
            },
            "database": {
                "type": self.database.type,
                "sqlite": {
                    "path": self.database.sqlite.path,
                    "wal_mode": self.database.sqlite.wal_mode,
                },
            },
            "governance": {
                "voting_period": self.governance.voting_period,
                "voting_threshold": str(self.governance.voting_threshold),
                "timelock_delay": self.governance.timelock_delay,
                "min_timelock_delay": self.governance.min_timelock_delay,
                "max_timelock_delay": self.governance.max_timelock_delay,
                "max_actions": self.governance.max_actions,
            },
            "ledger": {
                "confirmation_timeout": self.ledger.confirmation_timeout,
                "governor_address": self.ledger.governor_address,
                "block_time": self.ledger.block_time,
            },
            "content": {
                "scheme": self.content.scheme,
                "ipfs_api_url": self.content.ipfs_api_url,
            },
            "sweep": {
                "enabled": self.sweep.enabled,
                "interval": self.sweep.interval,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> GovernanceConfig:
    """
    Load governance configuration.

    Resolution order:
        1. Explicit *path* argument
        2. LANDREG_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("LANDREG_CONFIG", "config.toml")

    return GovernanceConfig.from_file(path)
