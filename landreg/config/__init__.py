"""
Land Registry Governance Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    AppSectionConfig,
    ContentConfig,
    DatabaseConfig,
    GovernanceConfig,
    GovernanceSettings,
    LedgerConfig,
    SQLiteConfig,
    SweepConfig,
    load_config,
)

__all__ = [
    "AppSectionConfig",
    "ContentConfig",
    "DatabaseConfig",
    "GovernanceConfig",
    "GovernanceSettings",
    "LedgerConfig",
    "SQLiteConfig",
    "SweepConfig",
    "load_config",
]
