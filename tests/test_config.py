"""
Configuration Test Suite

Coverage:
  - defaults and TOML loading per section
  - environment variable overrides
  - validation failures
  - load_config resolution order
"""

import os
import sys
from decimal import Decimal

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from landreg.config import GovernanceConfig, load_config
from landreg.constants import (
    GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS,
    GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS,
    LEDGER_CONFIRMATION_TIMEOUT_SECONDS,
)
from landreg.exceptions import ConfigurationError


# ══════════════════════════════════════════════════════════════════════
#  HELPERS
# ══════════════════════════════════════════════════════════════════════

SAMPLE_TOML = """
[app]
environment = "production"
log_level = "WARNING"

[database]
type = "sqlite"

[database.sqlite]
path = "/var/lib/landreg/governance.db"
wal_mode = false

[governance]
voting_period = 86400
voting_threshold = "66.67"
timelock_delay = 3600
max_actions = 4

[ledger]
confirmation_timeout = 45
governor_address = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

[content]
scheme = "ipfs"
ipfs_api_url = "http://ipfs.internal:5001"
timeout = 10

[sweep]
enabled = false
interval = 15
"""

ENV_VARS = [
    "LANDREG_CONFIG",
    "LANDREG_ENVIRONMENT",
    "LANDREG_LOG_LEVEL",
    "LANDREG_DB_PATH",
    "LANDREG_VOTING_PERIOD",
    "LANDREG_VOTING_THRESHOLD",
    "LANDREG_TIMELOCK_DELAY",
    "LANDREG_LEDGER_CONFIRMATION_TIMEOUT",
    "LANDREG_GOVERNOR_ADDRESS",
    "LANDREG_IPFS_API_URL",
    "LANDREG_IPFS_API_TOKEN",
    "LANDREG_SWEEP_INTERVAL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, text: str = SAMPLE_TOML) -> str:
    path = tmp_path / "config.toml"
    path.write_text(text)
    return str(path)


# ══════════════════════════════════════════════════════════════════════
#  LOADING
# ══════════════════════════════════════════════════════════════════════

class TestLoading:

    def test_defaults(self):
        cfg = GovernanceConfig()
        assert cfg.governance.voting_period == GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS
        assert cfg.governance.voting_threshold == Decimal("50.0")
        assert cfg.governance.timelock_delay == GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS
        assert cfg.ledger.confirmation_timeout == LEDGER_CONFIRMATION_TIMEOUT_SECONDS
        assert cfg.database.type == "sqlite"
        assert cfg.validate() is True

    def test_from_file(self, tmp_path):
        cfg = GovernanceConfig.from_file(write_config(tmp_path))
        assert cfg.app.environment == "production"
        assert cfg.app.log_level == "WARNING"
        assert cfg.database.sqlite.path == "/var/lib/landreg/governance.db"
        assert cfg.database.sqlite.wal_mode is False
        assert cfg.governance.voting_period == 86400
        assert cfg.governance.voting_threshold == Decimal("66.67")
        assert cfg.governance.timelock_delay == 3600
        assert cfg.governance.max_actions == 4
        assert cfg.ledger.confirmation_timeout == 45.0
        assert cfg.content.ipfs_api_url == "http://ipfs.internal:5001"
        assert cfg.content.timeout == 10.0
        assert cfg.sweep.enabled is False
        assert cfg.sweep.interval == 15.0
        assert cfg.validate()

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = GovernanceConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.to_dict() == GovernanceConfig().to_dict()

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            GovernanceConfig.from_file(write_config(tmp_path, "[governance\nvoting_period = 1"))

    def test_bad_threshold(self, tmp_path):
        with pytest.raises(ConfigurationError):
            GovernanceConfig.from_file(
                write_config(tmp_path, '[governance]\nvoting_threshold = "half"\n')
            )

    def test_api_token_ignored_in_toml(self, tmp_path):
        cfg = GovernanceConfig.from_file(
            write_config(tmp_path, '[content]\napi_token = "leaked"\n')
        )
        assert cfg.content.api_token == ""

    def test_to_dict_omits_secrets(self, monkeypatch):
        monkeypatch.setenv("LANDREG_IPFS_API_TOKEN", "secret")
        cfg = GovernanceConfig()
        cfg.apply_env()
        assert cfg.content.api_token == "secret"
        assert "api_token" not in cfg.to_dict()["content"]


class TestEnvOverrides:

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LANDREG_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LANDREG_DB_PATH", "/tmp/other.db")
        monkeypatch.setenv("LANDREG_VOTING_THRESHOLD", "75")
        monkeypatch.setenv("LANDREG_TIMELOCK_DELAY", "7200")
        monkeypatch.setenv("LANDREG_LEDGER_CONFIRMATION_TIMEOUT", "5.5")
        monkeypatch.setenv("LANDREG_SWEEP_INTERVAL", "2")
        cfg = GovernanceConfig.from_file(write_config(tmp_path))
        assert cfg.app.log_level == "DEBUG"
        assert cfg.database.sqlite.path == "/tmp/other.db"
        assert cfg.governance.voting_threshold == Decimal("75")
        assert cfg.governance.timelock_delay == 7200
        assert cfg.ledger.confirmation_timeout == 5.5
        assert cfg.sweep.interval == 2.0

    def test_load_config_from_env_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LANDREG_CONFIG", write_config(tmp_path))
        assert load_config().app.environment == "production"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LANDREG_CONFIG", str(tmp_path / "absent.toml"))
        assert load_config(write_config(tmp_path)).app.environment == "production"


# ══════════════════════════════════════════════════════════════════════
#  VALIDATION
# ══════════════════════════════════════════════════════════════════════

class TestValidation:

    @pytest.mark.parametrize("section,field,value", [
        ("app", "log_level", "LOUD"),
        ("database", "type", "postgres"),
        ("governance", "voting_period", 0),
        ("governance", "voting_threshold", Decimal("100.5")),
        ("governance", "timelock_delay", 31 * 86400),
        ("governance", "min_timelock_delay", -1),
        ("governance", "max_actions", 0),
        ("ledger", "confirmation_timeout", 0),
        ("sweep", "interval", -1),
        ("content", "scheme", ""),
    ])
    def test_invalid_values(self, section, field, value):
        cfg = GovernanceConfig()
        setattr(getattr(cfg, section), field, value)
        with pytest.raises(ConfigurationError):
            cfg.validate()
