"""
Land Registry Governance Constants

This module consolidates the global constants and environment configuration
used throughout the governance engine. Constants are organized by category
for easy reference and maintenance.
"""
import ast
from decimal import Decimal
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

APP_DEFAULTS = {
    'LANDREG_DATABASE_PATH':           './data/governance.db',
    'LANDREG_IPFS_API_URL':            'http://127.0.0.1:5001',
    'LANDREG_CONTENT_SCHEME':          'ipfs',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# GOVERNANCE PARAMETERS
# ==================================================================================
# Voting window applied when a create request does not carry an explicit end.
GOVERNANCE_DEFAULT_VOTING_PERIOD_SECONDS = 7 * 86400

# Percentage of FOR among FOR+AGAINST that must be strictly exceeded.
GOVERNANCE_DEFAULT_VOTING_THRESHOLD = Decimal('50.0')

# Timelock between queue and execution (the ledger's own delay is authoritative
# when it reports an eta on the queue event).
GOVERNANCE_TIMELOCK_DEFAULT_DELAY_SECONDS = 2 * 86400
GOVERNANCE_TIMELOCK_MIN_DELAY_SECONDS = 0
GOVERNANCE_TIMELOCK_MAX_DELAY_SECONDS = 30 * 86400

# Basis-point scale used for every ratio (100% == 10_000).
GOVERNANCE_BPS_SCALE = 10_000

# Upper bound on a single action batch.
GOVERNANCE_MAX_ACTIONS = 10

GOVERNANCE_TITLE_MAX_LENGTH = 255
GOVERNANCE_DESCRIPTION_MAX_LENGTH = 20_000

# Window used by the statistics module for "recent" proposals.
GOVERNANCE_RECENT_WINDOW_SECONDS = 30 * 86400


# ==================================================================================
# LEDGER PARAMETERS
# ==================================================================================
# Seconds to wait for a submitted transaction to confirm before reporting the
# outcome as indeterminate.
LEDGER_CONFIRMATION_TIMEOUT_SECONDS = 120.0

# Event emitted by the ledger's timelock when a proposal is queued.
LEDGER_QUEUE_EVENT_NAME = 'ProposalQueued'

# Seconds per ledger block, used to turn the registered block window into time.
LEDGER_BLOCK_TIME_SECONDS = 12.0


# ==================================================================================
# RECONCILIATION SWEEP
# ==================================================================================
SWEEP_DEFAULT_INTERVAL_SECONDS = 60.0


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = APP_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
