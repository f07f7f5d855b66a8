"""
Coex Executor Constants

This module consolidates the global constants and `.env` driven settings used
throughout the executor. Values that describe the on-chain contracts (fixed
point scales, tax precision, gas multipliers) are not meant to be changed.
"""
import ast
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - [block %(block)s] %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'True',
    'LOG_FILE_PATH':                   'logs/coex-executor.log',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# ON-CHAIN NUMERIC FORMATS
# ==================================================================================
Q64 = 2 ** 64                    # Limit prices are unsigned 64.64 fixed point
Q96 = 2 ** 96                    # Concentrated-liquidity sqrtPriceX96 scale
TAX_PRECISION = 100_000          # Router tax rates are expressed in 1e5 precision
ZERO_ADDRESS = '0x' + '00' * 20
WORD_SIZE = 32


# ==================================================================================
# EXECUTION PARAMETERS
# ==================================================================================
GAS_LIMIT_MULTIPLIER = (150, 100)    # Padding applied on top of eth_estimateGas
GAS_PRICE_BUMP = (150, 100)          # Applied when the node reports an underpriced tx
MAX_UNDERPRICED_RETRIES = 3
DEFAULT_DISPATCH_RETRIES = 3
DEFAULT_BACKFILL_CHUNK_SIZE = 100_000
DEFAULT_REFRESH_INTERVAL = 2_592_000  # 30 days
DEFAULT_PENDING_TX_POLL_INTERVAL = 2.0
DEFAULT_PENDING_TX_TIMEOUT = 600.0
DEFAULT_MAINTENANCE_INTERVAL = 600



# ==================================================================================
# CONFIGURATION VALUE WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that remembers the default it replaced.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that remembers its default.
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

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Anything else is returned untouched.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in LOGGER_DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
