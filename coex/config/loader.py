"""
Coex TOML Configuration Loader

Loads config.toml at startup, fills network constants from the selected chain
preset, then applies environment variable overrides.

Resolution order for every value:
    1. Environment variable (COEX_*)
    2. Explicit value in config.toml
    3. Chain preset ([network] chain = "goerli", ...)
    4. Dataclass default

Environment variable mapping:
    [network] chain          → COEX_CHAIN
    [network] http_endpoint  → COEX_HTTP_ENDPOINT
    [network] ws_endpoint    → COEX_WS_ENDPOINT
    [wallet]  address        → COEX_WALLET_ADDRESS
    ...

The wallet private key is only ever read from COEX_PRIVATE_KEY, never TOML.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_utils import is_hex_address, to_checksum_address

from ..constants import (
    DEFAULT_BACKFILL_CHUNK_SIZE,
    DEFAULT_DISPATCH_RETRIES,
    DEFAULT_MAINTENANCE_INTERVAL,
    DEFAULT_PENDING_TX_POLL_INTERVAL,
    DEFAULT_PENDING_TX_TIMEOUT,
    DEFAULT_REFRESH_INTERVAL,
)
from ..constants import parse_bool
from ..exceptions import ConfigurationError

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

logger = logging.getLogger(__name__)

UNISWAP_V3_QUOTER = "0xb27308f9F90D607463bb33eA1BeBb41C27CE5AB6"


# ---------------------------------------------------------------------------
# Chain presets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChainPreset:
    chain_id: int
    native_token: str
    weth: str
    usd: Optional[str] = None
    usd_weth_fee: Optional[int] = None
    limit_order_router: Optional[str] = None
    router_creation_block: Optional[int] = None
    swap_router: Optional[str] = None
    num_dexes: int = 3


CHAIN_PRESETS: Dict[str, ChainPreset] = {
    "ethereum": ChainPreset(1, "ETH", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"),
    "polygon": ChainPreset(137, "MATIC", "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270"),
    "optimism": ChainPreset(10, "ETH", "0x4200000000000000000000000000000000000006"),
    "arbitrum": ChainPreset(42161, "ETH", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"),
    "bsc": ChainPreset(56, "BNB", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"),
    "cronos": ChainPreset(25, "CRO", "0x5C7F8A570d578ED84E63fdFA7b1eE72dEae1AE23"),
    "goerli": ChainPreset(
        5,
        "ETH",
        "0xB4FBF271143F4FBf7B91A5ded31805e42b2208d6",
        usd="0x2f3A40A3db8a7e3D09B0adfEfbCe4f6F81927557",
        usd_weth_fee=300,
        limit_order_router="0x30A16E3ECA716874E50EE4D035bCFDCE32b99796",
        router_creation_block=7579403,
        swap_router="0xcFb3cFccb4Ea7c2a58c856d6c27d35e54B9A70d0",
        num_dexes=1,
    ),
}


def _checksum(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    if not is_hex_address(value):
        raise ConfigurationError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of config.example.toml
# ---------------------------------------------------------------------------

@dataclass
class NetworkConfig:
    """[network] section."""
    chain: str = "ethereum"
    chain_id: Optional[int] = None
    native_token: Optional[str] = None
    weth: Optional[str] = None
    weth_decimals: int = 18
    usd: Optional[str] = None
    usd_weth_fee: Optional[int] = None
    http_endpoint: str = ""
    ws_endpoint: str = ""
    request_timeout: float = 15.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        return cls(
            chain=data.get("chain", "ethereum"),
            chain_id=data.get("chain_id"),
            native_token=data.get("native_token"),
            weth=data.get("weth"),
            weth_decimals=data.get("weth_decimals", 18),
            usd=data.get("usd"),
            usd_weth_fee=data.get("usd_weth_fee"),
            http_endpoint=data.get("http_endpoint", ""),
            ws_endpoint=data.get("ws_endpoint", ""),
            request_timeout=data.get("request_timeout", 15.0),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("COEX_CHAIN"):
            self.chain = v
        if v := os.environ.get("COEX_CHAIN_ID"):
            self.chain_id = int(v)
        if v := os.environ.get("COEX_HTTP_ENDPOINT"):
            self.http_endpoint = v
        if v := os.environ.get("COEX_WS_ENDPOINT"):
            self.ws_endpoint = v
        if v := os.environ.get("COEX_USD_TOKEN"):
            self.usd = v
        if v := os.environ.get("COEX_USD_WETH_FEE"):
            self.usd_weth_fee = int(v)


@dataclass
class RouterConfig:
    """[router] section."""
    limit_order_router: Optional[str] = None
    swap_router: Optional[str] = None
    router_creation_block: Optional[int] = None
    num_dexes: Optional[int] = None
    quoter: str = UNISWAP_V3_QUOTER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouterConfig":
        return cls(
            limit_order_router=data.get("limit_order_router"),
            swap_router=data.get("swap_router"),
            router_creation_block=data.get("router_creation_block"),
            num_dexes=data.get("num_dexes"),
            quoter=data.get("quoter", UNISWAP_V3_QUOTER),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("COEX_LIMIT_ORDER_ROUTER"):
            self.limit_order_router = v
        if v := os.environ.get("COEX_SWAP_ROUTER"):
            self.swap_router = v
        if v := os.environ.get("COEX_ROUTER_CREATION_BLOCK"):
            self.router_creation_block = int(v)


@dataclass
class ExecutorSectionConfig:
    """[executor] section."""
    taxed_token_support: bool = False
    simulate_batches_on_chain: bool = True
    require_gas_credit: bool = False
    dispatch_retries: int = DEFAULT_DISPATCH_RETRIES
    pending_tx_poll_interval: float = DEFAULT_PENDING_TX_POLL_INTERVAL
    pending_tx_timeout: float = DEFAULT_PENDING_TX_TIMEOUT
    backfill_chunk_size: int = DEFAULT_BACKFILL_CHUNK_SIZE
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    maintenance_interval: int = DEFAULT_MAINTENANCE_INTERVAL
    token_allowlist: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutorSectionConfig":
        return cls(
            taxed_token_support=data.get("taxed_token_support", False),
            simulate_batches_on_chain=data.get("simulate_batches_on_chain", True),
            require_gas_credit=data.get("require_gas_credit", False),
            dispatch_retries=data.get("dispatch_retries", DEFAULT_DISPATCH_RETRIES),
            pending_tx_poll_interval=data.get("pending_tx_poll_interval", DEFAULT_PENDING_TX_POLL_INTERVAL),
            pending_tx_timeout=data.get("pending_tx_timeout", DEFAULT_PENDING_TX_TIMEOUT),
            backfill_chunk_size=data.get("backfill_chunk_size", DEFAULT_BACKFILL_CHUNK_SIZE),
            refresh_interval=data.get("refresh_interval", DEFAULT_REFRESH_INTERVAL),
            maintenance_interval=data.get("maintenance_interval", DEFAULT_MAINTENANCE_INTERVAL),
            token_allowlist=data.get("token_allowlist", []),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("COEX_TAXED_TOKEN_SUPPORT"):
            self.taxed_token_support = bool(parse_bool(v) is True)
        if v := os.environ.get("COEX_SIMULATE_BATCHES_ON_CHAIN"):
            self.simulate_batches_on_chain = bool(parse_bool(v) is True)
        if v := os.environ.get("COEX_DISPATCH_RETRIES"):
            self.dispatch_retries = int(v)
        if v := os.environ.get("COEX_TOKEN_ALLOWLIST"):
            self.token_allowlist = [t.strip() for t in v.split(",") if t.strip()]


@dataclass
class WalletConfig:
    """[wallet] section. The private key is environment-only."""
    address: str = ""
    private_key: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletConfig":
        if "private_key" in data:
            logger.warning("Ignoring [wallet] private_key in config file; set COEX_PRIVATE_KEY instead")
        return cls(address=data.get("address", ""))

    def apply_env(self) -> None:
        if v := os.environ.get("COEX_WALLET_ADDRESS"):
            self.address = v
        if v := os.environ.get("COEX_PRIVATE_KEY"):
            self.private_key = v


# -----------------------------------------------------------------------
# Top-level configuration
# -----------------------------------------------------------------------

@dataclass
class ExecutorConfig:
    """
    Unified executor configuration.

    Built once at startup and passed to every component; nothing reads the
    TOML file or the environment after this point.
    """
    network: NetworkConfig = field(default_factory=NetworkConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    executor: ExecutorSectionConfig = field(default_factory=ExecutorSectionConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutorConfig":
        """Create ExecutorConfig from a parsed TOML dict."""
        return cls(
            network=NetworkConfig.from_dict(data.get("network", {})),
            router=RouterConfig.from_dict(data.get("router", {})),
            executor=ExecutorSectionConfig.from_dict(data.get("executor", {})),
            wallet=WalletConfig.from_dict(data.get("wallet", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "ExecutorConfig":
        """
        Load configuration from a TOML file.

        Args:
            config_path: Path to config.toml

        Returns:
            ExecutorConfig with env overrides and the chain preset applied
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
        else:
            with open(path, "rb") as f:
                try:
                    raw = tomli.load(f)
                except tomli.TOMLDecodeError as exc:
                    raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc
            cfg = cls.from_dict(raw)

        cfg.apply_env()
        cfg.apply_preset()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.network.apply_env()
        self.router.apply_env()
        self.executor.apply_env()
        self.wallet.apply_env()

    def apply_preset(self) -> None:
        """
        Fill every value left unset with the chain preset and checksum all
        addresses.

        Raises:
            ConfigurationError: unknown chain name or malformed address
        """
        preset = CHAIN_PRESETS.get(self.network.chain.lower())
        if preset is None:
            raise ConfigurationError(f"Unrecognized chain name: {self.network.chain}")

        net = self.network
        net.chain = net.chain.lower()
        if net.chain_id is None:
            net.chain_id = preset.chain_id
        if net.native_token is None:
            net.native_token = preset.native_token
        net.weth = _checksum(net.weth or preset.weth)
        net.usd = _checksum(net.usd or preset.usd)
        if net.usd_weth_fee is None:
            net.usd_weth_fee = preset.usd_weth_fee

        rtr = self.router
        rtr.limit_order_router = _checksum(rtr.limit_order_router or preset.limit_order_router)
        rtr.swap_router = _checksum(rtr.swap_router or preset.swap_router)
        rtr.quoter = _checksum(rtr.quoter)
        if rtr.router_creation_block is None:
            rtr.router_creation_block = preset.router_creation_block or 0
        if rtr.num_dexes is None:
            rtr.num_dexes = preset.num_dexes

        self.executor.token_allowlist = [_checksum(t) for t in self.executor.token_allowlist]
        if self.wallet.address:
            self.wallet.address = _checksum(self.wallet.address)

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate that everything needed to start the executor is present.

        Raises:
            ConfigurationError: on missing or invalid values
        """
        if not self.network.http_endpoint:
            raise ConfigurationError("HTTP node endpoint must be provided")
        if not self.network.ws_endpoint:
            raise ConfigurationError("Websocket node endpoint must be provided")
        if not self.wallet.address:
            raise ConfigurationError("Wallet address must be provided")
        if not self.wallet.private_key:
            raise ConfigurationError("COEX_PRIVATE_KEY must be set")
        if not self.router.limit_order_router:
            raise ConfigurationError(f"No limit order router configured for chain {self.network.chain}")
        if not self.router.swap_router:
            raise ConfigurationError(f"No swap router configured for chain {self.network.chain}")
        if not self.network.usd or self.network.usd_weth_fee is None:
            raise ConfigurationError("USD reference token and USD/WETH pool fee must be provided")
        if self.executor.backfill_chunk_size < 1:
            raise ConfigurationError("backfill_chunk_size must be >= 1")
        if self.executor.dispatch_retries < 1:
            raise ConfigurationError("dispatch_retries must be >= 1")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for diagnostics. The private key is never included."""
        return {
            "network": {
                "chain": self.network.chain,
                "chain_id": self.network.chain_id,
                "weth": self.network.weth,
                "usd": self.network.usd,
                "usd_weth_fee": self.network.usd_weth_fee,
                "http_endpoint": self.network.http_endpoint,
                "ws_endpoint": self.network.ws_endpoint,
            },
            "router": {
                "limit_order_router": self.router.limit_order_router,
                "swap_router": self.router.swap_router,
                "router_creation_block": self.router.router_creation_block,
                "num_dexes": self.router.num_dexes,
                "quoter": self.router.quoter,
            },
            "executor": {
                "taxed_token_support": self.executor.taxed_token_support,
                "simulate_batches_on_chain": self.executor.simulate_batches_on_chain,
                "require_gas_credit": self.executor.require_gas_credit,
                "dispatch_retries": self.executor.dispatch_retries,
                "backfill_chunk_size": self.executor.backfill_chunk_size,
                "token_allowlist": list(self.executor.token_allowlist),
            },
            "wallet": {
                "address": self.wallet.address,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> ExecutorConfig:
    """
    Load executor configuration.

    Resolution order:
        1. Explicit *path* argument
        2. COEX_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("COEX_CONFIG", "config.toml")

    return ExecutorConfig.from_file(path)
