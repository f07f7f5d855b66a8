"""
Coex Unified Configuration

Loads config.toml at startup. Environment variables override TOML values,
TOML values override the chain preset.
"""

from .loader import (
    CHAIN_PRESETS,
    ChainPreset,
    ExecutorConfig,
    ExecutorSectionConfig,
    NetworkConfig,
    RouterConfig,
    WalletConfig,
    load_config,
)

__all__ = [
    "CHAIN_PRESETS",
    "ChainPreset",
    "ExecutorConfig",
    "ExecutorSectionConfig",
    "NetworkConfig",
    "RouterConfig",
    "WalletConfig",
    "load_config",
]
