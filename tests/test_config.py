"""
Test suite for the TOML configuration loader

Covers chain presets, environment overrides, private-key handling and
validation.
"""

import pytest
from eth_utils import to_checksum_address

from coex.config import CHAIN_PRESETS, ExecutorConfig, load_config
from coex.exceptions import ConfigurationError, StartupError

OWNER = "0x00000000000000000000000000000000000000aa"

GOERLI_TOML = """
[network]
chain = "goerli"
http_endpoint = "http://127.0.0.1:8545"
ws_endpoint = "ws://127.0.0.1:8546"

[executor]
taxed_token_support = true
backfill_chunk_size = 5000
token_allowlist = ["0x2f3a40a3db8a7e3d09b0adfefbce4f6f81927557"]

[wallet]
address = "0x00000000000000000000000000000000000000aa"
private_key = "0xdeadbeef"
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "COEX_CONFIG", "COEX_CHAIN", "COEX_CHAIN_ID", "COEX_HTTP_ENDPOINT", "COEX_WS_ENDPOINT",
        "COEX_USD_TOKEN", "COEX_USD_WETH_FEE", "COEX_LIMIT_ORDER_ROUTER", "COEX_SWAP_ROUTER",
        "COEX_ROUTER_CREATION_BLOCK", "COEX_TAXED_TOKEN_SUPPORT", "COEX_SIMULATE_BATCHES_ON_CHAIN",
        "COEX_DISPATCH_RETRIES", "COEX_TOKEN_ALLOWLIST", "COEX_WALLET_ADDRESS", "COEX_PRIVATE_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def goerli_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(GOERLI_TOML)
    return path


class TestPresets:

    def test_missing_file_uses_ethereum_defaults(self, tmp_path):
        config = ExecutorConfig.from_file(str(tmp_path / "absent.toml"))
        assert config.network.chain == "ethereum"
        assert config.network.chain_id == 1
        assert config.network.weth == CHAIN_PRESETS["ethereum"].weth
        assert config.router.router_creation_block == 0

    def test_goerli_preset_fills_router(self, goerli_file):
        config = ExecutorConfig.from_file(str(goerli_file))
        preset = CHAIN_PRESETS["goerli"]
        assert config.network.chain_id == 5
        assert config.router.limit_order_router == preset.limit_order_router
        assert config.router.swap_router == preset.swap_router
        assert config.router.router_creation_block == preset.router_creation_block
        assert config.network.usd_weth_fee == 300
        assert config.router.num_dexes == 1

    def test_explicit_values_beat_preset(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[network]\nchain = "goerli"\nusd_weth_fee = 500\n[router]\nrouter_creation_block = 1\n')
        config = ExecutorConfig.from_file(str(path))
        assert config.network.usd_weth_fee == 500
        assert config.router.router_creation_block == 1

    def test_addresses_are_checksummed(self, goerli_file):
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.executor.token_allowlist == [to_checksum_address("0x2f3a40a3db8a7e3d09b0adfefbce4f6f81927557")]
        assert config.wallet.address == to_checksum_address(OWNER)

    def test_unknown_chain(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[network]\nchain = "atlantis"\n')
        with pytest.raises(ConfigurationError, match="atlantis"):
            ExecutorConfig.from_file(str(path))

    def test_bad_address(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[network]\nchain = "goerli"\nweth = "0x1234"\n')
        with pytest.raises(ConfigurationError, match="Invalid address"):
            ExecutorConfig.from_file(str(path))

    def test_unparseable_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[network\nchain = ")
        with pytest.raises(ConfigurationError):
            ExecutorConfig.from_file(str(path))


class TestEnvironment:

    def test_env_overrides_toml(self, goerli_file, monkeypatch):
        monkeypatch.setenv("COEX_HTTP_ENDPOINT", "http://node:8545")
        monkeypatch.setenv("COEX_TAXED_TOKEN_SUPPORT", "False")
        monkeypatch.setenv("COEX_DISPATCH_RETRIES", "7")
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.network.http_endpoint == "http://node:8545"
        assert config.executor.taxed_token_support is False
        assert config.executor.dispatch_retries == 7

    def test_toml_values_without_env(self, goerli_file):
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.executor.taxed_token_support is True
        assert config.executor.backfill_chunk_size == 5000

    def test_private_key_only_from_env(self, goerli_file, monkeypatch):
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.wallet.private_key == ""

        monkeypatch.setenv("COEX_PRIVATE_KEY", "0x" + "46" * 32)
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.wallet.private_key == "0x" + "46" * 32
        assert "private_key" not in config.to_dict()["wallet"]
        assert "46" * 32 not in repr(config)

    def test_allowlist_from_env(self, goerli_file, monkeypatch):
        monkeypatch.setenv("COEX_TOKEN_ALLOWLIST", "0x00000000000000000000000000000000000000aa, ")
        config = ExecutorConfig.from_file(str(goerli_file))
        assert config.executor.token_allowlist == [to_checksum_address(OWNER)]

    def test_load_config_honours_coex_config(self, goerli_file, monkeypatch):
        monkeypatch.setenv("COEX_CONFIG", str(goerli_file))
        assert load_config().network.chain == "goerli"


class TestValidation:

    def test_complete_config_validates(self, goerli_file, monkeypatch):
        monkeypatch.setenv("COEX_PRIVATE_KEY", "0x" + "46" * 32)
        assert ExecutorConfig.from_file(str(goerli_file)).validate()

    def test_missing_private_key(self, goerli_file):
        with pytest.raises(ConfigurationError, match="COEX_PRIVATE_KEY"):
            ExecutorConfig.from_file(str(goerli_file)).validate()

    def test_missing_router_on_chain_without_deployment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COEX_PRIVATE_KEY", "0x" + "46" * 32)
        path = tmp_path / "config.toml"
        path.write_text(
            '[network]\nchain = "polygon"\nhttp_endpoint = "http://a"\nws_endpoint = "ws://a"\n'
            '[wallet]\naddress = "0x00000000000000000000000000000000000000aa"\n'
        )
        with pytest.raises(ConfigurationError, match="limit order router"):
            ExecutorConfig.from_file(str(path)).validate()

    def test_configuration_error_is_a_startup_error(self):
        assert issubclass(ConfigurationError, StartupError)
