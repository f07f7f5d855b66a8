"""
Test suite for the executor entry point (startup failures only)
"""

import pytest

from coex import main as main_module
from coex.config import ExecutorConfig
from coex.exceptions import StartupError, TransientRPCError


class FakeStartupRPC:

    def __init__(self, url, timeout=15.0, chain_id=1, fail=False):
        self.url = url
        self._chain_id = chain_id
        self.fail = fail

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def chain_id(self):
        if self.fail:
            raise TransientRPCError("connection refused")
        return self._chain_id

    async def block_number(self):
        return 100


def goerli_config() -> ExecutorConfig:
    config = ExecutorConfig()
    config.network.chain = "goerli"
    config.network.http_endpoint = "http://node"
    config.network.ws_endpoint = "ws://node"
    config.apply_preset()
    return config


class TestMain:

    def test_invalid_config_exits_nonzero(self, tmp_path, monkeypatch):
        monkeypatch.delenv("COEX_HTTP_ENDPOINT", raising=False)
        assert main_module.main(["--config", str(tmp_path / "absent.toml")]) == 1


@pytest.mark.asyncio
class TestStart:

    async def test_chain_id_mismatch_is_fatal(self, monkeypatch):
        monkeypatch.setattr(main_module, "JsonRpcClient", lambda url, timeout: FakeStartupRPC(url, chain_id=1))
        with pytest.raises(StartupError, match="chain id 1"):
            await main_module.start(goerli_config())

    async def test_unreachable_node_is_fatal(self, monkeypatch):
        monkeypatch.setattr(main_module, "JsonRpcClient", lambda url, timeout: FakeStartupRPC(url, fail=True))
        with pytest.raises(StartupError, match="Cannot reach node"):
            await main_module.start(goerli_config())
