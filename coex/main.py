"""
Coex executor entry point.

Startup sequence:
    1. Load and validate configuration
    2. Connect to the node and check the chain id
    3. Resolve the venue list and the USD/WETH reference pool (fatal on failure)
    4. Backfill router events from the router's creation block
    5. Run one matching cycle over the whole order book
    6. Follow new heads and run order maintenance until interrupted
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import ExecutorConfig, load_config
from .exceptions import DecodeError, RPCError, StartupError, TransientRPCError
from .exchange.batching import BatchingEngine, OnChainBatchValidator
from .exchange.block_processor import BlockSynchronizer
from .exchange.dispatcher import ExecutionDispatcher, PendingExecutionSet, PendingTransactionMonitor
from .exchange.maintenance import OrderMaintenance
from .exchange.markets import MarketCache
from .exchange.orderbook import GasCreditLedger, OrderBook
from .exchange.venues import VenueReader
from .logger import get_logger
from .rpc import HeaderSubscription, JsonRpcClient
from .wallet import LocalSigner

logger = get_logger(__name__)


async def start(config: ExecutorConfig) -> None:
    net, router_cfg, executor_cfg = config.network, config.router, config.executor

    rpc = JsonRpcClient(net.http_endpoint, timeout=net.request_timeout)
    async with rpc:
        try:
            chain_id = await rpc.chain_id()
            latest = await rpc.block_number()
        except (TransientRPCError, RPCError) as exc:
            raise StartupError(f"Cannot reach node at {net.http_endpoint}: {exc}") from exc
        if chain_id != net.chain_id:
            raise StartupError(f"Node reports chain id {chain_id}, expected {net.chain_id} ({net.chain})")
        logger.info(f"Connected to {net.chain} (chain id {chain_id}) at block {latest}")

        signer = LocalSigner(rpc, config.wallet.private_key, chain_id, config.wallet.address)
        reader = VenueReader(rpc, router_cfg.swap_router, router_cfg.quoter)
        try:
            dexes = await reader.load_dexes(router_cfg.num_dexes)
            markets = MarketCache(
                net.weth,
                net.weth_decimals,
                reader=reader,
                dexes=dexes,
                token_allowlist=executor_cfg.token_allowlist or None,
            )
            await markets.resolve_reference_pool(net.usd, net.usd_weth_fee)
            await signer.sync_nonce()
            balance = await rpc.get_balance(signer.address)
        except (TransientRPCError, RPCError, DecodeError) as exc:
            raise StartupError(f"Startup reads failed: {exc}") from exc
        if balance == 0:
            logger.warning(f"Executor wallet {signer.address} has no native balance, executions will fail")

        order_book = OrderBook()
        ledger = GasCreditLedger()
        pending = PendingExecutionSet()
        monitor = PendingTransactionMonitor(
            rpc, pending, executor_cfg.pending_tx_poll_interval, executor_cfg.pending_tx_timeout,
        )
        dispatcher = ExecutionDispatcher(
            signer,
            router_cfg.limit_order_router,
            pending,
            monitor=monitor,
            order_book=order_book,
            ledger=ledger,
            require_gas_credit=executor_cfg.require_gas_credit,
            retries=executor_cfg.dispatch_retries,
        )
        validator = None
        if executor_cfg.simulate_batches_on_chain:
            validator = OnChainBatchValidator(rpc, router_cfg.limit_order_router, signer.address)
        engine = BatchingEngine(
            order_book,
            markets,
            quote=reader.quote,
            token_decimals=reader.decimals,
            validator=validator,
            is_pending=pending.is_pending,
        )
        synchronizer = BlockSynchronizer(
            rpc,
            router_cfg.limit_order_router,
            order_book,
            ledger,
            markets,
            engine=engine,
            dispatcher=dispatcher,
            pending=pending,
            taxed_token_support=executor_cfg.taxed_token_support,
            backfill_chunk_size=executor_cfg.backfill_chunk_size,
        )

        try:
            await synchronizer.backfill(router_cfg.router_creation_block, latest)
        except TransientRPCError as exc:
            raise StartupError(f"Backfill failed: {exc}") from exc
        await synchronizer.initial_matching()

        maintenance = OrderMaintenance(
            order_book, reader, signer, router_cfg.limit_order_router, executor_cfg.refresh_interval,
        )
        subscription = HeaderSubscription(net.ws_endpoint, last_block=latest)
        try:
            await asyncio.gather(
                synchronizer.run(subscription.block_numbers()),
                maintenance.run(executor_cfg.maintenance_interval),
            )
        finally:
            await dispatcher.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Coex limit-order executor")
    parser.add_argument("--config", "-c", default=None, help="Path to config.toml (default: $COEX_CONFIG or ./config.toml)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        config.validate()
        asyncio.run(start(config))
    except StartupError as exc:
        logger.critical(f"Executor failed to start: {exc}")
        return 1
    except KeyboardInterrupt:
        logger.info("Executor stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
