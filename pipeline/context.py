"""
Explicitly owned keeper resources. Built once from Config in run.py and
passed down; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from client.gas import GasOracle
from client.ledger import LedgerError, LedgerGateway
from client.price_feed import CoinGeckoPriceFeed
from client.web3_ledger import Web3LedgerGateway
from config import Config
from executor.engine import ExecutionEngine
from executor.retry import RetryPolicy
from monitor.display import print_diagnostics
from monitor.stats import KeeperStats
from pipeline.controller import CycleController
from scanner.amm import AmmMath, from_wei, quantize
from scanner.liquidation import LiquidationMonitor
from scanner.models import NATIVE_TOKEN
from scanner.opportunities import OpportunityScanner
from scanner.staleness import PriceStalenessMonitor
from state.settled import SettledRegistry

logger = logging.getLogger(__name__)


@dataclass
class KeeperContext:
    config: Config
    gateway: LedgerGateway
    gas_oracle: GasOracle
    registry: SettledRegistry
    stats: KeeperStats
    amm: AmmMath
    retry_policy: RetryPolicy
    price_feed: CoinGeckoPriceFeed | None = None

    @classmethod
    def from_config(cls, cfg: Config, gateway: LedgerGateway | None = None) -> KeeperContext:
        """Wire every collaborator from *cfg*. Pass *gateway* to skip the web3 adapter."""
        retry_policy = RetryPolicy(max_attempts=cfg.retry_attempts, backoff_sec=cfg.retry_backoff_sec)
        gas_oracle = GasOracle(
            rpc_url=cfg.rpc_url,
            cache_sec=cfg.gas_cache_sec,
            default_gas_gwei=cfg.default_gas_gwei,
        )
        if gateway is None:
            gateway = Web3LedgerGateway(
                rpc_url=cfg.rpc_url,
                router_address=cfg.router_address,
                oracle_address=cfg.oracle_address,
                private_key=cfg.keeper_private_key,
                chain_id=cfg.chain_id,
                pool_address=cfg.pool_address,
                access_control_address=cfg.access_control_address,
                abi_dir=cfg.abi_dir,
                gas_oracle=gas_oracle,
                read_retry=retry_policy,
                request_timeout_sec=cfg.ledger_timeout_sec,
                receipt_timeout_sec=cfg.receipt_timeout_sec,
            )

        price_feed = None
        if cfg.enable_price_updates:
            token_ids = {t.address: t.coingecko_id for t in cfg.tokens.values()}
            token_ids[NATIVE_TOKEN] = cfg.native_coingecko_id
            price_feed = CoinGeckoPriceFeed(
                token_ids, host=cfg.price_feed_host, cache_sec=cfg.price_feed_cache_sec,
            )

        return cls(
            config=cfg,
            gateway=gateway,
            gas_oracle=gas_oracle,
            registry=SettledRegistry(),
            stats=KeeperStats(),
            amm=AmmMath(precision=cfg.amm_precision, default_fee_percent=cfg.amm_fee_pct),
            retry_policy=retry_policy,
            price_feed=price_feed,
        )

    def build_controller(self) -> CycleController:
        cfg = self.config
        monitor = LiquidationMonitor(
            threshold_pct=cfg.liquidation_threshold_pct,
            liquidate_longs=cfg.liquidate_longs,
            liquidate_shorts=cfg.liquidate_shorts,
        )
        scanner = OpportunityScanner(
            self.gateway,
            monitor,
            self.registry,
            amm=self.amm,
            token_decimals=cfg.token_decimals(),
            order_reward_fee_pct=cfg.order_reward_fee_pct,
            liquidation_reward_pct=cfg.liquidation_reward_pct,
            order_gas_estimate=cfg.order_gas_estimate,
            liquidation_gas_estimate=cfg.liquidation_gas_estimate,
            max_workers=cfg.scan_workers,
        )
        engine = ExecutionEngine(
            self.gateway,
            self.stats,
            self.registry,
            amm=self.amm,
            retry_policy=self.retry_policy,
            gas_buffer_pct=cfg.gas_buffer_pct,
            max_price_impact_pct=cfg.max_price_impact_pct,
            max_batch_size=cfg.max_batch_size,
            dry_run=cfg.dry_run,
        )
        staleness = None
        if cfg.enable_price_updates:
            staleness = PriceStalenessMonitor(
                self.gateway, cfg.token_addresses(), max_age_sec=cfg.price_max_age_sec,
            )
        return CycleController(
            self.gateway,
            scanner,
            engine,
            self.stats,
            staleness=staleness,
            price_feed=self.price_feed,
            cycle_interval_sec=cfg.cycle_interval_sec,
            pause_cooldown_sec=cfg.pause_cooldown_sec,
            liquidation_every_n_cycles=cfg.liquidation_every_n_cycles,
            stats_every_n_cycles=cfg.stats_every_n_cycles,
            idle_notice_every_n_cycles=cfg.idle_notice_every_n_cycles,
            price_check_every_n_cycles=cfg.price_check_every_n_cycles,
            enable_order_execution=cfg.enable_order_execution,
            enable_liquidation=cfg.enable_liquidation,
            enable_price_updates=cfg.enable_price_updates,
        )

    def start(self) -> None:
        """Startup diagnostics. Failures are logged; the loop's pause check decides readiness."""
        balance = "?"
        paused: bool | None = None
        try:
            balance = str(quantize(from_wei(self.gateway.native_balance()), 4))
        except LedgerError as e:
            logger.warning("Balance read failed: %s", e)
        try:
            paused = self.gateway.is_paused()
        except LedgerError as e:
            logger.warning("Pause check failed: %s", e)
        order_cost = self.gas_oracle.estimate_cost_eth(self.config.order_gas_estimate)
        print_diagnostics(
            self.gateway.keeper_address, balance, paused, order_cost_eth=str(quantize(order_cost, 6)),
        )

    def stop(self) -> None:
        if self.price_feed is not None:
            self.price_feed.close()
        logger.debug("Keeper context closed")
