"""
Configuration loaded from environment variables. Fail-fast on missing required values.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ConfigurationError(Exception):
    """Raised at startup when the configuration cannot run a keeper. Fatal."""
    pass


class TokenConfig(BaseModel):
    address: str
    decimals: int = Field(default=18, ge=0, le=36)
    # CoinGecko id used by the price-refresh phase ("" = not refreshed).
    coingecko_id: str = ""


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Network + identity
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 31337  # local anvil
    keeper_private_key: str = Field(default="", description="Keeper wallet private key (hex)")

    # Contract addresses
    router_address: str = ""
    oracle_address: str = ""
    # Optional: enables the pre-flight price-impact guard
    pool_address: str = ""
    # Optional: emergencyStop() is folded into the paused check
    access_control_address: str = ""
    # Directory of compiled artifacts (<Name>.json); empty = built-in ABI fragments
    abi_dir: str = ""

    # Tokens the oracle prices (JSON in env: {"USDC": {"address": "0x..", "decimals": 6}})
    tokens: dict[str, TokenConfig] = Field(default_factory=dict)
    native_coingecko_id: str = "ethereum"

    # Timing
    cycle_interval_sec: float = Field(default=20.0, gt=0)
    pause_cooldown_sec: float = Field(default=20.0, gt=0)
    liquidation_every_n_cycles: int = Field(default=2, ge=1)
    stats_every_n_cycles: int = Field(default=20, ge=1)
    idle_notice_every_n_cycles: int = Field(default=4, ge=1)
    # ~5 min at the default interval
    price_check_every_n_cycles: int = Field(default=15, ge=1)

    # Phases
    enable_order_execution: bool = True
    enable_liquidation: bool = True
    # Needs the oracle updater role on the keeper key
    enable_price_updates: bool = False

    # Liquidation policy
    liquidation_threshold_pct: Decimal = Field(default=Decimal(80))
    liquidate_longs: bool = True
    liquidate_shorts: bool = True

    # Oracle freshness
    price_max_age_sec: float = Field(default=3600.0, gt=0)
    max_batch_size: int = Field(default=10)

    # Retries + timeouts
    retry_attempts: int = Field(default=2, ge=1, le=10)
    retry_backoff_sec: float = Field(default=2.0, ge=0)
    ledger_timeout_sec: float = Field(default=30.0, gt=0)
    receipt_timeout_sec: float = Field(default=60.0, gt=0)
    scan_workers: int = Field(default=4, ge=1, le=32)

    # Gas + rewards
    order_gas_estimate: int = Field(default=300_000, ge=21_000)
    liquidation_gas_estimate: int = Field(default=400_000, ge=21_000)
    gas_buffer_pct: Decimal = Field(default=Decimal(20), ge=0, le=500)
    gas_cache_sec: float = 10.0
    default_gas_gwei: float = Field(default=1.0, gt=0)
    order_reward_fee_pct: Decimal = Field(default=Decimal("0.1"), ge=0)
    liquidation_reward_pct: Decimal = Field(default=Decimal(10), ge=0)

    # AMM math
    amm_fee_pct: Decimal = Field(default=Decimal("0.3"), ge=0, lt=100)
    amm_precision: int = Field(default=6, ge=0, le=18)
    # 0 disables the guard
    max_price_impact_pct: Decimal = Field(default=Decimal(0), ge=0)

    # Reference price feed for the refresh phase
    price_feed_host: str = "https://api.coingecko.com/api/v3"
    price_feed_cache_sec: float = Field(default=30.0, ge=0)

    # Modes
    dry_run: bool = False
    log_level: str = "INFO"

    def token_decimals(self) -> dict[str, int]:
        """Token address -> decimals."""
        return {t.address: t.decimals for t in self.tokens.values()}

    def token_addresses(self) -> list[str]:
        return [t.address for t in self.tokens.values()]


def validate_startup(cfg: Config) -> None:
    """
    Cross-field checks that pydantic field constraints cannot express.
    Raises ConfigurationError; the keeper must not start.
    """
    problems: list[str] = []
    if not cfg.router_address:
        problems.append("ROUTER_ADDRESS is required")
    if not cfg.oracle_address:
        problems.append("ORACLE_ADDRESS is required")
    if not cfg.dry_run and not cfg.keeper_private_key:
        problems.append("KEEPER_PRIVATE_KEY is required unless DRY_RUN=true")
    if not (Decimal(0) < cfg.liquidation_threshold_pct <= Decimal(100)):
        problems.append(
            f"LIQUIDATION_THRESHOLD_PCT must be in (0, 100], got {cfg.liquidation_threshold_pct}"
        )
    if cfg.enable_liquidation and not (cfg.liquidate_longs or cfg.liquidate_shorts):
        problems.append("Liquidation enabled but both LIQUIDATE_LONGS and LIQUIDATE_SHORTS are false")
    if not (1 <= cfg.max_batch_size <= 10):
        problems.append(f"MAX_BATCH_SIZE must be between 1 and 10, got {cfg.max_batch_size}")
    if cfg.max_price_impact_pct > 0 and not cfg.pool_address:
        problems.append("MAX_PRICE_IMPACT_PCT needs POOL_ADDRESS for reserve reads")
    if cfg.enable_price_updates and not cfg.native_coingecko_id and not any(
        t.coingecko_id for t in cfg.tokens.values()
    ):
        problems.append("ENABLE_PRICE_UPDATES needs at least one token with a coingecko_id")
    if problems:
        raise ConfigurationError("; ".join(problems))


def load_config() -> Config:
    """Load and validate config from environment. Raises on missing required fields."""
    return Config()
