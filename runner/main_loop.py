"""
memetrader Runner: Main Loop

Wires the risk core together and drives it.

Flow per risk tick:
1. Value the portfolio (wallet balance + open positions)
2. Select the StrategyProfile for that capital
3. Refresh, ratchet and evaluate every ACTIVE position
4. Execute exits and persist

Housekeeping runs on its own ticker: purge long-expired cache entries and
publish endpoint health.
"""

import logging
import os
import signal
from pathlib import Path
from typing import Optional

from core.endpoint_pool import EndpointKind, EndpointPool
from core.entry import PositionOpener
from core.exit_policy import ExitPolicy
from core.market_data import MarketData
from core.portfolio import PortfolioValuer
from core.position_manager import PositionRiskEngine, TickReport
from core.resilient_client import ResilientClient
from core.response_cache import ResponseCache
from core.strategy_profile import StrategyProfileSelector
from core.trading_interfaces import BalanceOracle, PriceOracle, TradeExecutor
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.oracles import HttpPriceOracle, PaperTradeExecutor, PaperWallet, SolanaRpcBalanceOracle
from infra.position_store import PositionStore
from infra.scheduler import Scheduler
from tools.config_validator import TraderConfig, load_config

logger = logging.getLogger(__name__)

PAPER_WALLET_ADDRESS = "paper-wallet"


def setup_logging(config: TraderConfig) -> None:
    """File + console logging, configured once per process"""
    log_cfg = config.app.logging
    handlers = [logging.StreamHandler()]
    if log_cfg.file:
        Path(log_cfg.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_cfg.file))

    logging.basicConfig(
        level=getattr(logging, log_cfg.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class TradingRuntime:
    """
    Process wiring for the risk core.

    Responsibilities:
    - Load and validate config
    - Construct every component once and inject it
    - Run the risk and housekeeping tickers until stopped
    - Stop gracefully on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: TraderConfig,
        executor: Optional[TradeExecutor] = None,
        price_oracle: Optional[PriceOracle] = None,
        balance_oracle: Optional[BalanceOracle] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.config = config
        app = config.app
        self.mode = app.app.mode
        resilience = app.resilience

        self.metrics = metrics or MetricsRecorder(enabled=app.metrics.enabled, port=app.metrics.port)

        self.pool = EndpointPool(
            config.endpoints(os.getenv("HELIUS_API_KEY")),
            breaker_threshold=resilience.breaker_threshold,
            cooldown_window=resilience.cooldown_window_seconds,
            rate_limit_cooldown=resilience.rate_limit_cooldown_seconds,
        )
        self.cache = ResponseCache()
        self.client = ResilientClient(self.pool, self.cache, config.retry_policy(), metrics=self.metrics)

        self.paper_wallet: Optional[PaperWallet] = None
        wallet_address = app.app.wallet_address
        if self.mode == "PAPER":
            self.paper_wallet = PaperWallet(app.app.paper_starting_balance)
            balance_oracle = balance_oracle or self.paper_wallet
            wallet_address = wallet_address or PAPER_WALLET_ADDRESS

        self.market = MarketData(
            self.client,
            price_oracle or HttpPriceOracle(timeout=resilience.attempt_timeout_seconds or 15.0),
            balance_oracle or SolanaRpcBalanceOracle(timeout=resilience.attempt_timeout_seconds or 15.0),
        )

        if executor is None:
            if self.paper_wallet is None:
                raise ValueError("LIVE mode requires a TradeExecutor; none is bundled")
            executor = PaperTradeExecutor(self.market, self.paper_wallet, app.app.paper_slippage_pct)
        self.executor = executor

        self.store = PositionStore(app.state.positions_file)
        self.selector = StrategyProfileSelector(config.strategy_profiles())
        self.exit_policy = ExitPolicy(config.role_policies(), config.policy.emergency_floor_percent)
        self.valuer = PortfolioValuer(
            self.market,
            self.store,
            wallet_address=wallet_address,
            balance_ttl=resilience.balance_cache_ttl_seconds,
        )
        self.engine = PositionRiskEngine(
            self.store,
            self.market,
            self.executor,
            self.selector,
            exit_policy=self.exit_policy,
            valuer=self.valuer,
            metrics=self.metrics,
        )
        self.opener = PositionOpener(self.store, self.executor, self.selector, self.exit_policy)

        self.scheduler = Scheduler(jitter_pct=app.loop.jitter_pct)
        self.scheduler.add("risk", self.engine.tick, interval=self._risk_interval)
        self.scheduler.add("housekeeping", self.housekeeping, interval=app.loop.housekeeping_interval_seconds)

        logger.info(
            f"Initialized TradingRuntime in {self.mode} mode: "
            f"{len(self.pool.endpoints(EndpointKind.RPC))} rpc / "
            f"{len(self.pool.endpoints(EndpointKind.PRICE))} price endpoints, "
            f"{len(self.store.active())} active positions"
        )

    def _risk_interval(self) -> float:
        return self.engine.active_profile.poll_interval_seconds

    def housekeeping(self) -> int:
        """Purge stale cache entries and publish endpoint health"""
        purged = self.cache.purge_expired(self.config.app.resilience.cache_max_stale_seconds)
        for stats in self.pool.snapshot():
            self.metrics.record_circuit_breaker_state(stats.url, stats.breaker_open)
            if stats.breaker_open or stats.rate_limited:
                logger.warning(
                    f"Endpoint {stats.url} ({stats.kind}) unavailable: "
                    f"breaker_open={stats.breaker_open}, rate_limited={stats.rate_limited}, "
                    f"failures={stats.consecutive_failures}"
                )
        return purged

    def run_once(self) -> TickReport:
        report = self.engine.tick()
        self.housekeeping()
        logger.info(f"Single run complete: {report.summary}")
        return report

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, signum, frame=None) -> None:
        logger.warning(f"Shutdown signal {signum} received, stopping after the in-flight tick")
        self.scheduler.stop()

    def run_forever(self) -> None:
        self.metrics.start()
        self.scheduler.start()
        logger.info("Scheduler started")
        self.scheduler.wait()
        if not self.scheduler.join(timeout=60):
            logger.warning("Tasks did not finish within 60s of stop")
        logger.info("Trading loop stopped cleanly.")

    def close(self) -> None:
        self.scheduler.stop()
        self.client.close()


def main(argv=None):
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="memetrader risk loop")
    parser.add_argument("--once", action="store_true", help="Run one risk tick and exit")
    parser.add_argument(
        "--config-dir",
        default=os.getenv("MEMETRADER_CONFIG_DIR", "config"),
        help="Config directory (default: $MEMETRADER_CONFIG_DIR or config)",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config_dir)
    setup_logging(config)

    with SingleInstanceLock(config.app.state.lock_file):
        runtime = TradingRuntime(config)
        try:
            if args.once:
                runtime.run_once()
            else:
                runtime.install_signal_handlers()
                runtime.run_forever()
        finally:
            runtime.close()


if __name__ == "__main__":
    main()
