"""
quant-arena - Main Loop

Wires config, market data, oracle clients, ledgers and the cycle scheduler,
then either runs one round of cycles (--once), forces one bot's turn
(--force-turn) or runs the periodic scheduler plus the price-tick refresher
until SIGINT/SIGTERM.
"""

import logging
import random
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ai.model_client import ModelClient, create_model_client_from_config
from ai.protocol import ProtocolConfig, ProtocolController
from core.bot import BotConfig, BotRuntime
from core.exceptions import LedgerInvariantViolation
from core.ledger import LedgerConfig
from core.market_data import MarketDataProvider, create_market_data_provider
from core.scheduler import CycleScheduler, OperationResult
from infra.alerting import AlertService
from infra.broadcast import Broadcaster
from infra.healthcheck import HealthServer
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class ArenaRunner:
    """
    Process-level owner of the scheduler and its background threads.
    """

    def __init__(
        self,
        config_dir: str = "config",
        market_data: Optional[MarketDataProvider] = None,
        client: Optional[ModelClient] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        # Load configs
        self.app_config = self._load_yaml("app.yaml")
        self.bots_config = self._load_yaml("bots.yaml")

        loop_cfg = self.app_config.get("loop") or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 300))
        self.price_refresh_seconds = float(loop_cfg.get("price_refresh_seconds", 5))
        self.loop_jitter_pct = max(0.0, min(float(loop_cfg.get("jitter_pct", 10.0)), 20.0))  # Clamp 0-20%

        self.mode = (self.app_config.get("app") or {}).get("mode", "PAPER").upper()
        if self.mode != "PAPER":
            raise ValueError(f"Invalid mode: {self.mode}")

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/quant-arena.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )
        logger.info(f"Starting quant-arena in mode={self.mode}")

        # Observability
        monitoring_cfg = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(monitoring_cfg.get("alerts"))

        # Persistence + broadcast
        state_cfg = self.app_config.get("state") or {}
        self.state_store = StateStore(state_file=state_cfg.get("path"))
        self.broadcaster = Broadcaster()
        self.broadcaster.start()

        # Bots
        ledger_config = LedgerConfig.from_dict(self.app_config.get("ledger"))
        log_cfg = self.app_config.get("decision_log") or {}
        bot_configs = [BotConfig.from_dict(raw) for raw in self.bots_config.get("bots", [])]
        runtimes = [
            BotRuntime.create(cfg, ledger_config=ledger_config, max_log_entries=int(log_cfg.get("max_entries", 50)))
            for cfg in bot_configs
        ]

        # Market data covers the union of bot symbols
        market_cfg = self.app_config.get("market_data") or {}
        symbols = sorted({s for cfg in bot_configs for s in cfg.symbols})
        self.market_data = market_data or create_market_data_provider(market_cfg, symbols=symbols or None)

        # Oracle clients: shared default plus per-bot overrides
        oracle_cfg = self.app_config.get("oracle") or {}
        protocol_config = ProtocolConfig.from_dict(oracle_cfg)
        default_client = client or create_model_client_from_config(oracle_cfg)
        self.controller = ProtocolController(default_client, protocol_config, metrics=self.metrics)
        overrides: Dict[str, ProtocolController] = {}
        if client is None:
            for cfg in bot_configs:
                if cfg.oracle:
                    merged = {**oracle_cfg, **cfg.oracle}
                    overrides[cfg.id] = ProtocolController(
                        create_model_client_from_config(merged),
                        ProtocolConfig.from_dict(merged),
                        metrics=self.metrics,
                    )

        self.scheduler = CycleScheduler(
            runtimes,
            market_data=self.market_data,
            controller=self.controller,
            controllers=overrides,
            state_store=self.state_store,
            broadcaster=self.broadcaster,
            metrics=self.metrics,
            alerts=self.alerts,
            history_window=int(log_cfg.get("history_window", 5)),
            history_limit=int(market_cfg.get("history_limit", 100)),
            manual_wait_seconds=protocol_config.cycle_budget_seconds + 5.0,
        )

        self.health_server: Optional[HealthServer] = None
        if monitoring_cfg.get("health_enabled"):
            self.health_server = HealthServer(
                port=int(monitoring_cfg.get("health_port", 8081)),
                status_provider=self.scheduler.health_status,
            )
            self.health_server.start()

        # Shutdown flag
        self._running = True
        self._stop_event = threading.Event()
        self._price_thread: Optional[threading.Thread] = None
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized ArenaRunner with {len(runtimes)} bot(s): {[c.id for c in bot_configs]}")

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current cycle")
        logger.warning("=" * 80)
        self._running = False
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_once(self) -> List[OperationResult]:
        """One scheduled cycle for every unpaused bot."""
        results = self.scheduler.run_all()
        for result in results:
            level = logging.INFO if result.success else logging.WARNING
            logger.log(level, f"[{result.bot_id}] {result.status}: {'; '.join(result.notes) or 'no notes'}")
        return results

    def force_turn(self, bot_id: str) -> OperationResult:
        result = self.scheduler.force_turn(bot_id)
        logger.info(f"[{bot_id}] force turn -> {result.status}: {'; '.join(result.notes)}")
        return result

    def _price_loop(self) -> None:
        while self._running:
            try:
                self.scheduler.refresh_prices()
            except LedgerInvariantViolation as exc:
                # Bot already halted and alerted by the scheduler
                logger.critical(f"Price tick halted bot {exc.bot_id}: {exc.detail}")
            except Exception as exc:
                logger.error(f"Price refresh failed: {exc}", exc_info=True)
            self._stop_event.wait(self.price_refresh_seconds)

    def start_price_refresher(self) -> None:
        if self._price_thread and self._price_thread.is_alive():
            return
        self._price_thread = threading.Thread(target=self._price_loop, name="PriceRefresher", daemon=True)
        self._price_thread.start()

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run scheduled cycles continuously with jittered, time-aware sleep.

        Args:
            interval_seconds: Seconds between cycle starts
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        logger.info(f"Starting continuous loop (interval={configured_interval}s, jitter={self.loop_jitter_pct:.1f}%)")
        self.start_price_refresher()

        while self._running:
            start = time.monotonic()
            try:
                self.run_once()
            except LedgerInvariantViolation as exc:
                # Bot already halted and alerted by the scheduler; other bots keep running
                logger.critical(f"Cycle halted bot {exc.bot_id}: {exc.detail}")
            except Exception as exc:
                logger.error(f"Cycle round failed: {exc}", exc_info=True)
            elapsed = time.monotonic() - start

            # Randomize sleep so bots do not hit the oracle in lockstep
            jitter = random.uniform(0, self.loop_jitter_pct / 100.0) * configured_interval
            sleep_for = max(1.0, configured_interval - elapsed + jitter)

            utilization = elapsed / configured_interval
            if utilization > 0.7:
                logger.warning(f"High cycle utilization ({utilization:.1%})")

            logger.info(
                f"Cycle round took {elapsed:.2f}s, sleeping {sleep_for:.2f}s "
                f"(util: {utilization:.1%}, jitter: +{jitter:.1f}s)"
            )
            self._stop_event.wait(sleep_for)

        self.shutdown()
        logger.info("Arena loop stopped cleanly.")

    def shutdown(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._price_thread:
            self._price_thread.join(timeout=5)
            self._price_thread = None
        self.scheduler.shutdown()
        self.broadcaster.flush(timeout=2.0)
        self.broadcaster.stop()
        if self.health_server:
            self.health_server.stop()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="quant-arena LLM trading bots")
    parser.add_argument("--once", action="store_true", help="Run one cycle per bot and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--force-turn", metavar="BOT_ID", help="Force one cycle for a bot and exit")

    args = parser.parse_args()

    # Create runner (logging configured in __init__)
    runner = ArenaRunner(config_dir=args.config_dir)

    if args.force_turn:
        result = runner.force_turn(args.force_turn)
        runner.shutdown()
        raise SystemExit(0 if result.success else 1)
    if args.once:
        results = runner.run_once()
        runner.shutdown()
        raise SystemExit(0 if all(r.success for r in results) else 1)

    runner.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
