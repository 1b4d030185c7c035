"""
quant-arena Core: Cycle Scheduler

Owns the bot registry and is the single entry point for everything that
touches a bot:

    run_cycle(bot_id)                      periodic trigger (skips paused bots)
    force_turn(bot_id)                     manual trigger (rejected while a cycle runs)
    manual_close_position(bot_id, pos_id)  straight to the ledger
    toggle_pause(bot_id)
    reset_bot(bot_id)
    refresh_prices()                       price tick for every ledger

Each bot has one lock held for the whole cycle (prompt build, oracle rounds,
ledger apply). Triggers never wait for it; manual actions wait up to
``manual_wait_seconds`` and are rejected after that. Cycles of different bots
run concurrently on a thread pool.

Price ticks do not take the bot lock. Each ledger call is atomic under the
ledger's own lock, so a tick can land between two oracle rounds of a running
cycle; a CLOSE for a position the tick already liquidated is rejected with a
note.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ai.prompt_builder import build_base_prompt
from ai.protocol import ProtocolController, ProtocolResult
from analytics.sandbox import AnalyticsSandbox
from core.bot import BotRuntime
from core.decision_log import MANUAL_CLOSE, PRICE_TICK, DecisionLog, clamp_window
from core.exceptions import (
    BotNotFound,
    CriticalDataUnavailable,
    CycleInFlight,
    DecisionRejected,
    LedgerInvariantViolation,
)
from core.ledger import PositionLedger, TickResult
from core.market_data import MarketDataProvider, MarketSnapshot
from infra.alerting import AlertService, AlertSeverity
from infra.broadcast import Broadcaster
from infra.metrics import CycleStats, MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    bot_id: str
    success: bool
    notes: List[str] = field(default_factory=list)
    status: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"bot_id": self.bot_id, "success": self.success, "notes": list(self.notes), "status": self.status}


class CycleScheduler:
    """Serializes cycles and manual actions per bot."""

    def __init__(
        self,
        bots: Iterable[BotRuntime],
        market_data: MarketDataProvider,
        controller: ProtocolController,
        controllers: Optional[Dict[str, ProtocolController]] = None,
        state_store: Optional[StateStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
        history_window: int = 5,
        history_limit: int = 100,
        manual_wait_seconds: float = 35.0,
        max_workers: Optional[int] = None,
    ):
        self._bots: Dict[str, BotRuntime] = {}
        for runtime in bots:
            if runtime.bot_id in self._bots:
                raise ValueError(f"Duplicate bot id: {runtime.bot_id}")
            self._bots[runtime.bot_id] = runtime

        self.market_data = market_data
        self.controller = controller
        self.controllers = dict(controllers or {})
        self.state_store = state_store
        self.broadcaster = broadcaster
        self.metrics = metrics or MetricsRecorder()
        self.alerts = alerts or AlertService.disabled()
        self.history_window = clamp_window(history_window)
        self.history_limit = history_limit
        self.manual_wait_seconds = manual_wait_seconds
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or max(1, len(self._bots)), thread_name_prefix="cycle"
        )

        if self.state_store is not None:
            self._restore()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def bot_ids(self) -> List[str]:
        return list(self._bots.keys())

    def get_runtime(self, bot_id: str) -> BotRuntime:
        runtime = self._bots.get(bot_id)
        if runtime is None:
            raise BotNotFound(bot_id)
        return runtime

    def _controller_for(self, bot_id: str) -> ProtocolController:
        return self.controllers.get(bot_id, self.controller)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _cycle_lock(self, runtime: BotRuntime):
        """Non-blocking: raises ``CycleInFlight`` if the bot is busy."""
        if not runtime.lock.acquire(blocking=False):
            raise CycleInFlight(runtime.bot_id)
        try:
            yield
        finally:
            runtime.lock.release()

    @contextmanager
    def _manual_lock(self, runtime: BotRuntime):
        """Waits up to ``manual_wait_seconds`` for a running cycle to finish."""
        if not runtime.lock.acquire(timeout=self.manual_wait_seconds):
            raise CycleInFlight(runtime.bot_id)
        try:
            yield
        finally:
            runtime.lock.release()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_cycle(self, bot_id: str) -> OperationResult:
        """Periodic trigger. Paused bots are skipped; a busy bot is not re-entered."""
        runtime = self.get_runtime(bot_id)
        if runtime.paused:
            logger.debug(f"[{bot_id}] Paused; cycle skipped")
            return OperationResult(bot_id, True, [f"Bot {bot_id} is paused; cycle skipped"], status="SKIPPED")
        return self._guarded_cycle(runtime, trigger="schedule")

    def force_turn(self, bot_id: str) -> OperationResult:
        """Manual trigger. Runs even when paused; rejected if a cycle is in flight."""
        runtime = self.get_runtime(bot_id)
        return self._guarded_cycle(runtime, trigger="force_turn")

    def _guarded_cycle(self, runtime: BotRuntime, trigger: str) -> OperationResult:
        try:
            with self._cycle_lock(runtime):
                return self._execute_cycle(runtime, trigger)
        except CycleInFlight as exc:
            logger.warning(f"[{runtime.bot_id}] {trigger} rejected: {exc}")
            return OperationResult(runtime.bot_id, False, [f"REJECTED: {exc}"], status="IN_FLIGHT")
        except LedgerInvariantViolation:
            raise
        except Exception as exc:
            # One bot's failure must not take down the others
            logger.error(f"[{runtime.bot_id}] {trigger} cycle failed: {exc}", exc_info=True)
            runtime.last_cycle_status = "ERROR"
            return OperationResult(runtime.bot_id, False, [f"ERROR: {type(exc).__name__}: {exc}"], status="ERROR")

    def run_all(self) -> List[OperationResult]:
        """One scheduled cycle for every bot, concurrently across bots."""
        futures = {bot_id: self._pool.submit(self.run_cycle, bot_id) for bot_id in self._bots}
        results: List[OperationResult] = []
        fatal: Optional[LedgerInvariantViolation] = None
        for bot_id, future in futures.items():
            try:
                results.append(future.result())
            except LedgerInvariantViolation as exc:
                fatal = fatal or exc
                results.append(OperationResult(bot_id, False, [str(exc)], status="INVARIANT_VIOLATION"))
        if fatal is not None:
            raise fatal
        return results

    def _execute_cycle(self, runtime: BotRuntime, trigger: str) -> OperationResult:
        bot_id = runtime.bot_id
        start = time.monotonic()
        logger.info(f"[{bot_id}] Cycle start ({trigger})")

        try:
            snapshot = self.market_data.get_snapshot().restrict(runtime.config.symbols)
        except CriticalDataUnavailable as exc:
            note = f"SKIPPED: market data unavailable ({exc})"
            logger.warning(f"[{bot_id}] {note}")
            self._finish(runtime, "DATA_UNAVAILABLE", start)
            return OperationResult(bot_id, False, [note], status="DATA_UNAVAILABLE")
        if snapshot.is_empty():
            note = f"SKIPPED: no market data for symbols {runtime.config.symbols}"
            self._finish(runtime, "DATA_UNAVAILABLE", start)
            return OperationResult(bot_id, False, [note], status="DATA_UNAVAILABLE")

        try:
            tick = runtime.ledger.mark_to_market(snapshot)
            self._handle_tick(runtime, tick)

            base_prompt = build_base_prompt(
                template=runtime.config.prompt,
                portfolio=runtime.ledger.snapshot(),
                snapshot=snapshot,
                cooldowns=runtime.ledger.active_cooldowns(),
                history=runtime.decision_log.recent(self.history_window),
                sandbox_enabled=runtime.config.sandbox_enabled,
            )
            sandbox = None
            if runtime.config.sandbox_enabled:
                sandbox = AnalyticsSandbox(snapshot, self.market_data, history_limit=self.history_limit)

            protocol: ProtocolResult = self._controller_for(bot_id).run(base_prompt, sandbox, bot_id=bot_id)
            applied = runtime.ledger.apply_decisions(protocol.decisions, snapshot)
        except LedgerInvariantViolation as exc:
            self._halt(runtime, exc, start)
            raise

        notes = list(protocol.notes) + list(applied.notes)
        success = protocol.decided and not applied.rejected_notes
        runtime.decision_log.record(
            prompt_sent=protocol.last_prompt or base_prompt,
            decisions=[d.to_wire() for d in protocol.decisions],
            notes=notes,
            execution_success=success,
            transcript=protocol.transcript.to_list(),
        )

        status = protocol.state.value
        duration = self._finish(runtime, status, start)
        self.metrics.observe_cycle(CycleStats(
            bot_id=bot_id,
            status=status.lower(),
            iterations=protocol.iterations,
            analysis_calls=protocol.analysis_count,
            applied=applied.applied_count,
            rejected=len(applied.rejected_notes),
            duration_seconds=duration,
        ))
        self._persist(runtime)
        self._publish(runtime, "cycle", notes)

        logger.info(
            f"[{bot_id}] Cycle done in {duration:.2f}s: {status}, "
            f"{applied.applied_count} applied, {len(applied.rejected_notes)} rejected"
        )
        return OperationResult(bot_id, success, notes, status=status)

    def _finish(self, runtime: BotRuntime, status: str, start: float) -> float:
        runtime.last_cycle_at = datetime.now(timezone.utc)
        runtime.last_cycle_status = status
        runtime.cycles_run += 1
        return time.monotonic() - start

    def _halt(self, runtime: BotRuntime, exc: LedgerInvariantViolation, start: float) -> None:
        """Pause the bot and page an operator. State is not persisted."""
        runtime.paused = True
        self._finish(runtime, "INVARIANT_VIOLATION", start)
        self.metrics.observe_cycle(CycleStats(
            bot_id=runtime.bot_id, status="invariant_violation", iterations=0, analysis_calls=0,
            applied=0, rejected=0, duration_seconds=time.monotonic() - start,
        ))
        logger.critical(f"[{runtime.bot_id}] Ledger invariant violated; bot halted: {exc.detail}")
        self.alerts.notify(
            AlertSeverity.CRITICAL,
            "Ledger invariant violated",
            f"Bot {runtime.bot_id} halted: {exc.detail}",
            {"bot_id": runtime.bot_id},
        )

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    def manual_close_position(self, bot_id: str, position_id: str) -> OperationResult:
        runtime = self.get_runtime(bot_id)
        try:
            snapshot: Optional[MarketSnapshot] = self.market_data.get_snapshot()
        except CriticalDataUnavailable as exc:
            logger.warning(f"[{bot_id}] Manual close using last mark price: {exc}")
            snapshot = None

        try:
            with self._manual_lock(runtime):
                try:
                    trade = runtime.ledger.close_position(position_id, snapshot, reason="MANUAL")
                except DecisionRejected as rejected:
                    return OperationResult(bot_id, False, [rejected.note], status="REJECTED")
                except LedgerInvariantViolation as exc:
                    self._halt(runtime, exc, time.monotonic())
                    raise
                note = (f"SUCCESS: Manually closed {trade.side.value} {trade.symbol} "
                        f"at ${trade.exit_price:.4f} PnL ${trade.pnl:.2f}")
                runtime.decision_log.record("[manual close]", [], [note], True, kind=MANUAL_CLOSE)
                self._persist(runtime)
        except CycleInFlight as exc:
            return OperationResult(bot_id, False, [f"REJECTED: {exc}"], status="IN_FLIGHT")

        self._publish(runtime, "manual_close", [note])
        return OperationResult(bot_id, True, [note], status="CLOSED")

    def toggle_pause(self, bot_id: str) -> OperationResult:
        runtime = self.get_runtime(bot_id)
        try:
            with self._manual_lock(runtime):
                runtime.paused = not runtime.paused
                self._persist(runtime)
        except CycleInFlight as exc:
            return OperationResult(bot_id, False, [f"REJECTED: {exc}"], status="IN_FLIGHT")

        state = "PAUSED" if runtime.paused else "RUNNING"
        note = f"Bot {bot_id} {'paused' if runtime.paused else 'resumed'}"
        logger.info(note)
        self._publish(runtime, "pause", [note])
        return OperationResult(bot_id, True, [note], status=state)

    def reset_bot(self, bot_id: str) -> OperationResult:
        runtime = self.get_runtime(bot_id)
        try:
            with self._manual_lock(runtime):
                runtime.ledger.reset(runtime.config.initial_balance)
                runtime.decision_log.clear()
                runtime.last_cycle_status = None
                self._persist(runtime)
        except CycleInFlight as exc:
            return OperationResult(bot_id, False, [f"REJECTED: {exc}"], status="IN_FLIGHT")

        note = f"Bot {bot_id} reset to ${runtime.config.initial_balance:.2f}"
        self._publish(runtime, "reset", [note])
        return OperationResult(bot_id, True, [note], status="RESET")

    # ------------------------------------------------------------------
    # Price ticks
    # ------------------------------------------------------------------

    def refresh_prices(self) -> Dict[str, TickResult]:
        """
        Mark every ledger to market; paused bots included.

        A ledger that fails its invariant is halted and the first such
        violation is re-raised after every other ledger has been ticked.
        """
        try:
            snapshot = self.market_data.get_snapshot()
        except CriticalDataUnavailable as exc:
            logger.warning(f"Price refresh skipped: {exc}")
            return {}

        results: Dict[str, TickResult] = {}
        fatal: Optional[LedgerInvariantViolation] = None
        for runtime in self._bots.values():
            try:
                tick = runtime.ledger.mark_to_market(snapshot)
            except LedgerInvariantViolation as exc:
                # Halt this bot only; the remaining ledgers still get their tick
                self._halt(runtime, exc, time.monotonic())
                fatal = fatal or exc
                continue
            results[runtime.bot_id] = tick
            if tick.closed:
                runtime.decision_log.record("[price tick]", [], tick.notes, True, kind=PRICE_TICK)
                self._handle_tick(runtime, tick)
                self._persist(runtime)
                self._publish(runtime, "tick", tick.notes)
            portfolio = runtime.ledger.snapshot()
            self.metrics.record_portfolio(runtime.bot_id, portfolio.total_value, len(portfolio.positions))
        if fatal is not None:
            raise fatal
        return results

    def _handle_tick(self, runtime: BotRuntime, tick: TickResult) -> None:
        for event in tick.liquidations:
            self.metrics.record_liquidation(runtime.bot_id)
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Position liquidated",
                f"Bot {runtime.bot_id}: {event.note()}",
                {"bot_id": runtime.bot_id, "position_id": event.position_id},
            )

    # ------------------------------------------------------------------
    # Persistence / broadcast
    # ------------------------------------------------------------------

    def _restore(self) -> None:
        for runtime in self._bots.values():
            record = self.state_store.load_bot(runtime.bot_id)
            if not record:
                continue
            runtime.ledger = PositionLedger.from_dict(record["ledger"], config=runtime.ledger.config)
            runtime.decision_log = DecisionLog.from_list(
                record.get("decision_log", []), max_entries=runtime.decision_log.max_entries
            )
            runtime.paused = bool(record.get("paused", runtime.paused))
            logger.info(
                f"[{runtime.bot_id}] Restored state: ${runtime.ledger.total_value:.2f}, "
                f"{len(runtime.ledger.snapshot().positions)} open position(s)"
            )

    def _persist(self, runtime: BotRuntime) -> None:
        if self.state_store is None:
            return
        self.state_store.save_bot(
            runtime.bot_id,
            ledger=runtime.ledger.to_dict(),
            decision_log=runtime.decision_log.to_list(),
            paused=runtime.paused,
        )

    def _publish(self, runtime: BotRuntime, kind: str, notes: List[str]) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish({
            "type": kind,
            "bot_id": runtime.bot_id,
            "paused": runtime.paused,
            "portfolio": runtime.ledger.snapshot().to_dict(),
            "stats": runtime.ledger.stats(),
            "notes": list(notes),
            "at": datetime.now(timezone.utc).isoformat(),
        })

    def health_status(self) -> Dict[str, Any]:
        bots = {bot_id: runtime.status() for bot_id, runtime in self._bots.items()}
        halted = [b for b, s in bots.items() if s["last_cycle_status"] == "INVARIANT_VIOLATION"]
        return {"ok": not halted, "halted": halted, "bots": bots}
