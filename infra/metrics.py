"""Prometheus-backed metrics hooks for decision cycles, oracle calls and ledgers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

try:
    from prometheus_client import Counter, Gauge, Summary, start_http_server
except ImportError:  # pragma: no cover - optional dependency
    Counter = Gauge = Summary = None  # type: ignore
    start_http_server = None  # type: ignore

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "arena_"


@dataclass
class CycleStats:
    bot_id: str
    status: str
    iterations: int
    analysis_calls: int
    applied: int
    rejected: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose arena stats via Prometheus if available.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._prom_available = Counter is not None
        self._enabled = bool(enabled) and self._prom_available
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Dict[str, CycleStats] = {}
        self._last_oracle_event: Optional[Dict[str, str]] = None
        self._tool_outcomes: Dict[str, int] = {}
        self._liquidations = 0

        if not self._prom_available and enabled:
            logger.warning(
                "Prometheus client not installed; metrics exporter disabled. "
                "Install `prometheus-client` to enable metrics."
            )

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._oracle_latency_summary = None
            self._tool_counter = None
            self._decision_counter = None
            self._liquidation_counter = None
            self._positions_gauge = None
            self._value_gauge = None
            return

        self._cycle_summary = Summary(  # type: ignore[assignment]
            "arena_cycle_duration_seconds",
            "Duration of a full decision cycle",
            labelnames=("bot",),
        )
        self._cycle_counter = Counter(  # type: ignore[assignment]
            "arena_cycle_total",
            "Decision cycles by terminal status",
            labelnames=("bot", "status"),
        )
        self._oracle_latency_summary = Summary(  # type: ignore[assignment]
            "arena_oracle_latency_seconds",
            "Latency of reasoning oracle calls",
            labelnames=("provider", "status"),
        )
        self._tool_counter = Counter(  # type: ignore[assignment]
            "arena_tool_calls_total",
            "Sandbox tool executions by tool and outcome",
            labelnames=("tool", "outcome"),
        )
        self._decision_counter = Counter(  # type: ignore[assignment]
            "arena_decisions_total",
            "Decisions handed to the ledger by outcome",
            labelnames=("bot", "outcome"),
        )
        self._liquidation_counter = Counter(  # type: ignore[assignment]
            "arena_liquidations_total",
            "Forced closures at the liquidation price",
            labelnames=("bot",),
        )
        self._positions_gauge = Gauge(  # type: ignore[assignment]
            "arena_open_positions",
            "Number of currently open positions",
            labelnames=("bot",),
        )
        self._value_gauge = Gauge(  # type: ignore[assignment]
            "arena_total_value_usd",
            "Portfolio total value (balance + margin + unrealized PnL)",
            labelnames=("bot",),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._prom_available:
            from prometheus_client import REGISTRY

            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        if start_http_server is None:  # pragma: no cover - guarded above
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            assert self._cycle_summary and self._cycle_counter and self._decision_counter
            self._cycle_summary.labels(bot=stats.bot_id).observe(stats.duration_seconds)
            self._cycle_counter.labels(bot=stats.bot_id, status=stats.status).inc()
            if stats.applied:
                self._decision_counter.labels(bot=stats.bot_id, outcome="applied").inc(stats.applied)
            if stats.rejected:
                self._decision_counter.labels(bot=stats.bot_id, outcome="rejected").inc(stats.rejected)

        self._last_cycle_stats[stats.bot_id] = stats

    def record_oracle_call(self, provider: str, duration: float, status: str) -> None:
        self._last_oracle_event = {
            "provider": provider,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._enabled and self._oracle_latency_summary:
            self._oracle_latency_summary.labels(provider=provider, status=status).observe(duration)

    def record_tool_call(self, tool: str, outcome: str) -> None:
        """outcome: "ok", "insufficient_data" or "invalid_call"."""
        key = f"{tool}:{outcome}"
        self._tool_outcomes[key] = self._tool_outcomes.get(key, 0) + 1
        if self._enabled and self._tool_counter:
            self._tool_counter.labels(tool=tool, outcome=outcome).inc()

    def record_liquidation(self, bot_id: str) -> None:
        self._liquidations += 1
        if self._enabled and self._liquidation_counter:
            self._liquidation_counter.labels(bot=bot_id).inc()

    def record_portfolio(self, bot_id: str, total_value: float, open_positions: int) -> None:
        if self._enabled and self._value_gauge and self._positions_gauge:
            self._value_gauge.labels(bot=bot_id).set(total_value)
            self._positions_gauge.labels(bot=bot_id).set(max(open_positions, 0))

    def last_cycle(self, bot_id: str) -> Optional[CycleStats]:
        return self._last_cycle_stats.get(bot_id)

    def last_oracle_event(self) -> Optional[Dict[str, str]]:
        return dict(self._last_oracle_event) if self._last_oracle_event else None

    def tool_outcomes(self) -> Dict[str, int]:
        return dict(self._tool_outcomes)

    def liquidation_count(self) -> int:
        return self._liquidations


__all__ = ["MetricsRecorder", "CycleStats"]
