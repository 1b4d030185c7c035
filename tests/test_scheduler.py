"""
Tests for the cycle scheduler: per-bot serialization, manual actions,
price ticks, persistence and halting on invariant violations.
"""
import json
import threading

import pytest

from ai.model_client import MockClient
from ai.protocol import ProtocolConfig, ProtocolController
from core.bot import BotConfig, BotRuntime
from core.decision_log import PRICE_TICK
from core.exceptions import BotNotFound, LedgerInvariantViolation
from core.market_data import StaticMarketData
from core.scheduler import CycleScheduler
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.broadcast import Broadcaster
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

LONG_BTC = json.dumps([{"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 10, "reasoning": "trend"}])


def bot(bot_id="alpha", **overrides):
    raw = {"id": bot_id, "symbols": ["BTCUSDT", "ETHUSDT"], "sandbox_enabled": False, **overrides}
    return BotRuntime.create(BotConfig.from_dict(raw))


def controller(client):
    config = ProtocolConfig(call_timeout_seconds=5.0, cycle_budget_seconds=10.0)
    return ProtocolController(client, config, metrics=MetricsRecorder(enabled=False))


@pytest.fixture
def market():
    return StaticMarketData(prices={"BTCUSDT": 100.0, "ETHUSDT": 2000.0, "SOLUSDT": 150.0})


@pytest.fixture
def alerts():
    return AlertService(AlertConfig(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True))


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "arena_state.json"))


def make_scheduler(market, client, bots=None, **kwargs):
    return CycleScheduler(
        bots or [bot()],
        market_data=market,
        controller=controller(client),
        metrics=MetricsRecorder(enabled=False),
        **kwargs,
    )


class TestCycles:

    def test_cycle_applies_decisions_and_logs(self, market, store):
        client = MockClient([LONG_BTC])
        scheduler = make_scheduler(market, client, state_store=store)

        result = scheduler.run_cycle("alpha")

        assert result.success
        assert result.status == "DECIDED"
        runtime = scheduler.get_runtime("alpha")
        assert runtime.ledger.snapshot().position_for("BTCUSDT") is not None
        entry = runtime.decision_log.recent()[0]
        assert entry.decisions[0]["symbol"] == "BTCUSDT"
        assert entry.execution_success
        assert "ITERATION 1 of 1" in entry.prompt_sent
        assert store.load_bot("alpha")["ledger"]["positions"][0]["symbol"] == "BTCUSDT"
        assert runtime.cycles_run == 1
        assert runtime.last_cycle_status == "DECIDED"

    def test_prompt_limited_to_bot_symbols(self, market):
        client = MockClient(["[]"])
        scheduler = make_scheduler(market, client)
        scheduler.run_cycle("alpha")

        assert "BTCUSDT: $100.0000" in client.prompts[0]
        assert "SOLUSDT" not in client.prompts[0]

    def test_history_fed_into_next_prompt(self, market):
        client = MockClient([LONG_BTC, "[]"])
        scheduler = make_scheduler(market, client)
        scheduler.run_cycle("alpha")
        scheduler.run_cycle("alpha")

        assert "Your Recent Decision History" in client.prompts[1]
        assert "Decision 1: LONG BTCUSDT" in client.prompts[1]

    def test_rejections_mark_cycle_unsuccessful(self, market):
        client = MockClient(['[{"action": "LONG", "symbol": "BTCUSDT", "size": 999999}]'])
        scheduler = make_scheduler(market, client)

        result = scheduler.run_cycle("alpha")

        assert not result.success
        assert result.status == "DECIDED"
        assert any("exceeds available" in n for n in result.notes)

    def test_aborted_cycle_holds(self, market):
        client = MockClient(["no json here"])
        scheduler = make_scheduler(market, client)

        result = scheduler.run_cycle("alpha")

        assert result.status == "ABORTED"
        assert not result.success
        assert scheduler.get_runtime("alpha").ledger.snapshot().positions == ()

    def test_paused_bot_skipped(self, market):
        client = MockClient([LONG_BTC])
        scheduler = make_scheduler(market, client, bots=[bot(paused=True)])

        result = scheduler.run_cycle("alpha")

        assert result.status == "SKIPPED"
        assert client.call_count == 0

    def test_force_turn_runs_while_paused(self, market):
        client = MockClient([LONG_BTC])
        scheduler = make_scheduler(market, client, bots=[bot(paused=True)])

        result = scheduler.force_turn("alpha")

        assert result.status == "DECIDED"
        assert client.call_count == 1

    def test_market_data_unavailable(self):
        client = MockClient([LONG_BTC])
        scheduler = make_scheduler(StaticMarketData(), client)

        result = scheduler.run_cycle("alpha")

        assert result.status == "DATA_UNAVAILABLE"
        assert client.call_count == 0

    def test_run_all_covers_every_bot(self, market):
        client = MockClient(default="[]")
        scheduler = make_scheduler(market, client, bots=[bot("alpha"), bot("beta")])

        results = scheduler.run_all()

        assert sorted(r.bot_id for r in results) == ["alpha", "beta"]
        assert client.call_count == 2

    def test_run_all_with_more_bots_than_oracle_slots(self, market):
        client = MockClient(default="[]", delay_seconds=0.6)
        shared = ProtocolController(
            client, ProtocolConfig(call_timeout_seconds=1.0, cycle_budget_seconds=5.0),
            metrics=MetricsRecorder(enabled=False),
        )
        bots = [bot(f"b{i}") for i in range(6)]
        scheduler = CycleScheduler(bots, market_data=market, controller=shared,
                                   metrics=MetricsRecorder(enabled=False))

        results = scheduler.run_all()

        assert {r.bot_id: r.status for r in results} == {f"b{i}": "DECIDED" for i in range(6)}
        assert client.call_count == 6

    def test_unexpected_error_in_one_bot_spares_the_others(self, market):
        class ExplodingController(ProtocolController):
            def run(self, base_prompt, sandbox=None, bot_id=""):
                raise RuntimeError("boom")

        client = MockClient([LONG_BTC])
        scheduler = make_scheduler(
            market, client, bots=[bot("alpha"), bot("beta")],
            controllers={"beta": ExplodingController(MockClient(), metrics=MetricsRecorder(enabled=False))},
        )

        results = {r.bot_id: r for r in scheduler.run_all()}

        assert results["alpha"].status == "DECIDED"
        assert results["alpha"].success
        assert results["beta"].status == "ERROR"
        assert results["beta"].notes == ["ERROR: RuntimeError: boom"]
        assert scheduler.get_runtime("beta").last_cycle_status == "ERROR"
        assert scheduler.get_runtime("alpha").ledger.snapshot().position_for("BTCUSDT") is not None

    def test_per_bot_controller_override(self, market):
        default_client = MockClient(default="[]")
        special_client = MockClient([LONG_BTC])
        scheduler = make_scheduler(
            market, default_client, bots=[bot("alpha"), bot("beta")],
            controllers={"beta": controller(special_client)},
        )

        scheduler.run_cycle("beta")

        assert special_client.call_count == 1
        assert default_client.call_count == 0

    def test_unknown_bot(self, market):
        scheduler = make_scheduler(market, MockClient())
        with pytest.raises(BotNotFound):
            scheduler.run_cycle("ghost")

    def test_broadcast_after_cycle(self, market):
        broadcaster = Broadcaster()
        received = []
        broadcaster.subscribe(received.append)
        broadcaster.start()
        scheduler = make_scheduler(market, MockClient([LONG_BTC]), broadcaster=broadcaster)

        scheduler.run_cycle("alpha")

        assert broadcaster.flush(timeout=2.0)
        broadcaster.stop()
        assert received[0]["type"] == "cycle"
        assert received[0]["bot_id"] == "alpha"
        assert len(received[0]["portfolio"]["positions"]) == 1


class TestSerialization:

    def _blocking_client(self):
        started = threading.Event()
        release = threading.Event()

        def blocking(prompt):
            started.set()
            release.wait(5)
            return "[]"

        return MockClient([blocking]), started, release

    def test_force_turn_rejected_while_cycle_in_flight(self, market):
        client, started, release = self._blocking_client()
        scheduler = make_scheduler(market, client)
        results = []
        worker = threading.Thread(target=lambda: results.append(scheduler.force_turn("alpha")))
        worker.start()
        try:
            assert started.wait(5)
            second = scheduler.force_turn("alpha")
            assert not second.success
            assert second.status == "IN_FLIGHT"
            assert second.notes == ["REJECTED: Cycle already running for bot alpha"]
            assert scheduler.get_runtime("alpha").in_flight
        finally:
            release.set()
            worker.join(5)

        assert results[0].success
        assert client.call_count == 1

    def test_manual_action_times_out_behind_cycle(self, market):
        client, started, release = self._blocking_client()
        scheduler = make_scheduler(market, client, manual_wait_seconds=0.1)
        worker = threading.Thread(target=scheduler.force_turn, args=("alpha",))
        worker.start()
        try:
            assert started.wait(5)
            blocked = scheduler.toggle_pause("alpha")
            assert blocked.status == "IN_FLIGHT"
        finally:
            release.set()
            worker.join(5)

        paused = scheduler.toggle_pause("alpha")
        assert paused.status == "PAUSED"
        assert scheduler.get_runtime("alpha").paused
        assert scheduler.toggle_pause("alpha").status == "RUNNING"


class TestManualActions:

    def test_manual_close(self, market):
        scheduler = make_scheduler(market, MockClient([LONG_BTC]))
        scheduler.run_cycle("alpha")
        runtime = scheduler.get_runtime("alpha")
        position_id = runtime.ledger.snapshot().positions[0].id
        market.set_price("BTCUSDT", 110.0)

        result = scheduler.manual_close_position("alpha", position_id)

        assert result.success
        assert result.status == "CLOSED"
        assert "PnL $100.00" in result.notes[0]
        assert runtime.ledger.snapshot().positions == ()
        assert runtime.decision_log.recent()[0].prompt_sent == "[manual close]"

    def test_manual_close_unknown_position(self, market):
        scheduler = make_scheduler(market, MockClient())
        result = scheduler.manual_close_position("alpha", "pos_nope")
        assert result.status == "REJECTED"
        assert "not found" in result.notes[0]

    def test_reset(self, market, store):
        scheduler = make_scheduler(market, MockClient([LONG_BTC]), bots=[bot(initial_balance=5000)], state_store=store)
        scheduler.run_cycle("alpha")

        result = scheduler.reset_bot("alpha")

        runtime = scheduler.get_runtime("alpha")
        assert result.status == "RESET"
        assert runtime.ledger.snapshot().available_balance == 5000.0
        assert runtime.ledger.snapshot().positions == ()
        assert len(runtime.decision_log) == 0
        assert store.load_bot("alpha")["decision_log"] == []


class TestPriceTicks:

    def test_liquidation_on_tick(self, market, alerts):
        metrics = MetricsRecorder(enabled=False)
        scheduler = CycleScheduler(
            [bot()], market_data=market, controller=controller(MockClient([LONG_BTC])),
            metrics=metrics, alerts=alerts,
        )
        scheduler.run_cycle("alpha")
        market.set_price("BTCUSDT", 85.0)

        ticks = scheduler.refresh_prices()

        tick = ticks["alpha"]
        assert len(tick.liquidations) == 1
        assert metrics.liquidation_count() == 1
        assert alerts.history()[-1].title == "Position liquidated"
        runtime = scheduler.get_runtime("alpha")
        assert runtime.ledger.total_value == pytest.approx(9900.0)
        assert runtime.decision_log.recent()[0].prompt_sent == "[price tick]"
        assert runtime.decision_log.recent()[0].kind == PRICE_TICK

    def test_tick_covers_paused_bots(self, market):
        scheduler = make_scheduler(market, MockClient([LONG_BTC]), bots=[bot(paused=True)])
        scheduler.force_turn("alpha")
        market.set_price("BTCUSDT", 101.0)

        scheduler.refresh_prices()

        assert scheduler.get_runtime("alpha").ledger.unrealized_pnl == pytest.approx(10.0)

    def test_close_after_tick_liquidation_is_noted(self, market):
        scheduler = make_scheduler(market, MockClient([LONG_BTC]))
        scheduler.run_cycle("alpha")
        position_id = scheduler.get_runtime("alpha").ledger.snapshot().positions[0].id
        market.set_price("BTCUSDT", 80.0)
        scheduler.refresh_prices()

        close_client = MockClient([json.dumps([{"action": "CLOSE", "closePositionId": position_id}])])
        scheduler.controller = controller(close_client)
        market.set_price("BTCUSDT", 100.0)
        result = scheduler.run_cycle("alpha")

        assert any("may have been auto-closed" in n for n in result.notes)


class TestInvariantAndRestore:

    def test_invariant_violation_halts_bot(self, market, alerts):
        scheduler = CycleScheduler(
            [bot()], market_data=market, controller=controller(MockClient([LONG_BTC])),
            metrics=MetricsRecorder(enabled=False), alerts=alerts,
        )
        runtime = scheduler.get_runtime("alpha")
        runtime.ledger.available_balance += 1.0

        with pytest.raises(LedgerInvariantViolation):
            scheduler.run_cycle("alpha")

        assert runtime.paused
        assert runtime.last_cycle_status == "INVARIANT_VIOLATION"
        assert alerts.history()[-1].severity == AlertSeverity.CRITICAL
        health = scheduler.health_status()
        assert health["ok"] is False
        assert health["halted"] == ["alpha"]

    def test_invariant_violation_on_tick_still_ticks_other_bots(self, market, alerts):
        scheduler = CycleScheduler(
            [bot("alpha"), bot("beta")], market_data=market,
            controller=controller(MockClient([LONG_BTC, LONG_BTC])),
            metrics=MetricsRecorder(enabled=False), alerts=alerts,
        )
        scheduler.run_cycle("alpha")
        scheduler.run_cycle("beta")
        alpha = scheduler.get_runtime("alpha")
        beta = scheduler.get_runtime("beta")
        alpha.ledger.available_balance += 1.0
        market.set_price("BTCUSDT", 85.0)

        with pytest.raises(LedgerInvariantViolation):
            scheduler.refresh_prices()

        assert alpha.paused
        assert alpha.last_cycle_status == "INVARIANT_VIOLATION"
        assert not beta.paused
        assert beta.ledger.snapshot().positions == ()
        assert beta.ledger.total_value == pytest.approx(9900.0)
        assert beta.decision_log.recent()[0].kind == PRICE_TICK

    def test_state_restored_on_startup(self, market, store, tmp_path):
        first = make_scheduler(market, MockClient([LONG_BTC]), state_store=store)
        first.run_cycle("alpha")
        first.toggle_pause("alpha")

        second = make_scheduler(
            market, MockClient(), bots=[bot()], state_store=StateStore(str(tmp_path / "arena_state.json"))
        )

        runtime = second.get_runtime("alpha")
        assert runtime.paused
        assert runtime.ledger.snapshot().position_for("BTCUSDT") is not None
        assert runtime.ledger.available_balance == pytest.approx(9900.0)
        assert len(runtime.decision_log) == 1
