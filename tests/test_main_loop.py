"""
Tests for the arena runner wiring.
"""
import json

import pytest
import yaml

from ai.model_client import MockClient
from runner.main_loop import ArenaRunner

LONG_BTC = json.dumps([{"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 5}])


@pytest.fixture
def config_dir(tmp_path):
    app = {
        "logging": {"level": "INFO", "file": str(tmp_path / "logs" / "arena.log")},
        "state": {"path": str(tmp_path / "data" / "state.json")},
        "loop": {"interval_seconds": 5, "price_refresh_seconds": 0.05},
        "market_data": {"provider": "static", "prices": {"BTCUSDT": 100.0, "ETHUSDT": 2000.0}},
        "oracle": {"provider": "mock", "call_timeout_seconds": 2, "cycle_budget_seconds": 5},
    }
    bots = {"bots": [
        {"id": "alpha", "symbols": ["BTCUSDT"], "sandbox_enabled": False},
        {"id": "beta", "symbols": ["ETHUSDT"], "paused": True},
    ]}
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(app))
    (tmp_path / "bots.yaml").write_text(yaml.safe_dump(bots))
    return tmp_path


def test_invalid_config_raises(tmp_path):
    (tmp_path / "app.yaml").write_text(yaml.safe_dump({"oracle": {"provider": "telepathy"}}))
    (tmp_path / "bots.yaml").write_text(yaml.safe_dump({"bots": [{"id": "a"}]}))

    with pytest.raises(ValueError, match="Invalid configuration"):
        ArenaRunner(config_dir=str(tmp_path), install_signal_handlers=False)


def test_run_once(config_dir):
    client = MockClient([LONG_BTC])
    runner = ArenaRunner(config_dir=str(config_dir), client=client, install_signal_handlers=False)
    try:
        results = {r.bot_id: r for r in runner.run_once()}
    finally:
        runner.shutdown()

    assert results["alpha"].status == "DECIDED"
    assert results["beta"].status == "SKIPPED"
    assert client.call_count == 1
    state = json.loads((config_dir / "data" / "state.json").read_text())
    assert state["bots"]["alpha"]["ledger"]["positions"][0]["symbol"] == "BTCUSDT"


def test_force_turn_paused_bot(config_dir):
    client = MockClient(["[]"])
    runner = ArenaRunner(config_dir=str(config_dir), client=client, install_signal_handlers=False)
    try:
        result = runner.force_turn("beta")
    finally:
        runner.shutdown()

    assert result.success
    assert "ITERATION 1 of 5" in client.prompts[0]


def test_price_refresher_marks_positions(config_dir):
    runner = ArenaRunner(config_dir=str(config_dir), client=MockClient([LONG_BTC]), install_signal_handlers=False)
    try:
        runner.run_once()
        runner.market_data.set_price("BTCUSDT", 110.0)
        runner.start_price_refresher()
        ledger = runner.scheduler.get_runtime("alpha").ledger
        for _ in range(100):
            if ledger.unrealized_pnl:
                break
            runner._stop_event.wait(0.02)
    finally:
        runner.shutdown()

    assert ledger.unrealized_pnl == pytest.approx(50.0)


def test_stop_signal_ends_run_forever(config_dir):
    runner = ArenaRunner(config_dir=str(config_dir), client=MockClient(default="[]"), install_signal_handlers=False)
    runner._handle_stop()
    runner.run_forever(interval_seconds=5)
    assert not runner._running


def test_price_loop_survives_unexpected_error(config_dir):
    runner = ArenaRunner(config_dir=str(config_dir), client=MockClient(), install_signal_handlers=False)
    calls = []

    def flaky_refresh():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("feed glitch")
        runner._handle_stop()
        return {}

    runner.scheduler.refresh_prices = flaky_refresh
    try:
        runner._price_loop()
    finally:
        runner.shutdown()

    assert len(calls) == 2


def test_run_forever_survives_unexpected_error(config_dir):
    runner = ArenaRunner(config_dir=str(config_dir), client=MockClient(), install_signal_handlers=False)
    calls = []

    def flaky_round():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("scheduler glitch")
        runner._handle_stop()
        return []

    runner.run_once = flaky_round
    runner.run_forever(interval_seconds=1)

    assert len(calls) == 2
    assert not runner._running
