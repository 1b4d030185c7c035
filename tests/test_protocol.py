"""
Tests for the bounded ANALYZE/decide protocol.
"""
import json
import time

import pytest

from ai.model_client import MockClient
from ai.protocol import ProtocolConfig, ProtocolController, ProtocolState
from ai.schemas import DecisionAction
from ai.transcript import ORACLE_ERROR, PROTOCOL_VIOLATION, TOOL_ERROR, TOOL_RESULT
from analytics.sandbox import AnalyticsSandbox
from core.market_data import StaticMarketData
from infra.metrics import MetricsRecorder


def analyze(tool, **params):
    return json.dumps({"action": "ANALYZE", "tool": tool, "parameters": params, "reasoning": f"check {tool}"})


LONG_BTC = json.dumps([{"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 5, "reasoning": "breakout"}])


@pytest.fixture
def sandbox():
    market = StaticMarketData(
        prices={"BTCUSDT": 110.0},
        history={"BTCUSDT": [float(p) for p in range(60, 111)]},
    )
    return AnalyticsSandbox(market.get_snapshot(), history_provider=market)


def make_controller(client, **overrides):
    config = ProtocolConfig(**{"call_timeout_seconds": 2.0, "cycle_budget_seconds": 10.0, **overrides})
    return ProtocolController(client, config, metrics=MetricsRecorder(enabled=False))


def test_immediate_decision(sandbox):
    client = MockClient([LONG_BTC])
    result = make_controller(client).run("BASE", sandbox, bot_id="b1")

    assert result.state == ProtocolState.DECIDED
    assert result.decided
    assert result.iterations == 1
    assert [d.action for d in result.decisions] == [DecisionAction.LONG]
    assert "ITERATION 1 of 5" in client.prompts[0]


def test_four_analyses_then_decide(sandbox):
    client = MockClient([analyze("rsi", symbol="BTCUSDT")] * 4 + [LONG_BTC])
    result = make_controller(client).run("BASE", sandbox)

    assert result.state == ProtocolState.DECIDED
    assert result.analysis_count == 4
    assert client.call_count == 5
    assert "FINAL ITERATION" in client.prompts[4]
    assert "FINAL ITERATION" not in client.prompts[3]
    # Each round sees the earlier tool results
    assert "Previous Analysis Results:" in client.prompts[1]
    assert client.prompts[4].count("rsi(") == 4


def test_analyze_on_final_round_is_protocol_violation(sandbox):
    client = MockClient([analyze("rsi", symbol="BTCUSDT")] * 5)
    result = make_controller(client).run("BASE", sandbox)

    assert result.state == ProtocolState.ABORTED
    assert result.decisions == []
    assert client.call_count == 5
    assert result.notes[-1].startswith("PROTOCOL VIOLATION")
    kinds = [e.kind for e in result.transcript]
    assert kinds.count(TOOL_RESULT) == 4
    assert kinds[-1] == PROTOCOL_VIOLATION


def test_tool_error_consumes_iteration(sandbox):
    client = MockClient([analyze("astrology", sign="leo"), analyze("macd", symbol="BTCUSDT"), "[]"])
    result = make_controller(client).run("BASE", sandbox)

    assert result.state == ProtocolState.DECIDED
    assert result.decisions == []
    assert result.iterations == 3
    kinds = [e.kind for e in result.transcript]
    assert kinds == [TOOL_ERROR, TOOL_RESULT]
    assert "astrology FAILED" in client.prompts[1]


def test_insufficient_data_reported_back(sandbox):
    client = MockClient([analyze("bollinger", symbol="BTCUSDT", period=500), "[]"])
    metrics = MetricsRecorder(enabled=False)
    controller = ProtocolController(client, ProtocolConfig(), metrics=metrics)
    result = controller.run("BASE", sandbox)

    assert result.decided
    assert result.transcript.errors()[0].kind == TOOL_ERROR
    assert metrics.tool_outcomes() == {"bollinger:insufficient_data": 1}


def test_overflowing_tool_input_stays_in_cycle(sandbox):
    client = MockClient([analyze("statistics", data=[1e200, -1e200]), "[]"])
    metrics = MetricsRecorder(enabled=False)
    result = ProtocolController(client, ProtocolConfig(), metrics=metrics).run("BASE", sandbox)

    assert result.state == ProtocolState.DECIDED
    assert result.decisions == []
    assert [e.kind for e in result.transcript.errors()] == [TOOL_ERROR]
    assert metrics.tool_outcomes() == {"statistics:invalid_call": 1}
    assert "statistics FAILED" in client.prompts[1]


def test_tool_metrics_recorded(sandbox):
    client = MockClient([analyze("rsi", symbol="BTCUSDT"), "[]"])
    metrics = MetricsRecorder(enabled=False)
    ProtocolController(client, ProtocolConfig(), metrics=metrics).run("BASE", sandbox)

    assert metrics.tool_outcomes() == {"rsi:ok": 1}
    assert metrics.last_oracle_event()["status"] == "ok"


def test_malformed_response_recovers(sandbox):
    client = MockClient(["I think we should buy", LONG_BTC])
    result = make_controller(client).run("BASE", sandbox)

    assert result.decided
    assert len(result.decisions) == 1
    assert [e.kind for e in result.transcript.errors()] == [ORACLE_ERROR]


def test_malformed_on_final_round_aborts():
    client = MockClient(["not json at all"])
    result = make_controller(client).run("BASE", sandbox=None)

    assert result.state == ProtocolState.ABORTED
    assert result.decisions == []
    assert result.notes[-1].startswith("ABORTED: OracleMalformedResponseError")


def test_no_sandbox_means_single_round():
    client = MockClient([analyze("rsi", symbol="BTCUSDT")])
    result = make_controller(client).run("BASE", sandbox=None)

    assert result.state == ProtocolState.ABORTED
    assert client.call_count == 1
    assert "ITERATION 1 of 1" in client.prompts[0]
    assert result.notes[-1].startswith("PROTOCOL VIOLATION")


def test_timeout_consumes_iteration(sandbox):
    def slow(prompt):
        time.sleep(0.5)
        return LONG_BTC

    client = MockClient([slow, LONG_BTC])
    result = make_controller(client, call_timeout_seconds=0.1).run("BASE", sandbox)

    assert result.decided
    assert result.iterations == 2
    assert "OracleTimeoutError" in result.transcript.errors()[0].error


def test_timeout_every_round_aborts(sandbox):
    client = MockClient(delay_seconds=0.3)
    result = make_controller(client, call_timeout_seconds=0.05, max_iterations=2).run("BASE", sandbox)

    assert result.state == ProtocolState.ABORTED
    assert result.iterations == 2
    assert result.decisions == []
    assert "OracleTimeoutError" in result.notes[-1]


def test_cycle_budget_bounds_total_time(sandbox):
    client = MockClient(delay_seconds=1.0)
    result = make_controller(client, call_timeout_seconds=0.2, cycle_budget_seconds=0.3).run("BASE", sandbox)

    assert result.state == ProtocolState.ABORTED
    assert result.decisions == []
    assert result.duration_seconds < 1.0


def test_client_exception_is_unavailable(sandbox):
    client = MockClient([RuntimeError("connection reset"), "   ", "[]"])
    result = make_controller(client).run("BASE", sandbox)

    assert result.decided
    errors = [e.error for e in result.transcript.errors()]
    assert errors[0].startswith("OracleUnavailableError")
    assert "empty payload" in errors[1]


def test_prompt_size_guard_skips_oracle(sandbox):
    client = MockClient([LONG_BTC])
    result = make_controller(client, max_prompt_chars=1500).run("X" * 2000, sandbox)

    assert result.state == ProtocolState.ABORTED
    assert client.call_count == 0
    assert "prompt is" in result.notes[-1]


def test_invalid_decisions_noted_but_valid_kept(sandbox):
    client = MockClient(['[{"action": "LONG", "symbol": "BTCUSDT"}, {"action": "SHORT", "symbol": "BTCUSDT", "size": 50}]'])
    result = make_controller(client).run("BASE", sandbox)

    assert result.decided
    assert len(result.decisions) == 1
    assert result.notes[0].startswith("IGNORED decision #1")
