"""
Tests for oracle prompt rendering.
"""
from datetime import datetime, timedelta, timezone

from ai.prompt_builder import (
    build_base_prompt,
    build_iteration_prompt,
    format_cooldowns,
    format_history,
    trend_label,
)
from ai.schemas import AiDecision
from core.decision_log import PRICE_TICK, DecisionLogEntry
from core.ledger import LedgerConfig, PositionLedger
from core.market_data import MarketSnapshot

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ledger_with_position():
    ledger = PositionLedger("bot-1", 10_000.0, LedgerConfig(), clock=lambda: NOW - timedelta(hours=2))
    ledger.apply_decisions(
        [AiDecision(action="LONG", symbol="BTCUSDT", size=100, leverage=10, stop_loss=95.0)],
        MarketSnapshot.from_prices({"BTCUSDT": 100.0}),
    )
    return ledger


def test_trend_labels():
    assert trend_label(2.5) == "Strong Bullish"
    assert trend_label(0.5) == "Bullish"
    assert trend_label(0.0) == "Neutral"
    assert trend_label(-0.5) == "Bearish"
    assert trend_label(-3.0) == "Strong Bearish"


def test_placeholders_filled():
    ledger = _ledger_with_position()
    snapshot = MarketSnapshot.from_prices({"BTCUSDT": 100.0, "ETHUSDT": 2000.0}, {"ETHUSDT": -1.5})
    template = "TV={{totalValue}} AB={{availableBalance}}\n{{openPositions}}\n{{marketData}}\n{{currentDate}}"

    prompt = build_base_prompt(template, ledger.snapshot(), snapshot, sandbox_enabled=False, now=NOW)

    assert "TV=10000.00 AB=9900.00" in prompt
    assert "LONG BTCUSDT" in prompt
    assert "Open: 2.0h" in prompt
    assert "SL: $95.0000 | TP: N/A" in prompt
    assert "ETHUSDT: $2000.0000 | 24h: -1.50% (Strong Bearish)" in prompt
    assert NOW.isoformat() in prompt
    assert "{{" not in prompt
    assert "ANALYSIS TOOLS" not in prompt


def test_default_template_and_tool_catalogue():
    ledger = PositionLedger("bot-1", 10_000.0)
    prompt = build_base_prompt(None, ledger.snapshot(), MarketSnapshot.from_prices({"BTCUSDT": 1.0}), now=NOW)

    assert "Open positions:\nNone" in prompt
    assert "ANALYSIS TOOLS" in prompt
    assert "support_resistance(symbol)" in prompt


def test_cooldowns_section():
    text = format_cooldowns(
        {"BTCUSDT": NOW + timedelta(minutes=12, seconds=10), "ETHUSDT": NOW - timedelta(minutes=1)}, NOW
    )
    assert "Active Position Cooldowns" in text
    assert "BTCUSDT: 13min remaining" in text
    assert "ETHUSDT" not in text
    assert format_cooldowns({}, NOW) == ""


def test_history_section():
    entries = [
        DecisionLogEntry(
            timestamp=NOW - timedelta(minutes=90),
            prompt_sent="",
            decisions=[{"action": "LONG", "symbol": "BTCUSDT", "size": 100.0, "leverage": 5,
                        "stopLoss": 95.0, "reasoning": "breakout"}],
            notes=["SUCCESS: Opened LONG BTCUSDT"],
            execution_success=True,
        ),
        DecisionLogEntry(timestamp=NOW - timedelta(minutes=150), prompt_sent="", decisions=[], notes=[],
                         execution_success=True),
    ]
    text = format_history(entries, NOW)

    assert "most recent first" in text
    assert "[1.5 hours ago (90 minutes)]" in text
    assert "Decision 1: LONG BTCUSDT" in text
    assert "Reasoning: breakout" in text
    assert "Size=$100.0, Leverage=5x, SL=$95.0, TP=$None" in text
    assert "Decision: HOLD (no action taken)" in text
    assert "    - SUCCESS: Opened LONG BTCUSDT" in text


def test_history_renders_price_tick_as_event():
    entries = [
        DecisionLogEntry(timestamp=NOW - timedelta(minutes=30), prompt_sent="[price tick]", decisions=[],
                         notes=["LIQUIDATED: LONG BTCUSDT at $90.0000"], execution_success=True,
                         kind=PRICE_TICK),
    ]
    text = format_history(entries, NOW)

    assert "Event: price tick (not one of your decisions)" in text
    assert "HOLD" not in text
    assert "    - LIQUIDATED: LONG BTCUSDT" in text


def test_iteration_guidance():
    first = build_iteration_prompt("BASE", 1, 5)
    assert first.startswith("BASE")
    assert "ITERATION 1 of 5" in first
    assert "4 analysis round(s) left" in first
    assert "Previous Analysis Results" not in first

    final = build_iteration_prompt("BASE", 5, 5, "[Iteration 1] rsi({})")
    assert "FINAL ITERATION" in final
    assert "Previous Analysis Results:\n[Iteration 1] rsi({})" in final
