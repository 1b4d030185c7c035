"""
Prompt Builder - Render the oracle prompt for one decision cycle.

A bot's prompt template carries ``{{...}}`` placeholders that are filled from
the portfolio view and the cycle's market snapshot. Around the filled
template we append:
- active cooldowns
- recent decision history (newest first)
- the sandbox tool catalogue (when analysis is enabled)
- per-iteration guidance plus earlier analysis results
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from analytics.sandbox import describe_tools
from core.decision_log import DecisionLogEntry
from core.ledger import Portfolio
from core.market_data import MarketSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """You are an autonomous crypto futures trader. Current time: {{currentDate}}

Portfolio:
- Total value: ${{totalValue}}
- Available balance: ${{availableBalance}}
- Unrealized PnL: ${{unrealizedPnl}}

Open positions:
{{openPositions}}

Market data:
{{marketData}}

Respond with a JSON array of decisions. Each decision:
{"action": "LONG|SHORT|CLOSE|HOLD", "symbol": "BTCUSDT", "size": 100, "leverage": 10,
 "stopLoss": 0, "takeProfit": 0, "closePositionId": "pos_...", "reasoning": "..."}
An empty array means HOLD."""


# ─── Sections ──────────────────────────────────────────────────────────────

def trend_label(change_24h_pct: float) -> str:
    if change_24h_pct > 1:
        return "Strong Bullish"
    if change_24h_pct > 0.2:
        return "Bullish"
    if change_24h_pct < -1:
        return "Strong Bearish"
    if change_24h_pct < -0.2:
        return "Bearish"
    return "Neutral"


def format_market_data(snapshot: MarketSnapshot) -> str:
    lines = []
    for symbol in sorted(snapshot.quotes):
        q = snapshot.quotes[symbol]
        sign = "+" if q.change_24h_pct >= 0 else ""
        lines.append(f"{symbol}: ${q.price:.4f} | 24h: {sign}{q.change_24h_pct:.2f}% ({trend_label(q.change_24h_pct)})")
    return "\n".join(lines) if lines else "No market data"


def format_positions(portfolio: Portfolio, now: datetime) -> str:
    if not portfolio.positions:
        return "None"
    lines = []
    for p in portfolio.positions:
        hours_open = (now - p.opened_at).total_seconds() / 3600
        pnl_pct = (p.unrealized_pnl / p.size * 100) if p.size else 0.0
        sl = f"${p.stop_loss:.4f}" if p.stop_loss is not None else "N/A"
        tp = f"${p.take_profit:.4f}" if p.take_profit is not None else "N/A"
        lines.append(
            f"Position {p.id}: {p.side.value} {p.symbol} | Entry: ${p.entry_price:.4f} | "
            f"Current PnL: ${p.unrealized_pnl:.2f} ({pnl_pct:.2f}%) | Margin: ${p.size:.2f} | "
            f"Leverage: {p.leverage}x | Open: {hours_open:.1f}h | SL: {sl} | TP: {tp} | "
            f"Liq: ${p.liquidation_price:.4f}"
        )
    return "\n".join(lines)


def format_cooldowns(cooldowns: Dict[str, datetime], now: datetime) -> str:
    active = []
    for symbol, expiry in sorted(cooldowns.items()):
        if expiry <= now:
            continue
        minutes_left = int(-(-(expiry - now).total_seconds() // 60))
        active.append(f"{symbol}: {minutes_left}min remaining")
    if not active:
        return ""
    return "\n\nActive Position Cooldowns (symbols you cannot trade yet):\n" + "\n".join(active)


def format_history(entries: Sequence[DecisionLogEntry], now: datetime) -> str:
    if not entries:
        return ""
    parts = ["\n\nYour Recent Decision History (most recent first):"]
    for entry in entries:
        minutes_ago = int((now - entry.timestamp).total_seconds() // 60)
        parts.append(f"\n[{minutes_ago / 60:.1f} hours ago ({minutes_ago} minutes)]:")
        if entry.is_event:
            parts.append(f"  Event: {entry.kind.replace('_', ' ')} (not one of your decisions)")
        elif entry.decisions:
            for idx, d in enumerate(entry.decisions, start=1):
                target = d.get("symbol") or d.get("closePositionId") or ""
                parts.append(f"  Decision {idx}: {d.get('action')} {target}".rstrip())
                if d.get("reasoning"):
                    parts.append(f"  Reasoning: {d['reasoning']}")
                if d.get("action") in ("LONG", "SHORT"):
                    parts.append(
                        f"  Parameters: Size=${d.get('size')}, Leverage={d.get('leverage')}x, "
                        f"SL=${d.get('stopLoss')}, TP=${d.get('takeProfit')}"
                    )
        else:
            parts.append("  Decision: HOLD (no action taken)")
        if entry.notes:
            parts.append("  Execution Notes:")
            parts.extend(f"    - {note}" for note in entry.notes)
    return "\n".join(parts)


def format_tool_catalogue() -> str:
    return (
        "\n\nANALYSIS TOOLS\n"
        "Before deciding you may request ONE tool per response with:\n"
        '{"action": "ANALYZE", "tool": "<name>", "parameters": {...}, "reasoning": "..."}\n'
        "Available tools:\n" + describe_tools()
    )


# ─── Builder ───────────────────────────────────────────────────────────────

def build_base_prompt(
    template: Optional[str],
    portfolio: Portfolio,
    snapshot: MarketSnapshot,
    cooldowns: Optional[Dict[str, datetime]] = None,
    history: Optional[Sequence[DecisionLogEntry]] = None,
    sandbox_enabled: bool = True,
    now: Optional[datetime] = None,
) -> str:
    """
    Render the cycle's base prompt (identical for every round of the cycle).
    """
    now = now or datetime.now(timezone.utc)
    values = {
        "totalValue": f"{portfolio.total_value:.2f}",
        "availableBalance": f"{portfolio.available_balance:.2f}",
        "unrealizedPnl": f"{portfolio.unrealized_pnl:.2f}",
        "openPositions": format_positions(portfolio, now),
        "marketData": format_market_data(snapshot),
        "currentDate": now.isoformat(),
    }
    prompt = template or DEFAULT_TEMPLATE
    for key, value in values.items():
        prompt = prompt.replace("{{" + key + "}}", value)

    prompt += format_cooldowns(cooldowns or {}, now)
    prompt += format_history(history or [], now)
    if sandbox_enabled:
        prompt += format_tool_catalogue()
    return prompt


def build_iteration_prompt(base_prompt: str, iteration: int, max_iterations: int,
                           transcript_text: str = "") -> str:
    """Base prompt plus "ITERATION i of N" guidance and earlier results."""
    parts: List[str] = [base_prompt, "", "=" * 40, f"ITERATION {iteration} of {max_iterations}"]
    if iteration >= max_iterations:
        parts.append(
            "FINAL ITERATION: analysis is no longer available. "
            "Respond ONLY with a JSON array of decisions (an empty array means HOLD)."
        )
    else:
        remaining = max_iterations - iteration
        parts.append(
            f"You may request one ANALYZE tool ({remaining} analysis round(s) left) "
            "or respond with your final JSON decision array."
        )
    if transcript_text:
        parts.extend(["", "Previous Analysis Results:", transcript_text])
    return "\n".join(parts)
