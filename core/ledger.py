"""
quant-arena Core: Position & Risk Ledger

The per-bot portfolio state machine. It is the only writer of balance,
positions and cooldowns; everything else reads ``Portfolio`` snapshots.

Accounting model (isolated margin, paper):
- opening moves ``size`` (the margin) from available balance into the position
- notional exposure is ``size * leverage``
- closing returns ``size + pnl - fee`` (never below zero: the loss on one
  position is capped at its margin)
- ``total_value = available_balance + sum(margin) + unrealized_pnl``

Every mutation runs under the ledger's own lock and ends with an invariant
check. A failed check raises ``LedgerInvariantViolation``; nothing catches it
below the scheduler.
"""

import logging
import math
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ai.schemas import AiDecision, DecisionAction, PositionSide
from core.exceptions import DecisionRejected, LedgerInvariantViolation
from core.market_data import MarketSnapshot

logger = logging.getLogger(__name__)

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125
VALUE_HISTORY_LIMIT = 300
CLOSED_TRADE_LIMIT = 200
_EPS = 1e-6


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def liquidation_price(side: PositionSide, entry_price: float, leverage: int) -> float:
    """Price at which the position's margin is fully consumed."""
    if side == PositionSide.LONG:
        return entry_price * (1 - 1 / leverage)
    return entry_price * (1 + 1 / leverage)


def _parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ─── Records ───────────────────────────────────────────────────────────────

@dataclass
class Position:
    id: str
    symbol: str
    side: PositionSide
    entry_price: float
    size: float
    leverage: int
    liquidation_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    unrealized_pnl: float = 0.0
    mark_price: Optional[float] = None
    opened_at: datetime = field(default_factory=utc_now)

    @property
    def notional(self) -> float:
        return self.size * self.leverage

    @property
    def quantity(self) -> float:
        return self.notional / self.entry_price

    def pnl_at(self, price: float) -> float:
        diff = price - self.entry_price
        if self.side == PositionSide.SHORT:
            diff = -diff
        return diff * self.quantity

    def is_liquidated_at(self, price: float) -> bool:
        if self.side == PositionSide.LONG:
            return price <= self.liquidation_price
        return price >= self.liquidation_price

    def stop_hit_at(self, price: float) -> bool:
        if self.stop_loss is None:
            return False
        if self.side == PositionSide.LONG:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def target_hit_at(self, price: float) -> bool:
        if self.take_profit is None:
            return False
        if self.side == PositionSide.LONG:
            return price >= self.take_profit
        return price <= self.take_profit

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["side"] = self.side.value
        data["opened_at"] = self.opened_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Position":
        data = dict(data)
        data["side"] = PositionSide(data["side"])
        data["opened_at"] = _parse_ts(data["opened_at"])
        return cls(**data)


@dataclass(frozen=True)
class ClosedTrade:
    position_id: str
    symbol: str
    side: PositionSide
    entry_price: float
    exit_price: float
    size: float
    leverage: int
    pnl: float
    fee: float
    reason: str
    opened_at: datetime
    closed_at: datetime

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["side"] = self.side.value
        data["opened_at"] = self.opened_at.isoformat()
        data["closed_at"] = self.closed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "ClosedTrade":
        data = dict(data)
        data["side"] = PositionSide(data["side"])
        data["opened_at"] = _parse_ts(data["opened_at"])
        data["closed_at"] = _parse_ts(data["closed_at"])
        return cls(**data)


@dataclass(frozen=True)
class LiquidationEvent:
    """A forced closure at the liquidation price. Logged, not raised."""
    bot_id: str
    position_id: str
    symbol: str
    side: PositionSide
    liquidation_price: float
    mark_price: float
    margin_lost: float
    at: datetime

    def note(self) -> str:
        return (f"LIQUIDATED: {self.side.value} {self.symbol} at ${self.mark_price:.4f} "
                f"(liq ${self.liquidation_price:.4f}), margin lost ${self.margin_lost:.2f}")


@dataclass(frozen=True)
class Portfolio:
    """Read-only view of a bot's portfolio."""
    available_balance: float
    unrealized_pnl: float
    total_value: float
    positions: Tuple[Position, ...]

    def position_for(self, symbol: str) -> Optional[Position]:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None

    def to_dict(self) -> Dict:
        return {
            "available_balance": self.available_balance,
            "unrealized_pnl": self.unrealized_pnl,
            "total_value": self.total_value,
            "positions": [p.to_dict() for p in self.positions],
        }


@dataclass
class ApplyResult:
    applied_count: int = 0
    rejected_notes: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    opened: List[Position] = field(default_factory=list)
    closed: List[ClosedTrade] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.rejected_notes


@dataclass
class TickResult:
    liquidations: List[LiquidationEvent] = field(default_factory=list)
    closed: List[ClosedTrade] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


@dataclass
class LedgerConfig:
    cooldown_minutes: float = 30.0
    min_trade_size_usd: float = 50.0
    fee_rate: float = 0.0
    max_leverage: int = MAX_LEVERAGE
    symbol_max_leverage: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "LedgerConfig":
        data = data or {}
        return cls(
            cooldown_minutes=float(data.get("cooldown_minutes", 30.0)),
            min_trade_size_usd=float(data.get("min_trade_size_usd", 50.0)),
            fee_rate=float(data.get("fee_rate", 0.0)),
            max_leverage=int(data.get("max_leverage", MAX_LEVERAGE)),
            symbol_max_leverage={k.upper(): int(v) for k, v in (data.get("symbol_max_leverage") or {}).items()},
        )

    def leverage_cap(self, symbol: str) -> int:
        return min(self.symbol_max_leverage.get(symbol, self.max_leverage), self.max_leverage)


# ─── Ledger ────────────────────────────────────────────────────────────────

class PositionLedger:
    """Authoritative portfolio state for one bot."""

    def __init__(self, bot_id: str, initial_balance: float, config: Optional[LedgerConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        if initial_balance <= 0:
            raise ValueError(f"initial_balance must be positive, got {initial_balance}")
        self.bot_id = bot_id
        self.initial_balance = float(initial_balance)
        self.config = config or LedgerConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._init_state()

    def _init_state(self) -> None:
        self.available_balance = self.initial_balance
        self._positions: Dict[str, Position] = {}
        self.cooldowns: Dict[str, datetime] = {}
        self.closed_trades: Deque[ClosedTrade] = deque(maxlen=CLOSED_TRADE_LIMIT)
        self.value_history: Deque[Tuple[str, float]] = deque(maxlen=VALUE_HISTORY_LIMIT)
        self.realized_pnl = 0.0
        self.open_fees_paid = 0.0
        self.trade_count = 0
        self.winning_trades = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self._positions.values())

    @property
    def margin_in_use(self) -> float:
        return sum(p.size for p in self._positions.values())

    @property
    def total_value(self) -> float:
        return self.available_balance + self.margin_in_use + self.unrealized_pnl

    @property
    def win_rate(self) -> float:
        return self.winning_trades / self.trade_count if self.trade_count else 0.0

    def snapshot(self) -> Portfolio:
        with self._lock:
            return Portfolio(
                available_balance=self.available_balance,
                unrealized_pnl=self.unrealized_pnl,
                total_value=self.total_value,
                positions=tuple(replace(p) for p in self._positions.values()),
            )

    def active_cooldowns(self, now: Optional[datetime] = None) -> Dict[str, datetime]:
        now = now or self._clock()
        with self._lock:
            return {s: exp for s, exp in self.cooldowns.items() if exp > now}

    def is_on_cooldown(self, symbol: str, now: Optional[datetime] = None) -> bool:
        expiry = self.cooldowns.get(symbol)
        return expiry is not None and expiry > (now or self._clock())

    def stats(self) -> Dict:
        with self._lock:
            return {
                "realized_pnl": self.realized_pnl,
                "trade_count": self.trade_count,
                "winning_trades": self.winning_trades,
                "win_rate": self.win_rate,
                "open_positions": len(self._positions),
                "total_value": self.total_value,
            }

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def apply_decisions(self, decisions: Iterable[AiDecision], snapshot: MarketSnapshot) -> ApplyResult:
        """
        Apply decisions in order against ``snapshot`` prices.

        Business-rule failures become notes and processing continues; the
        invariant is asserted once the whole set has been applied.
        """
        result = ApplyResult()
        with self._lock:
            for decision in decisions:
                try:
                    if decision.action == DecisionAction.HOLD:
                        continue
                    if decision.is_open:
                        position = self._open(decision, snapshot, result.notes)
                        result.opened.append(position)
                        result.notes.append(
                            f"SUCCESS: Opened {position.side.value} {position.symbol} "
                            f"${position.size:.2f} at {position.leverage}x "
                            f"(entry ${position.entry_price:.4f}, liq ${position.liquidation_price:.4f})"
                        )
                    else:
                        trade = self._close_by_id(decision.close_position_id, snapshot, reason="CLOSE")
                        result.closed.append(trade)
                        result.notes.append(
                            f"SUCCESS: Closed {trade.side.value} {trade.symbol} PnL ${trade.pnl:.2f}"
                        )
                    result.applied_count += 1
                except DecisionRejected as rejected:
                    logger.warning(f"[{self.bot_id}] Rejected {decision.label()}: {rejected.note}")
                    result.rejected_notes.append(rejected.note)
                    result.notes.append(rejected.note)

            self._record_value()
            self._check_invariant()
        return result

    def _open(self, decision: AiDecision, snapshot: MarketSnapshot, notes: List[str]) -> Position:
        symbol = decision.symbol
        side = PositionSide(decision.action.value)
        label = f"{side.value} {symbol}"

        price = snapshot.price(symbol)
        if price is None or price <= 0:
            raise DecisionRejected(f"REJECTED {label}: no market price")
        if self.is_on_cooldown(symbol):
            remaining = math.ceil((self.cooldowns[symbol] - self._clock()).total_seconds() / 60)
            raise DecisionRejected(f"REJECTED {label}: symbol on cooldown ({remaining}min remaining)")
        if any(p.symbol == symbol for p in self._positions.values()):
            raise DecisionRejected(f"REJECTED {label}: position already open on {symbol}")

        leverage = decision.leverage
        if leverage < MIN_LEVERAGE or leverage > self.config.max_leverage:
            raise DecisionRejected(
                f"REJECTED {label}: leverage {leverage}x outside [{MIN_LEVERAGE}, {self.config.max_leverage}]"
            )
        cap = self.config.leverage_cap(symbol)
        if leverage > cap:
            notes.append(f"ADJUSTED {label}: leverage {leverage}x clamped to {cap}x")
            leverage = cap

        size = float(decision.size)
        if not math.isfinite(size) or size <= 0:
            raise DecisionRejected(f"REJECTED {label}: size must be positive")
        if size < self.config.min_trade_size_usd:
            raise DecisionRejected(
                f"REJECTED {label}: size ${size:.2f} below minimum ${self.config.min_trade_size_usd:.2f}"
            )
        fee = size * self.config.fee_rate
        if size + fee > self.available_balance + _EPS:
            raise DecisionRejected(
                f"REJECTED {label}: margin ${size + fee:.2f} exceeds available ${self.available_balance:.2f}"
            )

        position = Position(
            id=f"pos_{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            side=side,
            entry_price=price,
            size=size,
            leverage=leverage,
            liquidation_price=liquidation_price(side, price, leverage),
            stop_loss=self._checked_stop(decision.stop_loss, side, price, "stopLoss", label, notes),
            take_profit=self._checked_stop(decision.take_profit, side, price, "takeProfit", label, notes),
            mark_price=price,
            opened_at=self._clock(),
        )
        self.available_balance -= size + fee
        self.open_fees_paid += fee
        self._positions[position.id] = position
        logger.info(
            f"[{self.bot_id}] Opened {label} ${size:.2f} @ {price:.4f} x{leverage} "
            f"(liq {position.liquidation_price:.4f})"
        )
        return position

    @staticmethod
    def _checked_stop(level: Optional[float], side: PositionSide, price: float, name: str,
                      label: str, notes: List[str]) -> Optional[float]:
        if level is None:
            return None
        below = name == "stopLoss" if side == PositionSide.LONG else name == "takeProfit"
        valid = level > 0 and ((level < price) if below else (level > price))
        if not valid:
            notes.append(f"IGNORED {label}: {name} ${level} on wrong side of entry ${price:.4f}")
            return None
        return level

    def _close_by_id(self, position_id: Optional[str], snapshot: Optional[MarketSnapshot], reason: str) -> ClosedTrade:
        position = self._positions.get(position_id or "")
        if position is None:
            raise DecisionRejected(f"NOTE: Position {position_id} not found, may have been auto-closed")
        price = snapshot.price(position.symbol) if snapshot is not None else None
        if price is None:
            # Price-as-of fallback: last mark from the tick updater
            price = position.mark_price
        if price is None or price <= 0:
            raise DecisionRejected(f"REJECTED CLOSE {position.symbol}: no market price")
        return self._close(position, price, reason)

    def _close(self, position: Position, exit_price: float, reason: str) -> ClosedTrade:
        gross = position.pnl_at(exit_price)
        fee = 0.0 if reason == "LIQUIDATION" else position.size * self.config.fee_rate
        returned = max(0.0, position.size + gross - fee)
        net_pnl = returned - position.size

        self.available_balance += returned
        del self._positions[position.id]

        now = self._clock()
        self.cooldowns[position.symbol] = now + timedelta(minutes=self.config.cooldown_minutes)
        self.realized_pnl += net_pnl
        self.trade_count += 1
        if net_pnl > 0:
            self.winning_trades += 1

        trade = ClosedTrade(
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            size=position.size,
            leverage=position.leverage,
            pnl=net_pnl,
            fee=fee,
            reason=reason,
            opened_at=position.opened_at,
            closed_at=now,
        )
        self.closed_trades.append(trade)
        logger.info(
            f"[{self.bot_id}] Closed {position.side.value} {position.symbol} @ {exit_price:.4f} "
            f"({reason}) PnL {net_pnl:+.2f}"
        )
        return trade

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def close_position(self, position_id: str, snapshot: Optional[MarketSnapshot] = None,
                       reason: str = "MANUAL") -> ClosedTrade:
        """Close one position outside a decision cycle. Raises ``DecisionRejected``."""
        with self._lock:
            trade = self._close_by_id(position_id, snapshot, reason=reason)
            self._record_value()
            self._check_invariant()
            return trade

    def reset(self, initial_balance: Optional[float] = None) -> None:
        """Restore the initial balance and drop positions, cooldowns and history."""
        with self._lock:
            if initial_balance is not None:
                if initial_balance <= 0:
                    raise ValueError(f"initial_balance must be positive, got {initial_balance}")
                self.initial_balance = float(initial_balance)
            dropped = len(self._positions)
            self._init_state()
            logger.info(f"[{self.bot_id}] Ledger reset to ${self.initial_balance:.2f} ({dropped} positions dropped)")
            self._check_invariant()

    # ------------------------------------------------------------------
    # Price ticks
    # ------------------------------------------------------------------

    def mark_to_market(self, snapshot: MarketSnapshot) -> TickResult:
        """
        Re-derive unrealized PnL and fire liquidation / stop-loss / take-profit.

        Liquidation is checked first and wins over SL/TP on the same tick.
        """
        tick = TickResult()
        with self._lock:
            for position in list(self._positions.values()):
                price = snapshot.price(position.symbol)
                if price is None:
                    continue
                position.mark_price = price
                position.unrealized_pnl = position.pnl_at(price)

                if position.is_liquidated_at(price):
                    trade = self._close(position, position.liquidation_price, "LIQUIDATION")
                    event = LiquidationEvent(
                        bot_id=self.bot_id,
                        position_id=position.id,
                        symbol=position.symbol,
                        side=position.side,
                        liquidation_price=position.liquidation_price,
                        mark_price=price,
                        margin_lost=-trade.pnl,
                        at=trade.closed_at,
                    )
                    logger.warning(f"[{self.bot_id}] {event.note()}")
                    tick.liquidations.append(event)
                    tick.closed.append(trade)
                    tick.notes.append(event.note())
                elif position.stop_hit_at(price):
                    trade = self._close(position, price, "STOP_LOSS")
                    tick.closed.append(trade)
                    tick.notes.append(f"STOP LOSS: Closed {trade.symbol} at ${price:.4f} PnL ${trade.pnl:.2f}")
                elif position.target_hit_at(price):
                    trade = self._close(position, price, "TAKE_PROFIT")
                    tick.closed.append(trade)
                    tick.notes.append(f"TAKE PROFIT: Closed {trade.symbol} at ${price:.4f} PnL ${trade.pnl:.2f}")

            self._record_value()
            self._check_invariant()
        return tick

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def _record_value(self) -> None:
        self.value_history.append((self._clock().isoformat(), self.total_value))

    def _check_invariant(self) -> None:
        problems = []
        if self.available_balance < -_EPS:
            problems.append(f"available balance negative ({self.available_balance:.6f})")

        symbols = [p.symbol for p in self._positions.values()]
        if len(symbols) != len(set(symbols)):
            problems.append(f"duplicate positions per symbol: {sorted(symbols)}")

        for p in self._positions.values():
            if p.size <= 0:
                problems.append(f"{p.id} non-positive margin {p.size}")
            if not MIN_LEVERAGE <= p.leverage <= MAX_LEVERAGE:
                problems.append(f"{p.id} leverage {p.leverage} out of range")
            expected = liquidation_price(p.side, p.entry_price, p.leverage)
            if not math.isclose(p.liquidation_price, expected, rel_tol=1e-9, abs_tol=1e-12):
                problems.append(f"{p.id} liquidation price {p.liquidation_price} != {expected}")

        expected_cash = self.initial_balance + self.realized_pnl - self.open_fees_paid
        held = self.available_balance + self.margin_in_use
        if not math.isclose(held, expected_cash, rel_tol=1e-9, abs_tol=1e-6):
            problems.append(f"balance + margin {held:.6f} != funded {expected_cash:.6f}")

        total = self.total_value
        if not math.isfinite(total):
            problems.append(f"total value not finite ({total})")

        if problems:
            detail = "; ".join(problems)
            logger.critical(f"[{self.bot_id}] Ledger invariant violated: {detail}")
            raise LedgerInvariantViolation(self.bot_id, detail)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                "bot_id": self.bot_id,
                "initial_balance": self.initial_balance,
                "available_balance": self.available_balance,
                "positions": [p.to_dict() for p in self._positions.values()],
                "cooldowns": {s: exp.isoformat() for s, exp in self.cooldowns.items()},
                "closed_trades": [t.to_dict() for t in self.closed_trades],
                "value_history": [list(point) for point in self.value_history],
                "realized_pnl": self.realized_pnl,
                "open_fees_paid": self.open_fees_paid,
                "trade_count": self.trade_count,
                "winning_trades": self.winning_trades,
            }

    @classmethod
    def from_dict(cls, data: Dict, config: Optional[LedgerConfig] = None,
                  clock: Callable[[], datetime] = utc_now) -> "PositionLedger":
        ledger = cls(data["bot_id"], data["initial_balance"], config=config, clock=clock)
        ledger.available_balance = float(data.get("available_balance", ledger.initial_balance))
        for raw in data.get("positions", []):
            position = Position.from_dict(raw)
            ledger._positions[position.id] = position
        ledger.cooldowns = {s: _parse_ts(exp) for s, exp in (data.get("cooldowns") or {}).items()}
        ledger.closed_trades.extend(ClosedTrade.from_dict(t) for t in data.get("closed_trades", []))
        ledger.value_history.extend((ts, float(v)) for ts, v in data.get("value_history", []))
        ledger.realized_pnl = float(data.get("realized_pnl", 0.0))
        ledger.open_fees_paid = float(data.get("open_fees_paid", 0.0))
        ledger.trade_count = int(data.get("trade_count", 0))
        ledger.winning_trades = int(data.get("winning_trades", 0))
        ledger._check_invariant()
        return ledger
