"""
quant-arena Core: Bots

A bot is a named trading agent with its own prompt, symbol universe and
capital pool. ``BotRuntime`` bundles the bot's ledger, decision log and the
lock that serializes its cycles against manual actions.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.decision_log import DecisionLog
from core.ledger import LedgerConfig, PositionLedger

logger = logging.getLogger(__name__)


@dataclass
class BotConfig:
    id: str
    name: str
    prompt: Optional[str] = None
    symbols: List[str] = field(default_factory=list)
    initial_balance: float = 10_000.0
    paused: bool = False
    sandbox_enabled: bool = True
    oracle: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            prompt=data.get("prompt"),
            symbols=[str(s).upper() for s in data.get("symbols") or []],
            initial_balance=float(data.get("initial_balance", 10_000.0)),
            paused=bool(data.get("paused", False)),
            sandbox_enabled=bool(data.get("sandbox_enabled", True)),
            oracle=dict(data.get("oracle") or {}),
        )


@dataclass
class BotRuntime:
    config: BotConfig
    ledger: PositionLedger
    decision_log: DecisionLog
    paused: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_cycle_at: Optional[datetime] = None
    last_cycle_status: Optional[str] = None
    cycles_run: int = 0

    @property
    def bot_id(self) -> str:
        return self.config.id

    @property
    def in_flight(self) -> bool:
        return self.lock.locked()

    @classmethod
    def create(cls, config: BotConfig, ledger_config: Optional[LedgerConfig] = None,
               max_log_entries: int = 50) -> "BotRuntime":
        return cls(
            config=config,
            ledger=PositionLedger(config.id, config.initial_balance, config=ledger_config),
            decision_log=DecisionLog(max_entries=max_log_entries),
            paused=config.paused,
        )

    def status(self) -> Dict[str, Any]:
        portfolio = self.ledger.snapshot()
        return {
            "id": self.bot_id,
            "name": self.config.name,
            "paused": self.paused,
            "in_flight": self.in_flight,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_cycle_status": self.last_cycle_status,
            "cycles_run": self.cycles_run,
            "total_value": portfolio.total_value,
            "open_positions": len(portfolio.positions),
        }
