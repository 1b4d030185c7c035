"""
Reasoning oracle wire schemas.

The oracle's text is untrusted. Every object it returns is validated against
one of these models before any branch of the protocol is taken: an
``AnalysisRequest`` (one ANALYZE call) or a list of ``AiDecision``.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_REASONING_CHARS = 1000


class DecisionAction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


def _normalize_reasoning(value: Any) -> str:
    if value is None:
        return ""
    return str(value)[:MAX_REASONING_CHARS]


class AnalysisRequest(BaseModel):
    """One ANALYZE round: which sandbox tool to run and with what inputs."""

    model_config = ConfigDict(extra="ignore")

    action: str = "ANALYZE"
    tool: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: str = "No reasoning provided"

    @field_validator("action")
    @classmethod
    def _must_be_analyze(cls, v: str) -> str:
        if str(v).upper() != "ANALYZE":
            raise ValueError(f"not an ANALYZE request: {v}")
        return "ANALYZE"

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v: Any) -> str:
        return _normalize_reasoning(v) or "No reasoning provided"


class AiDecision(BaseModel):
    """
    One terminal trade decision.

    Shape checks live here (required fields per action). Business rules
    (balance, leverage range, cooldowns) belong to the ledger, which rejects
    with a note rather than failing the whole response.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    action: DecisionAction
    symbol: Optional[str] = None
    close_position_id: Optional[str] = Field(default=None, alias="closePositionId")
    size: Optional[float] = None
    leverage: int = 1
    stop_loss: Optional[float] = Field(default=None, alias="stopLoss")
    take_profit: Optional[float] = Field(default=None, alias="takeProfit")
    reasoning: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("symbol", mode="before")
    @classmethod
    def _upper_symbol(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) and v.strip() else None

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, v: Any) -> str:
        return _normalize_reasoning(v)

    @model_validator(mode="after")
    def _required_fields(self) -> "AiDecision":
        if self.action in (DecisionAction.LONG, DecisionAction.SHORT):
            if not self.symbol:
                raise ValueError(f"{self.action.value} requires 'symbol'")
            if self.size is None:
                raise ValueError(f"{self.action.value} requires 'size'")
        elif self.action == DecisionAction.CLOSE:
            if not self.close_position_id:
                raise ValueError("CLOSE requires 'closePositionId'")
        return self

    @property
    def is_open(self) -> bool:
        return self.action in (DecisionAction.LONG, DecisionAction.SHORT)

    def to_wire(self) -> Dict[str, Any]:
        """Camel-cased dict as the oracle sees it (for logs and history)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def label(self) -> str:
        target = self.symbol or self.close_position_id or ""
        return f"{self.action.value} {target}".strip()
