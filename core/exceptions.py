"""Shared exception types for the decision engine.

Recoverable errors (tool, oracle, per-decision rejections) stay local to a
cycle and degrade to HOLD. ``LedgerInvariantViolation`` is fatal and must
reach an operator.
"""

from typing import Optional


class ArenaError(Exception):
    """Base class for all engine errors."""


class CriticalDataUnavailable(ArenaError, RuntimeError):
    """Raised when required market data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


# ---------------------------------------------------------------------------
# Sandbox tools
# ---------------------------------------------------------------------------

class ToolError(ArenaError):
    """Base class for sandbox tool failures (recoverable, consumes an iteration)."""


class InsufficientDataError(ToolError, ValueError):
    """Tool precondition unmet: series too short, empty, or out of range."""


class InvalidToolCallError(ToolError):
    """Unknown tool name or malformed parameters."""


# ---------------------------------------------------------------------------
# Reasoning oracle
# ---------------------------------------------------------------------------

class OracleError(ArenaError):
    """Base class for reasoning oracle failures."""


class OracleTimeoutError(OracleError):
    """Oracle call exceeded the caller-enforced timeout."""


class OracleMalformedResponseError(OracleError):
    """Oracle text could not be parsed into a request or a decision set."""


class OracleUnavailableError(OracleError):
    """Transport failure, empty payload, or missing credentials."""


class ProtocolViolation(OracleError):
    """Oracle asked for another ANALYZE round after the budget was spent."""


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class DecisionRejected(ArenaError):
    """A single decision broke a business rule; the batch keeps going."""

    def __init__(self, note: str):
        super().__init__(note)
        self.note = note


class LedgerInvariantViolation(ArenaError):
    """Balance/position accounting drifted from truth. Never swallowed."""

    def __init__(self, bot_id: str, detail: str):
        super().__init__(f"[{bot_id}] {detail}")
        self.bot_id = bot_id
        self.detail = detail


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class BotNotFound(ArenaError, KeyError):
    """No bot registered under the requested id."""

    def __init__(self, bot_id: str):
        super().__init__(bot_id)
        self.bot_id = bot_id

    def __str__(self) -> str:
        return f"Bot {self.bot_id} not found"


class CycleInFlight(ArenaError):
    """A decision cycle already holds the bot lock."""

    def __init__(self, bot_id: str):
        super().__init__(f"Cycle already running for bot {bot_id}")
        self.bot_id = bot_id
