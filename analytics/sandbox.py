"""
quant-arena Analytics: Sandbox Tool Dispatch

Closed set of tools the reasoning oracle may request through ANALYZE.
Each tool has an explicit parameter schema; the oracle's JSON is validated
against it before any toolkit function runs.

A sandbox instance is scoped to one decision cycle: it holds that cycle's
market snapshot and caches each symbol's price history so repeated requests
inside a cycle see identical inputs.
"""

import logging
import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from analytics import toolkit
from core.exceptions import InsufficientDataError, InvalidToolCallError, ToolError
from core.market_data import MarketDataProvider, MarketSnapshot

logger = logging.getLogger(__name__)

MAX_SERIES_LENGTH = 5000
DEFAULT_HISTORY_LIMIT = 100
SERIES_TAIL = 10


class SandboxTool(str, Enum):
    STATISTICS = "statistics"
    CORRELATION = "correlation"
    RETURNS = "returns"
    VOLATILITY = "volatility"
    RSI = "rsi"
    MACD = "macd"
    BOLLINGER = "bollinger"
    EMA = "ema"
    SMA = "sma"
    TREND = "trend"
    SUPPORT_RESISTANCE = "support_resistance"
    KELLY = "kelly"
    POSITION_SIZE = "position_size"
    RISK_REWARD = "risk_reward"
    DRAWDOWN = "drawdown"
    CURRENT_PRICE = "current_price"
    PRICE_CHANGE = "price_change"


@dataclass(frozen=True)
class ParamSpec:
    name: str
    kind: str  # "number" | "integer" | "series" | "symbol"
    required: bool = True
    default: Any = None


def _p(name: str, kind: str, default: Any = None) -> ParamSpec:
    return ParamSpec(name=name, kind=kind, required=default is None, default=default)


TOOL_PARAMS: Dict[SandboxTool, Tuple[ParamSpec, ...]] = {
    SandboxTool.STATISTICS: (_p("data", "series"),),
    SandboxTool.CORRELATION: (_p("series1", "series"), _p("series2", "series")),
    SandboxTool.RETURNS: (_p("symbol", "symbol"),),
    SandboxTool.VOLATILITY: (_p("symbol", "symbol"), _p("period", "integer")),
    SandboxTool.RSI: (_p("symbol", "symbol"), _p("period", "integer", 14)),
    SandboxTool.MACD: (_p("symbol", "symbol"),),
    SandboxTool.BOLLINGER: (_p("symbol", "symbol"), _p("period", "integer", 20), _p("stdDev", "number", 2.0)),
    SandboxTool.EMA: (_p("symbol", "symbol"), _p("period", "integer")),
    SandboxTool.SMA: (_p("symbol", "symbol"), _p("period", "integer")),
    SandboxTool.TREND: (_p("symbol", "symbol"), _p("period", "integer", 20)),
    SandboxTool.SUPPORT_RESISTANCE: (_p("symbol", "symbol"),),
    SandboxTool.KELLY: (_p("winRate", "number"), _p("avgWin", "number"), _p("avgLoss", "number")),
    SandboxTool.POSITION_SIZE: (_p("balance", "number"), _p("riskPercent", "number"), _p("stopDistance", "number")),
    SandboxTool.RISK_REWARD: (_p("entry", "number"), _p("stop", "number"), _p("target", "number")),
    SandboxTool.DRAWDOWN: (_p("values", "series"),),
    SandboxTool.CURRENT_PRICE: (_p("symbol", "symbol"),),
    SandboxTool.PRICE_CHANGE: (_p("symbol", "symbol"),),
}


def tool_names() -> List[str]:
    return [tool.value for tool in SandboxTool]


def describe_tools() -> str:
    """One line per tool with its parameters, for prompt construction."""
    lines = []
    for tool in SandboxTool:
        params = []
        for spec in TOOL_PARAMS[tool]:
            params.append(spec.name if spec.required else f"{spec.name}={spec.default}")
        lines.append(f"  {tool.value}({', '.join(params)})")
    return "\n".join(lines)


class AnalyticsSandbox:
    """Validates and executes ANALYZE requests against the toolkit."""

    def __init__(
        self,
        snapshot: MarketSnapshot,
        history_provider: Optional[MarketDataProvider] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.snapshot = snapshot
        self.history_provider = history_provider
        self.history_limit = history_limit
        self._history_cache: Dict[str, List[float]] = {}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_tool(name: Any) -> SandboxTool:
        if not isinstance(name, str):
            raise InvalidToolCallError(f"Tool name must be a string, got {type(name).__name__}")
        try:
            return SandboxTool(name.strip().lower())
        except ValueError:
            raise InvalidToolCallError(f"Unknown tool: {name}") from None

    def validate(self, tool: SandboxTool, parameters: Any) -> Dict[str, Any]:
        if not isinstance(parameters, dict):
            raise InvalidToolCallError(f"{tool.value}: parameters must be an object")

        cleaned: Dict[str, Any] = {}
        for spec in TOOL_PARAMS[tool]:
            if parameters.get(spec.name) is None:
                if spec.required:
                    raise InvalidToolCallError(f"{tool.value}: missing parameter '{spec.name}'")
                cleaned[spec.name] = spec.default
                continue
            cleaned[spec.name] = self._coerce(tool, spec, parameters[spec.name])

        extra = set(parameters) - {spec.name for spec in TOOL_PARAMS[tool]}
        if extra:
            logger.debug(f"Ignoring unknown parameters for {tool.value}: {sorted(extra)}")
        return cleaned

    def _coerce(self, tool: SandboxTool, spec: ParamSpec, value: Any) -> Any:
        where = f"{tool.value}.{spec.name}"
        if spec.kind == "number":
            return self._number(value, where)
        if spec.kind == "integer":
            number = self._number(value, where)
            if not float(number).is_integer():
                raise InvalidToolCallError(f"{where} must be an integer, got {value!r}")
            return int(number)
        if spec.kind == "series":
            if not isinstance(value, list):
                raise InvalidToolCallError(f"{where} must be an array of numbers")
            if len(value) > MAX_SERIES_LENGTH:
                raise InvalidToolCallError(f"{where} exceeds {MAX_SERIES_LENGTH} points")
            return [self._number(v, where) for v in value]
        if spec.kind == "symbol":
            if not isinstance(value, str) or not value.strip():
                raise InvalidToolCallError(f"{where} must be a symbol string")
            symbol = value.strip().upper()
            if symbol not in self.snapshot.quotes:
                raise InvalidToolCallError(f"{where}: symbol {symbol} not in market data")
            return symbol
        raise InvalidToolCallError(f"{where}: unsupported parameter kind {spec.kind}")

    @staticmethod
    def _number(value: Any, where: str) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidToolCallError(f"{where} must be numeric, got {value!r}")
        try:
            finite = math.isfinite(value)
        except OverflowError:
            finite = False
        if not finite:
            raise InvalidToolCallError(f"{where} must be finite")
        return value

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, tool_name: Any, parameters: Any) -> Dict[str, Any]:
        """
        Run one tool.

        Raises:
            InvalidToolCallError: unknown tool, malformed parameters, or
                inputs that overflow / produce a non-finite result
            InsufficientDataError: toolkit precondition unmet
        """
        tool = self.resolve_tool(tool_name)
        params = self.validate(tool, parameters)
        handler = _HANDLERS[tool]
        try:
            result = handler(self, params)
        except ToolError:
            raise
        except (ArithmeticError, ValueError) as exc:
            raise InvalidToolCallError(f"{tool.value}: numeric error on supplied inputs ({exc})") from exc
        if not _is_finite(result):
            raise InvalidToolCallError(f"{tool.value}: result is not finite for supplied inputs")
        logger.debug(f"Sandbox tool {tool.value} executed with {params}")
        return result

    def price_history(self, symbol: str) -> List[float]:
        if symbol not in self._history_cache:
            history: List[float] = []
            if self.history_provider is not None:
                history = [float(p) for p in self.history_provider.get_price_history(symbol, self.history_limit)]
            self._history_cache[symbol] = history
        history = self._history_cache[symbol]
        if not history:
            raise InsufficientDataError(f"No price history available for {symbol}")
        return history


# ─── Handlers ──────────────────────────────────────────────────────────────

def _is_finite(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_is_finite(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(_is_finite(v) for v in value)
    return True


def _series_result(values: List[float], **extra) -> Dict[str, Any]:
    return {"value": values[-1], "values": values[-SERIES_TAIL:], **extra}


def _statistics(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return asdict(toolkit.series_statistics(p["data"]))


def _correlation(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return {"correlation": toolkit.correlation(p["series1"], p["series2"])}


def _returns(sb: AnalyticsSandbox, p: Dict) -> Dict:
    returns = toolkit.simple_returns(sb.price_history(p["symbol"]))
    return _series_result(returns, symbol=p["symbol"])


def _volatility(sb: AnalyticsSandbox, p: Dict) -> Dict:
    value = toolkit.volatility(sb.price_history(p["symbol"]), p["period"])
    return {"value": value, "symbol": p["symbol"], "period": p["period"]}


def _rsi(sb: AnalyticsSandbox, p: Dict) -> Dict:
    value = toolkit.rsi(sb.price_history(p["symbol"]), p["period"])
    return {"value": value, "symbol": p["symbol"], "period": p["period"]}


def _macd(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return {**asdict(toolkit.macd(sb.price_history(p["symbol"]))), "symbol": p["symbol"]}


def _bollinger(sb: AnalyticsSandbox, p: Dict) -> Dict:
    bands = toolkit.bollinger_bands(sb.price_history(p["symbol"]), p["period"], p["stdDev"])
    return {**asdict(bands), "symbol": p["symbol"], "period": p["period"]}


def _ema(sb: AnalyticsSandbox, p: Dict) -> Dict:
    values = toolkit.ema(sb.price_history(p["symbol"]), p["period"])
    return _series_result(values, symbol=p["symbol"], period=p["period"])


def _sma(sb: AnalyticsSandbox, p: Dict) -> Dict:
    values = toolkit.sma(sb.price_history(p["symbol"]), p["period"])
    return _series_result(values, symbol=p["symbol"], period=p["period"])


def _trend(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return {**asdict(toolkit.detect_trend(sb.price_history(p["symbol"]), p["period"])), "symbol": p["symbol"]}


def _support_resistance(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return {**asdict(toolkit.find_support_resistance(sb.price_history(p["symbol"]))), "symbol": p["symbol"]}


def _kelly(sb: AnalyticsSandbox, p: Dict) -> Dict:
    fraction = toolkit.kelly_criterion(p["winRate"], p["avgWin"], p["avgLoss"])
    return {"fraction": fraction, "winRate": p["winRate"], "avgWin": p["avgWin"], "avgLoss": p["avgLoss"]}


def _position_size(sb: AnalyticsSandbox, p: Dict) -> Dict:
    size = toolkit.position_size(p["balance"], p["riskPercent"], p["stopDistance"])
    return {"size": size, "balance": p["balance"], "riskPercent": p["riskPercent"]}


def _risk_reward(sb: AnalyticsSandbox, p: Dict) -> Dict:
    ratio = toolkit.risk_reward(p["entry"], p["stop"], p["target"])
    return {"ratio": ratio, "entry": p["entry"], "stop": p["stop"], "target": p["target"]}


def _drawdown(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return asdict(toolkit.drawdown(p["values"]))


def _current_price(sb: AnalyticsSandbox, p: Dict) -> Dict:
    return {"price": sb.snapshot.quotes[p["symbol"]].price, "symbol": p["symbol"]}


def _price_change(sb: AnalyticsSandbox, p: Dict) -> Dict:
    quote = sb.snapshot.quotes[p["symbol"]]
    denominator = 1 + quote.change_24h_pct / 100
    if denominator <= 0:
        raise InsufficientDataError(f"Invalid 24h change for {p['symbol']}: {quote.change_24h_pct}")
    price_24h_ago = quote.price / denominator
    return {
        "absolute": quote.price - price_24h_ago,
        "percent": quote.change_24h_pct,
        "currentPrice": quote.price,
        "symbol": p["symbol"],
    }


_HANDLERS: Dict[SandboxTool, Callable[[AnalyticsSandbox, Dict], Dict]] = {
    SandboxTool.STATISTICS: _statistics,
    SandboxTool.CORRELATION: _correlation,
    SandboxTool.RETURNS: _returns,
    SandboxTool.VOLATILITY: _volatility,
    SandboxTool.RSI: _rsi,
    SandboxTool.MACD: _macd,
    SandboxTool.BOLLINGER: _bollinger,
    SandboxTool.EMA: _ema,
    SandboxTool.SMA: _sma,
    SandboxTool.TREND: _trend,
    SandboxTool.SUPPORT_RESISTANCE: _support_resistance,
    SandboxTool.KELLY: _kelly,
    SandboxTool.POSITION_SIZE: _position_size,
    SandboxTool.RISK_REWARD: _risk_reward,
    SandboxTool.DRAWDOWN: _drawdown,
    SandboxTool.CURRENT_PRICE: _current_price,
    SandboxTool.PRICE_CHANGE: _price_change,
}
