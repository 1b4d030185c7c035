"""
quant-arena Analytics: Quantitative Toolkit

Pure, stateless numeric functions over price / return series.

Every function validates its inputs and raises ``InsufficientDataError``
instead of returning NaN/inf. Calculations run in a fixed order over plain
floats so identical inputs always produce bit-identical outputs, which lets a
decision transcript be replayed exactly.
"""

import math
from dataclasses import dataclass, field
from typing import List, Sequence

from core.exceptions import InsufficientDataError

ANNUALIZATION_PERIODS = 365
NEUTRAL_SLOPE_PCT = 0.1
TREND_STRENGTH_SCALE = 5.0
EXTREMA_WINDOW = 2
CLUSTER_THRESHOLD = 0.02
MIN_SUPPORT_RESISTANCE_POINTS = 20
KELLY_CAP = 0.4
POSITION_SIZE_CAP = 0.4


@dataclass(frozen=True)
class SeriesStats:
    mean: float
    median: float
    std_dev: float
    variance: float
    min: float
    max: float
    count: int


@dataclass(frozen=True)
class MacdResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class TrendResult:
    direction: str      # "bullish" / "bearish" / "neutral"
    strength: float     # 0-1
    confidence: float   # R^2 of the fit
    slope_pct: float    # slope per step as % of mean price


@dataclass(frozen=True)
class SupportResistance:
    support: List[float] = field(default_factory=list)
    resistance: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class DrawdownResult:
    max_drawdown: float
    max_drawdown_pct: float
    current_drawdown_pct: float


# ─── Helpers ───────────────────────────────────────────────────────────────

def _require(condition: bool, message: str) -> None:
    if not condition:
        raise InsufficientDataError(message)


def _require_period(period: int, name: str = "period", minimum: int = 1) -> int:
    if isinstance(period, bool) or not isinstance(period, int):
        raise InsufficientDataError(f"{name} must be an integer, got {period!r}")
    _require(period >= minimum, f"{name} must be >= {minimum}, got {period}")
    return period


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def _population_variance(values: Sequence[float], mean: float) -> float:
    return sum((v - mean) ** 2 for v in values) / len(values)


# ─── Statistics ────────────────────────────────────────────────────────────

def series_statistics(data: Sequence[float]) -> SeriesStats:
    """Mean, median, population standard deviation/variance, min and max."""
    _require(len(data) > 0, "statistics requires a non-empty series")

    ordered = sorted(data)
    n = len(data)
    mean = _mean(data)
    mid = n // 2
    if n % 2 == 0:
        median = (ordered[mid - 1] + ordered[mid]) / 2
    else:
        median = ordered[mid]
    variance = _population_variance(data, mean)

    return SeriesStats(
        mean=mean,
        median=median,
        std_dev=math.sqrt(variance),
        variance=variance,
        min=ordered[0],
        max=ordered[-1],
        count=n,
    )


def correlation(series_a: Sequence[float], series_b: Sequence[float]) -> float:
    """Pearson correlation in [-1, 1]; 0 when either series has zero variance."""
    _require(
        len(series_a) == len(series_b) and len(series_a) > 0,
        "correlation requires two series of equal non-zero length",
    )

    mean_a = _mean(series_a)
    mean_b = _mean(series_b)
    numerator = 0.0
    sum_a_sq = 0.0
    sum_b_sq = 0.0
    for a, b in zip(series_a, series_b):
        da = a - mean_a
        db = b - mean_b
        numerator += da * db
        sum_a_sq += da * da
        sum_b_sq += db * db

    denominator = math.sqrt(sum_a_sq * sum_b_sq)
    if denominator == 0:
        return 0.0
    # Clamp float noise just outside the closed interval
    return max(-1.0, min(1.0, numerator / denominator))


def simple_returns(prices: Sequence[float]) -> List[float]:
    """Period-over-period simple returns."""
    _require(len(prices) >= 2, "returns requires at least 2 prices")
    _require(all(p != 0 for p in prices[:-1]), "returns requires non-zero prices")
    return [(prices[i] - prices[i - 1]) / prices[i - 1] for i in range(1, len(prices))]


def volatility(prices: Sequence[float], period: int) -> float:
    """Annualized (sqrt(365)) stdev of the trailing ``period`` log returns."""
    _require_period(period)
    _require(len(prices) >= period + 1, f"volatility needs {period + 1} prices, got {len(prices)}")
    _require(all(p > 0 for p in prices), "volatility requires strictly positive prices")

    log_returns = [math.log(prices[i] / prices[i - 1]) for i in range(1, len(prices))]
    recent = log_returns[-period:]
    return series_statistics(recent).std_dev * math.sqrt(ANNUALIZATION_PERIODS)


# ─── Technical indicators ──────────────────────────────────────────────────

def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Relative Strength Index over the trailing ``period`` price changes."""
    _require_period(period)
    _require(len(prices) >= period + 1, f"RSI needs {period + 1} prices, got {len(prices)}")

    changes = [prices[i] - prices[i - 1] for i in range(len(prices) - period, len(prices))]
    avg_gain = sum(c for c in changes if c > 0) / period
    avg_loss = sum(-c for c in changes if c < 0) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def ema(prices: Sequence[float], period: int) -> List[float]:
    """Exponential moving average series, seeded with the first raw price."""
    _require_period(period)
    _require(len(prices) >= period, f"EMA needs {period} prices, got {len(prices)}")

    multiplier = 2.0 / (period + 1)
    values = [float(prices[0])]
    for price in prices[1:]:
        values.append(price * multiplier + values[-1] * (1 - multiplier))
    return values


def sma(prices: Sequence[float], period: int) -> List[float]:
    """Simple moving average series (one value per full window)."""
    _require_period(period)
    _require(len(prices) >= period, f"SMA needs {period} prices, got {len(prices)}")

    return [sum(prices[i - period + 1:i + 1]) / period for i in range(period - 1, len(prices))]


def macd(prices: Sequence[float]) -> MacdResult:
    """MACD line, 9-period signal and histogram from 12/26 EMAs."""
    _require(len(prices) >= 26, f"MACD needs 26 prices, got {len(prices)}")

    fast = ema(prices, 12)
    slow = ema(prices, 26)
    macd_series = [f - s for f, s in zip(fast, slow)]
    signal_series = ema(macd_series, 9)

    macd_value = macd_series[-1]
    signal_value = signal_series[-1]
    return MacdResult(macd=macd_value, signal=signal_value, histogram=macd_value - signal_value)


def bollinger_bands(
    prices: Sequence[float],
    period: int = 20,
    std_dev_multiplier: float = 2.0,
) -> BollingerBands:
    """Trailing SMA +/- multiplier * population stdev."""
    _require_period(period)
    _require(len(prices) >= period, f"Bollinger Bands need {period} prices, got {len(prices)}")

    window = prices[-period:]
    middle = _mean(window)
    std_dev = math.sqrt(_population_variance(window, middle))
    return BollingerBands(
        upper=middle + std_dev_multiplier * std_dev,
        middle=middle,
        lower=middle - std_dev_multiplier * std_dev,
    )


# ─── Pattern recognition ───────────────────────────────────────────────────

def detect_trend(prices: Sequence[float], min_period: int = 20) -> TrendResult:
    """
    Least-squares trend over the trailing ``min_period`` prices.

    Direction is neutral when |slope%| < 0.1, strength is min(|slope%|/5, 1)
    and confidence is R^2 (0 for a perfectly flat window).
    """
    _require_period(min_period, "min_period", minimum=2)
    _require(len(prices) >= min_period, f"trend needs {min_period} prices, got {len(prices)}")

    window = prices[-min_period:]
    n = len(window)
    mean_x = (n - 1) / 2
    mean_y = _mean(window)

    numerator = 0.0
    denominator = 0.0
    for i, y in enumerate(window):
        numerator += (i - mean_x) * (y - mean_y)
        denominator += (i - mean_x) ** 2
    slope = numerator / denominator
    slope_pct = (slope / mean_y) * 100 if mean_y != 0 else 0.0

    ss_res = 0.0
    ss_tot = 0.0
    for i, y in enumerate(window):
        predicted = mean_y + slope * (i - mean_x)
        ss_res += (y - predicted) ** 2
        ss_tot += (y - mean_y) ** 2
    r_squared = max(0.0, 1 - ss_res / ss_tot) if ss_tot > 0 else 0.0

    if abs(slope_pct) < NEUTRAL_SLOPE_PCT:
        direction = "neutral"
    elif slope_pct > 0:
        direction = "bullish"
    else:
        direction = "bearish"

    return TrendResult(
        direction=direction,
        strength=min(abs(slope_pct) / TREND_STRENGTH_SCALE, 1.0),
        confidence=r_squared,
        slope_pct=slope_pct,
    )


def _cluster_levels(levels: List[float], threshold: float = CLUSTER_THRESHOLD) -> List[float]:
    if not levels:
        return []

    ordered = sorted(levels)
    clusters = [[ordered[0]]]
    for level in ordered[1:]:
        current = clusters[-1]
        avg = _mean(current)
        if avg != 0 and abs(level - avg) / abs(avg) < threshold:
            current.append(level)
        else:
            clusters.append([level])
    return [_mean(cluster) for cluster in clusters]


def find_support_resistance(prices: Sequence[float]) -> SupportResistance:
    """Local extrema (strict vs. two neighbours each side) clustered within 2%."""
    _require(
        len(prices) >= MIN_SUPPORT_RESISTANCE_POINTS,
        f"support/resistance needs {MIN_SUPPORT_RESISTANCE_POINTS} prices, got {len(prices)}",
    )

    minima: List[float] = []
    maxima: List[float] = []
    w = EXTREMA_WINDOW
    for i in range(w, len(prices) - w):
        neighbours = [prices[j] for j in range(i - w, i + w + 1) if j != i]
        if all(prices[i] < n for n in neighbours):
            minima.append(prices[i])
        if all(prices[i] > n for n in neighbours):
            maxima.append(prices[i])

    return SupportResistance(support=_cluster_levels(minima), resistance=_cluster_levels(maxima))


# ─── Risk sizing ───────────────────────────────────────────────────────────

def kelly_criterion(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """Half-Kelly fraction clamped to [0, 0.4]."""
    _require(0 < win_rate < 1, f"win rate must be in (0, 1), got {win_rate}")
    _require(avg_win > 0 and avg_loss > 0, "average win and loss must be positive")

    win_loss_ratio = avg_win / avg_loss
    kelly = (win_rate * win_loss_ratio - (1 - win_rate)) / win_loss_ratio
    return max(0.0, min(kelly / 2, KELLY_CAP))


def position_size(balance: float, risk_percent: float, stop_distance_percent: float) -> float:
    """Margin that risks ``risk_percent`` of balance at the given stop, capped at 40%."""
    _require(
        balance > 0 and risk_percent > 0 and stop_distance_percent > 0,
        "balance, risk percent and stop distance must all be positive",
    )

    risk_amount = balance * (risk_percent / 100)
    size = risk_amount / (stop_distance_percent / 100)
    return min(size, balance * POSITION_SIZE_CAP)


def risk_reward(entry: float, stop: float, target: float) -> float:
    """Reward distance over risk distance."""
    risk = abs(entry - stop)
    _require(risk != 0, "stop loss cannot equal entry price")
    return abs(target - entry) / risk


def drawdown(values: Sequence[float]) -> DrawdownResult:
    """
    Running-peak drawdown of an equity curve.

    ``max_drawdown`` is the worst fractional drawdown expressed in the units
    of the first value.
    """
    _require(len(values) > 0, "drawdown requires a non-empty series")
    _require(values[0] > 0, "drawdown requires a positive starting value")

    peak = values[0]
    max_dd = 0.0
    current_dd = 0.0
    for value in values:
        if value > peak:
            peak = value
        current_dd = (peak - value) / peak
        if current_dd > max_dd:
            max_dd = current_dd

    return DrawdownResult(
        max_drawdown=max_dd * values[0],
        max_drawdown_pct=max_dd * 100,
        current_drawdown_pct=current_dd * 100,
    )
