"""
Tests for the quantitative toolkit.
"""
import math

import pytest

from analytics import toolkit
from core.exceptions import InsufficientDataError


class TestStatistics:

    def test_basic_statistics(self):
        stats = toolkit.series_statistics([1.0, 2.0, 3.0, 4.0])
        assert stats.mean == 2.5
        assert stats.median == 2.5
        assert stats.variance == pytest.approx(1.25)
        assert stats.std_dev == pytest.approx(math.sqrt(1.25))
        assert stats.min == 1.0
        assert stats.max == 4.0
        assert stats.count == 4

    def test_odd_length_median(self):
        assert toolkit.series_statistics([5, 1, 3]).median == 3

    def test_empty_series_raises(self):
        with pytest.raises(InsufficientDataError):
            toolkit.series_statistics([])

    def test_correlation_perfect(self):
        assert toolkit.correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
        assert toolkit.correlation([1, 2, 3], [6, 4, 2]) == pytest.approx(-1.0)

    def test_correlation_zero_variance(self):
        assert toolkit.correlation([1, 1, 1], [1, 2, 3]) == 0.0

    def test_correlation_length_mismatch(self):
        with pytest.raises(InsufficientDataError):
            toolkit.correlation([1, 2, 3], [1, 2])

    def test_simple_returns(self):
        assert toolkit.simple_returns([100, 110, 99]) == pytest.approx([0.1, -0.1])

    def test_returns_needs_two_prices(self):
        with pytest.raises(InsufficientDataError):
            toolkit.simple_returns([100])

    def test_volatility_flat_series(self):
        assert toolkit.volatility([100.0] * 11, 10) == 0.0

    def test_volatility_requires_period_plus_one(self):
        with pytest.raises(InsufficientDataError):
            toolkit.volatility([100.0] * 10, 10)


class TestIndicators:

    def test_rsi_all_gains_is_100(self):
        prices = [float(p) for p in range(1, 17)]
        assert toolkit.rsi(prices, 14) == 100.0

    def test_rsi_all_losses_is_0(self):
        prices = [float(p) for p in range(16, 0, -1)]
        assert toolkit.rsi(prices, 14) == 0.0

    def test_rsi_balanced_is_50(self):
        prices = [10, 11] * 8
        # Trailing 14 changes alternate +1 / -1
        assert toolkit.rsi(prices, 14) == pytest.approx(50.0)

    def test_rsi_insufficient_data(self):
        with pytest.raises(InsufficientDataError):
            toolkit.rsi([1.0] * 14, 14)

    def test_sma(self):
        assert toolkit.sma([1, 2, 3, 4], 2) == [1.5, 2.5, 3.5]

    def test_ema_seeded_with_first_price(self):
        values = toolkit.ema([1, 2, 3], 2)
        assert values[0] == 1.0
        assert values[1] == pytest.approx(5 / 3)
        assert values[2] == pytest.approx(23 / 9)

    def test_invalid_period(self):
        with pytest.raises(InsufficientDataError):
            toolkit.sma([1, 2, 3], 0)
        with pytest.raises(InsufficientDataError):
            toolkit.ema([1, 2, 3], True)

    def test_macd_requires_26(self):
        with pytest.raises(InsufficientDataError):
            toolkit.macd([1.0] * 25)

    def test_macd_flat_series(self):
        result = toolkit.macd([50.0] * 40)
        assert result.macd == pytest.approx(0.0)
        assert result.signal == pytest.approx(0.0)
        assert result.histogram == pytest.approx(0.0)

    def test_macd_uptrend_positive(self):
        result = toolkit.macd([float(p) for p in range(1, 61)])
        assert result.macd > 0

    def test_bollinger_flat(self):
        bands = toolkit.bollinger_bands([10.0] * 20)
        assert bands.upper == bands.middle == bands.lower == 10.0

    def test_bollinger_width(self):
        bands = toolkit.bollinger_bands([1, 3], period=2, std_dev_multiplier=2.0)
        assert bands.middle == 2.0
        assert bands.upper == pytest.approx(4.0)
        assert bands.lower == pytest.approx(0.0)


class TestPatterns:

    def test_trend_bullish_line(self):
        prices = [100.0 + i for i in range(20)]
        trend = toolkit.detect_trend(prices, 20)
        assert trend.direction == "bullish"
        assert trend.confidence == pytest.approx(1.0)
        assert trend.slope_pct == pytest.approx(100 / 109.5)
        assert trend.strength == pytest.approx(min((100 / 109.5) / 5, 1.0))

    def test_trend_bearish_line(self):
        prices = [200.0 - 2 * i for i in range(30)]
        assert toolkit.detect_trend(prices).direction == "bearish"

    def test_trend_flat_is_neutral_with_zero_confidence(self):
        trend = toolkit.detect_trend([42.0] * 20)
        assert trend.direction == "neutral"
        assert trend.strength == 0.0
        assert trend.confidence == 0.0

    def test_trend_insufficient(self):
        with pytest.raises(InsufficientDataError):
            toolkit.detect_trend([1.0] * 10, 20)

    def test_support_resistance_clusters(self):
        prices = [10, 11, 12, 11, 10, 9, 10, 11, 12, 13, 12, 11, 10, 9, 10, 11, 12, 11, 10, 9, 10]
        levels = toolkit.find_support_resistance(prices)
        assert levels.support == [9]
        assert levels.resistance == [12, 13]

    def test_support_resistance_needs_20(self):
        with pytest.raises(InsufficientDataError):
            toolkit.find_support_resistance([1.0] * 19)


class TestRiskSizing:

    def test_kelly_half_fraction(self):
        assert toolkit.kelly_criterion(0.6, 1.0, 1.0) == pytest.approx(0.1)

    def test_kelly_negative_edge_clamped_to_zero(self):
        assert toolkit.kelly_criterion(0.3, 1.0, 1.0) == 0.0

    def test_kelly_capped(self):
        assert toolkit.kelly_criterion(0.95, 10.0, 1.0) == 0.4

    def test_kelly_invalid_win_rate(self):
        with pytest.raises(InsufficientDataError):
            toolkit.kelly_criterion(1.0, 1.0, 1.0)

    def test_position_size(self):
        assert toolkit.position_size(10_000, 1, 5) == pytest.approx(2000)

    def test_position_size_capped_at_40pct(self):
        assert toolkit.position_size(1000, 10, 5) == pytest.approx(400)

    def test_position_size_rejects_non_positive(self):
        with pytest.raises(InsufficientDataError):
            toolkit.position_size(1000, 0, 5)

    def test_risk_reward(self):
        assert toolkit.risk_reward(100, 95, 110) == pytest.approx(2.0)

    def test_risk_reward_stop_equals_entry(self):
        with pytest.raises(InsufficientDataError):
            toolkit.risk_reward(100, 100, 110)

    def test_drawdown(self):
        result = toolkit.drawdown([100, 120, 90, 110])
        assert result.max_drawdown_pct == pytest.approx(25.0)
        assert result.max_drawdown == pytest.approx(25.0)
        assert result.current_drawdown_pct == pytest.approx(100 * 10 / 120)

    def test_drawdown_monotonic_up(self):
        result = toolkit.drawdown([1, 2, 3])
        assert result.max_drawdown_pct == 0.0
        assert result.current_drawdown_pct == 0.0


def test_deterministic_outputs():
    prices = [100 + math.sin(i / 3) * 5 for i in range(60)]
    assert toolkit.macd(prices) == toolkit.macd(list(prices))
    assert toolkit.detect_trend(prices) == toolkit.detect_trend(list(prices))
