"""
test_candles.py - Tests for candle normalization and indicator kernels
"""

import math

import numpy as np
import pandas as pd
import pytest

from data.candles import Candle, CandleProcessor, Indicators
from conftest import build_candles, trending_closes


class TestCandleProcessor:
    """Test candle parsing and cleaning."""

    def test_from_ccxt_rows(self):
        rows = [[1000, 1, 2, 0.5, 1.5, 10], [2000, 1.5, 2.5, 1.0, 2.0, None]]
        df = CandleProcessor.from_list(rows)
        assert list(df.columns) == ['timestamp', 'open', 'high', 'low', 'close', 'volume']
        assert df['volume'].tolist() == [10.0, 0.0]

    def test_from_dict_row(self):
        candle = Candle.from_row({'timestamp': 5, 'open': 1, 'high': 2, 'low': 1, 'close': 2})
        assert candle.volume == 0.0
        assert Candle.from_row(candle) is candle

    def test_empty(self):
        assert CandleProcessor.from_list([]).empty

    def test_clean_sorts_dedups_and_drops_bad_bars(self):
        rows = [
            [3000, 1, 2, 0.5, 1.5, 1],
            [1000, 1, 2, 0.5, 1.5, 1],
            [1000, 1, 2, 0.5, 1.8, 1],
            [2000, 1, 0.9, 0.5, 1.5, 1],  # high below close
        ]
        df = CandleProcessor.clean(CandleProcessor.from_list(rows))
        assert df['timestamp'].tolist() == [1000, 3000]
        assert df['close'].iloc[0] == 1.8


class TestIndicators:
    """Test indicator math on known series."""

    def test_rsi_bounds(self):
        rising = pd.Series(trending_closes(30))
        flat = pd.Series([10.0] * 30)
        assert Indicators.rsi(rising, 14).iloc[-1] == 100.0
        assert Indicators.rsi(flat, 14).iloc[-1] == 50.0
        assert math.isnan(Indicators.rsi(rising, 14).iloc[13])

    def test_rsi_short_series_is_nan(self):
        assert Indicators.rsi(pd.Series([1.0, 2.0, 3.0]), 14).isna().all()

    def test_rsi_wilder_known_value(self):
        # alternating +2/-1 moves: avg gain 1, avg loss 0.5 over an even window
        prices = [100.0]
        for i in range(14):
            prices.append(prices[-1] + (2.0 if i % 2 == 0 else -1.0))
        rsi = Indicators.rsi(pd.Series(prices), 14).iloc[-1]
        assert rsi == pytest.approx(100 - 100 / (1 + 2.0))

    def test_macd_positive_in_uptrend(self):
        macd = Indicators.macd(pd.Series(trending_closes(60)))
        assert macd['macd'].iloc[-1] > 0
        assert np.allclose(macd['histogram'], macd['macd'] - macd['signal'])

    def test_bollinger_flat_series_collapses(self):
        bands = Indicators.bollinger_bands(pd.Series([50.0] * 25), 20, 2.0)
        assert bands['bb_upper'].iloc[-1] == pytest.approx(50.0)
        assert bands['bb_lower'].iloc[-1] == pytest.approx(50.0)

    def test_stochastic_and_williams_flat_range(self):
        df = CandleProcessor.from_list(
            [[i, 10.0, 10.0, 10.0, 10.0, 1.0] for i in range(20)])
        assert Indicators.stochastic(df, 14)['stoch_k'].iloc[-1] == 50.0
        assert Indicators.williams_r(df, 14).iloc[-1] == -50.0

    def test_williams_range(self, uptrend_candles):
        df = CandleProcessor.from_list(uptrend_candles)
        wr = Indicators.williams_r(df, 14).iloc[-1]
        assert -100.0 <= wr <= 0.0

    def test_atr_positive(self, uptrend_candles):
        df = CandleProcessor.from_list(uptrend_candles)
        assert Indicators.atr(df, 14).iloc[-1] > 0

    def test_volume_ratio_against_prior_bars(self, uptrend_candles):
        df = CandleProcessor.from_list(uptrend_candles)
        assert Indicators.volume_ratio(df['volume'], 20) == pytest.approx(2.0)
        assert Indicators.volume_ratio(pd.Series([5.0]), 20) == 1.0

    def test_fibonacci_levels(self):
        levels = Indicators.fibonacci_levels(200.0, 100.0)
        assert levels[0.0] == 200.0
        assert levels[0.5] == 150.0
        assert levels[1.0] == 100.0

    def test_support_resistance_excludes_current_bar(self):
        candles = build_candles([10.0] * 21 + [50.0], spread=0.0)
        df = CandleProcessor.from_list(candles)
        supports, resistances = Indicators.support_resistance(df, period=20)
        assert supports == [10.0]
        assert resistances == [10.0]
