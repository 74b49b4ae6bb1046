"""
candles.py - OHLCV Candle Model and Indicator Kernels

Normalizes raw exchange OHLCV rows into Candle objects / DataFrames and
provides the pure indicator math used by the technical analysis engine.
No trading decisions are made here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


logger = logging.getLogger(__name__)

OHLCV_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']

DEFAULT_FIBONACCI_LEVELS = (0.0, 0.236, 0.382, 0.5, 0.618, 0.786, 1.0)


@dataclass(frozen=True)
class Candle:
    """
    Single OHLCV bar.

    Attributes:
        timestamp: Open time in epoch milliseconds
        open/high/low/close: Prices
        volume: Base-asset volume
    """
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_row(cls, row: Any) -> "Candle":
        """Build from a ccxt-style list [ts, o, h, l, c, v] or a dict."""
        if isinstance(row, Candle):
            return row
        if isinstance(row, dict):
            return cls(
                timestamp=int(row['timestamp']),
                open=float(row['open']),
                high=float(row['high']),
                low=float(row['low']),
                close=float(row['close']),
                volume=float(row.get('volume', 0.0)),
            )
        ts, o, h, l, c, v = row[:6]
        return cls(int(ts), float(o), float(h), float(l), float(c), float(v or 0.0))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


class CandleProcessor:
    """
    Stateless processor for OHLCV candle data.

    Converts candles into clean, time-ordered DataFrames.
    """

    @staticmethod
    def from_list(raw_data: Sequence[Any]) -> pd.DataFrame:
        """
        Convert candles to a DataFrame.

        Args:
            raw_data: Candle objects, dicts, or [timestamp, open, high, low, close, volume] rows

        Returns:
            DataFrame with standard OHLCV columns (timestamp in epoch ms)
        """
        if not raw_data:
            return pd.DataFrame(columns=OHLCV_COLUMNS)

        rows = [Candle.from_row(r).to_dict() for r in raw_data]
        df = pd.DataFrame(rows, columns=OHLCV_COLUMNS)
        for col in OHLCV_COLUMNS[1:]:
            df[col] = pd.to_numeric(df[col], errors='coerce')
        return df

    @staticmethod
    def clean(df: pd.DataFrame, validate_ohlc: bool = True) -> pd.DataFrame:
        """
        Sort by time, drop duplicate timestamps, nulls and inconsistent bars.

        Args:
            df: Input DataFrame
            validate_ohlc: Drop rows whose high/low do not bound open/close

        Returns:
            Cleaned DataFrame
        """
        if df.empty:
            return df

        original_len = len(df)
        df = df.sort_values('timestamp', kind='mergesort').drop_duplicates(subset=['timestamp'], keep='last').dropna()

        if validate_ohlc:
            valid_mask = (
                (df['high'] >= df['low']) &
                (df['high'] >= df['open']) &
                (df['high'] >= df['close']) &
                (df['low'] <= df['open']) &
                (df['low'] <= df['close'])
            )
            df = df[valid_mask]

        removed = original_len - len(df)
        if removed > 0:
            logger.debug(f"Cleaned {removed} rows from candle frame")

        return df.reset_index(drop=True)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


class Indicators:
    """
    Technical indicator calculations.

    All methods are static and stateless transformations of price/volume data.
    """

    @staticmethod
    def sma(series: pd.Series, period: int, min_periods: Optional[int] = None) -> pd.Series:
        """Simple Moving Average."""
        return series.rolling(window=period, min_periods=min_periods or period).mean()

    @staticmethod
    def ema(series: pd.Series, period: int) -> pd.Series:
        """Exponential Moving Average (seeded with the first value)."""
        return series.ewm(span=period, adjust=False, min_periods=1).mean()

    @staticmethod
    def rsi(series: pd.Series, period: int = 14) -> pd.Series:
        """
        Relative Strength Index with Wilder smoothing.

        The first average is the simple mean of the first `period` changes;
        later averages use avg = (prev * (period - 1) + current) / period.

        Args:
            series: Price series
            period: RSI period (default 14)

        Returns:
            RSI series in [0, 100]; NaN until period + 1 prices are available.
            A window with no losses reads 100, a flat window reads 50.
        """
        values = series.to_numpy(dtype=float)
        out = np.full(len(values), np.nan)
        if len(values) <= period:
            return pd.Series(out, index=series.index)

        delta = np.diff(values)
        gains = np.clip(delta, 0, None)
        losses = np.clip(-delta, 0, None)

        avg_gain = gains[:period].mean()
        avg_loss = losses[:period].mean()
        out[period] = _rsi_value(avg_gain, avg_loss)

        for i in range(period + 1, len(values)):
            avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
            out[i] = _rsi_value(avg_gain, avg_loss)

        return pd.Series(out, index=series.index)

    @staticmethod
    def macd(series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.DataFrame:
        """
        Moving Average Convergence Divergence.

        Returns:
            DataFrame with macd, signal, and histogram columns
        """
        macd_line = Indicators.ema(series, fast) - Indicators.ema(series, slow)
        signal_line = Indicators.ema(macd_line, signal)
        return pd.DataFrame({
            'macd': macd_line,
            'signal': signal_line,
            'histogram': macd_line - signal_line,
        })

    @staticmethod
    def bollinger_bands(series: pd.Series, period: int = 20, std_dev: float = 2.0) -> pd.DataFrame:
        """
        Bollinger Bands.

        Returns:
            DataFrame with bb_upper, bb_middle, bb_lower columns
        """
        middle = Indicators.sma(series, period)
        std = series.rolling(window=period).std(ddof=0)
        return pd.DataFrame({
            'bb_upper': middle + (std * std_dev),
            'bb_middle': middle,
            'bb_lower': middle - (std * std_dev),
        })

    @staticmethod
    def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
        """Average True Range with Wilder smoothing."""
        high_low = df['high'] - df['low']
        high_close = np.abs(df['high'] - df['close'].shift())
        low_close = np.abs(df['low'] - df['close'].shift())

        true_range = pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)
        return true_range.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()

    @staticmethod
    def stochastic(df: pd.DataFrame, period: int = 14, smooth_k: int = 1, smooth_d: int = 3) -> pd.DataFrame:
        """
        Stochastic Oscillator.

        Returns:
            DataFrame with stoch_k and stoch_d columns (0-100). A flat range reads 50.
        """
        low_min = df['low'].rolling(window=period).min()
        high_max = df['high'].rolling(window=period).max()
        price_range = (high_max - low_min).replace(0, np.nan)

        k = (100 * (df['close'] - low_min) / price_range).where(price_range.notna() | low_min.isna(), 50.0)
        if smooth_k > 1:
            k = k.rolling(window=smooth_k).mean()
        d = k.rolling(window=smooth_d).mean()
        return pd.DataFrame({'stoch_k': k, 'stoch_d': d})

    @staticmethod
    def williams_r(df: pd.DataFrame, period: int = 14) -> pd.Series:
        """Williams %R in [-100, 0]. A flat range reads -50."""
        high_max = df['high'].rolling(window=period).max()
        low_min = df['low'].rolling(window=period).min()
        price_range = (high_max - low_min).replace(0, np.nan)
        wr = -100 * (high_max - df['close']) / price_range
        return wr.where(price_range.notna() | high_max.isna(), -50.0)

    @staticmethod
    def volume_ratio(volume: pd.Series, period: int = 20) -> float:
        """Ratio of the latest volume to the average of the preceding `period` bars."""
        if len(volume) < 2:
            return 1.0
        prior = volume.iloc[-(period + 1):-1]
        average = float(prior.mean())
        if average <= 0:
            return 1.0
        return float(volume.iloc[-1]) / average

    @staticmethod
    def fibonacci_levels(high: float, low: float,
                         levels: Sequence[float] = DEFAULT_FIBONACCI_LEVELS) -> Dict[float, float]:
        """Retracement prices measured down from high, keyed by level."""
        price_range = high - low
        return {level: high - price_range * level for level in levels}

    @staticmethod
    def support_resistance(df: pd.DataFrame, period: int = 20, count: int = 3) -> Tuple[List[float], List[float]]:
        """
        Naive support/resistance from the prior window (current bar excluded).

        Returns:
            (supports ascending from the lowest low, resistances descending from the highest high),
            each holding up to `count` distinct values
        """
        window = df.iloc[-(period + 1):-1]
        supports = sorted(set(window['low'].tolist()))[:count]
        resistances = sorted(set(window['high'].tolist()), reverse=True)[:count]
        return supports, resistances
