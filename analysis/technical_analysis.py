"""
technical_analysis.py - Technical Analysis Engine

Computes indicators from an OHLCV candle series and combines them by
signal counting: every indicator casts a bullish or bearish vote against
the current price. Trend is the majority, strength comes from a weighted
extremity score and confidence is boosted per corroborating indicator.
Buy/sell signals need at least two votes in their favour.

The latest analysis per symbol is the value the decision engine reads.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence

import pandas as pd

from core.errors import InsufficientDataError, ValidationError
from core.events import TECHNICAL_ANALYZED
from data.candles import CandleProcessor, Indicators


logger = logging.getLogger(__name__)


class Trend(Enum):
    """Majority direction of indicator votes."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class Strength(Enum):
    """Extremity of the current reading."""
    WEAK = "WEAK"
    MODERATE = "MODERATE"
    STRONG = "STRONG"


class Signal(Enum):
    """Technical trade signal."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class VolumeTrend(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass
class TechnicalAnalysis:
    """
    Technical snapshot for one symbol.

    Attributes:
        score: Signed score in [-1, 1]; +confidence for BUY, -confidence for SELL, 0 for HOLD
        indicators: Latest indicator readings (JSON-friendly)
        reasoning: Contributing observations joined by ". "
        timestamp: Close time of the latest candle (epoch seconds)
    """
    symbol: str
    price: float
    trend: Trend
    strength: Strength
    confidence: float
    signal: Signal
    score: float
    bullish_votes: int
    bearish_votes: int
    indicators: Dict[str, Any]
    reasoning: str
    timestamp: float
    analyzed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'price': self.price,
            'trend': self.trend.value,
            'strength': self.strength.value,
            'confidence': self.confidence,
            'signal': self.signal.value,
            'score': self.score,
            'bullish_votes': self.bullish_votes,
            'bearish_votes': self.bearish_votes,
            'indicators': dict(self.indicators),
            'reasoning': self.reasoning,
            'timestamp': self.timestamp,
            'analyzed_at': self.analyzed_at,
        }

    def __repr__(self) -> str:
        return (f"TechnicalAnalysis({self.symbol}, {self.signal.value}, trend={self.trend.value}, "
                f"confidence={self.confidence:.2f})")


def _last(series: pd.Series) -> Optional[float]:
    if series is None or len(series) == 0:
        return None
    value = series.iloc[-1]
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def classify_volume(ratio: float, increasing: float = 1.2, decreasing: float = 0.8) -> VolumeTrend:
    if ratio > increasing:
        return VolumeTrend.INCREASING
    if ratio < decreasing:
        return VolumeTrend.DECREASING
    return VolumeTrend.STABLE


class TechnicalAnalysisEngine:
    """
    Indicator computation and vote counting.

    Thread-safe: snapshots and histories are guarded by a lock, indicator
    math runs outside it.
    """

    def __init__(
        self,
        rsi_period: int = 14,
        rsi_overbought: float = 70,
        rsi_oversold: float = 30,
        sma_period: int = 20,
        ema_period: int = 20,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        bollinger_period: int = 20,
        bollinger_std: float = 2.0,
        stochastic_period: int = 14,
        williams_period: int = 14,
        atr_period: int = 14,
        volume_period: int = 20,
        support_resistance_period: int = 20,
        history_size: int = 100,
        event_bus=None,
    ):
        if macd_fast >= macd_slow:
            raise ValueError(f"macd_fast ({macd_fast}) must be < macd_slow ({macd_slow})")
        if not 0 < rsi_oversold < rsi_overbought < 100:
            raise ValueError("require 0 < rsi_oversold < rsi_overbought < 100")

        self.rsi_period = rsi_period
        self.rsi_overbought = rsi_overbought
        self.rsi_oversold = rsi_oversold
        self.sma_period = sma_period
        self.ema_period = ema_period
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.bollinger_period = bollinger_period
        self.bollinger_std = bollinger_std
        self.stochastic_period = stochastic_period
        self.williams_period = williams_period
        self.atr_period = atr_period
        self.volume_period = volume_period
        self.support_resistance_period = support_resistance_period
        self.history_size = history_size
        self.event_bus = event_bus

        self._lock = threading.RLock()
        self._latest: Dict[str, TechnicalAnalysis] = {}
        self._history: Dict[str, Deque[TechnicalAnalysis]] = {}

        logger.info(f"TechnicalAnalysisEngine initialized: required lookback {self.required_lookback} candles")

    @classmethod
    def from_config(cls, technical: Dict[str, Any], event_bus=None) -> "TechnicalAnalysisEngine":
        keys = ('rsi_period', 'rsi_overbought', 'rsi_oversold', 'sma_period', 'ema_period',
                'macd_fast', 'macd_slow', 'macd_signal', 'bollinger_period', 'bollinger_std',
                'stochastic_period', 'williams_period', 'atr_period', 'volume_period',
                'support_resistance_period', 'history_size')
        return cls(**{k: technical[k] for k in keys if k in technical}, event_bus=event_bus)

    @property
    def required_lookback(self) -> int:
        """Largest candle count any enabled indicator needs."""
        return max(
            self.rsi_period + 1,
            self.sma_period,
            self.ema_period,
            self.macd_slow + self.macd_signal,
            self.bollinger_period,
            self.stochastic_period + 2,
            self.williams_period,
            self.atr_period + 1,
            self.volume_period + 1,
            self.support_resistance_period + 1,
        )

    def analyze(self, symbol: str, candles: Sequence[Any]) -> TechnicalAnalysis:
        """
        Analyze a candle series and store the result as the symbol's latest snapshot.

        Args:
            symbol: Trading pair
            candles: Candles ordered oldest to newest

        Returns:
            TechnicalAnalysis

        Raises:
            InsufficientDataError: Fewer usable candles than required_lookback
            ValidationError: Candles cannot be parsed
        """
        try:
            df = CandleProcessor.clean(CandleProcessor.from_list(candles))
        except (TypeError, ValueError, KeyError) as e:
            raise ValidationError(f"Invalid candle data for {symbol}", reasons=[str(e)]) from e

        required = self.required_lookback
        if len(df) < required:
            raise InsufficientDataError(required=required, available=len(df), symbol=symbol)

        indicators = self._compute_indicators(df)
        analysis = self._interpret(symbol, df, indicators)

        with self._lock:
            self._latest[symbol] = analysis
            self._history.setdefault(symbol, deque(maxlen=self.history_size)).append(analysis)

        logger.info(
            f"Technical analysis {symbol}: {analysis.signal.value} trend={analysis.trend.value} "
            f"strength={analysis.strength.value} confidence={analysis.confidence:.2f}"
        )
        if self.event_bus is not None:
            self.event_bus.emit(TECHNICAL_ANALYZED, analysis.to_dict())
        return analysis

    # -----------------------
    # Indicators
    # -----------------------

    def _compute_indicators(self, df: pd.DataFrame) -> Dict[str, Any]:
        close = df['close']
        macd = Indicators.macd(close, self.macd_fast, self.macd_slow, self.macd_signal)
        bands = Indicators.bollinger_bands(close, self.bollinger_period, self.bollinger_std)
        stoch = Indicators.stochastic(df, self.stochastic_period)
        volume_ratio = Indicators.volume_ratio(df['volume'], self.volume_period)

        lookback = df.iloc[-self.support_resistance_period:]
        high, low = float(lookback['high'].max()), float(lookback['low'].min())
        fibonacci = Indicators.fibonacci_levels(high, low)
        supports, resistances = Indicators.support_resistance(df, self.support_resistance_period)

        return {
            'price': float(close.iloc[-1]),
            'rsi': _last(Indicators.rsi(close, self.rsi_period)),
            'sma': _last(Indicators.sma(close, self.sma_period)),
            'ema': _last(Indicators.ema(close, self.ema_period)),
            'macd': _last(macd['macd']),
            'macd_signal': _last(macd['signal']),
            'macd_histogram': _last(macd['histogram']),
            'bb_upper': _last(bands['bb_upper']),
            'bb_middle': _last(bands['bb_middle']),
            'bb_lower': _last(bands['bb_lower']),
            'stoch_k': _last(stoch['stoch_k']),
            'stoch_d': _last(stoch['stoch_d']),
            'williams_r': _last(Indicators.williams_r(df, self.williams_period)),
            'atr': _last(Indicators.atr(df, self.atr_period)),
            'volume_ratio': volume_ratio,
            'volume_trend': classify_volume(volume_ratio).value,
            'fibonacci': {str(level): value for level, value in fibonacci.items()},
            'support': supports,
            'resistance': resistances,
        }

    # -----------------------
    # Interpretation
    # -----------------------

    def _interpret(self, symbol: str, df: pd.DataFrame, ind: Dict[str, Any]) -> TechnicalAnalysis:
        price = ind['price']
        bull = bear = 0
        reasons: List[str] = []

        rsi = ind['rsi']
        if rsi is not None:
            if rsi < self.rsi_oversold:
                bull += 1
                reasons.append(f"RSI oversold at {rsi:.1f}")
            elif rsi > self.rsi_overbought:
                bear += 1
                reasons.append(f"RSI overbought at {rsi:.1f}")

        sma_direction = 0
        if ind['sma'] is not None:
            sma_direction = 1 if price > ind['sma'] else -1 if price < ind['sma'] else 0
            if sma_direction > 0:
                bull += 1
                reasons.append("Price above SMA")
            elif sma_direction < 0:
                bear += 1
                reasons.append("Price below SMA")

        if ind['ema'] is not None:
            if price > ind['ema']:
                bull += 1
                reasons.append("Price above EMA")
            elif price < ind['ema']:
                bear += 1
                reasons.append("Price below EMA")

        histogram = ind['macd_histogram']
        if histogram is not None:
            if histogram > 0:
                bull += 1
                reasons.append("MACD histogram positive")
            elif histogram < 0:
                bear += 1
                reasons.append("MACD histogram negative")

        if ind['bb_lower'] is not None and price < ind['bb_lower']:
            bull += 1
            reasons.append("Price below lower Bollinger band")
        elif ind['bb_upper'] is not None and price > ind['bb_upper']:
            bear += 1
            reasons.append("Price above upper Bollinger band")

        stoch_k = ind['stoch_k']
        if stoch_k is not None:
            if stoch_k < 20:
                bull += 1
                reasons.append(f"Stochastic oversold at {stoch_k:.1f}")
            elif stoch_k > 80:
                bear += 1
                reasons.append(f"Stochastic overbought at {stoch_k:.1f}")

        williams = ind['williams_r']
        if williams is not None:
            if williams < -80:
                bull += 1
                reasons.append(f"Williams %R oversold at {williams:.1f}")
            elif williams > -20:
                bear += 1
                reasons.append(f"Williams %R overbought at {williams:.1f}")

        if ind['resistance'] and price > ind['resistance'][0]:
            bull += 1
            reasons.append(f"Breakout above resistance {ind['resistance'][0]:.4f}")
        elif ind['support'] and price < ind['support'][0]:
            bear += 1
            reasons.append(f"Breakdown below support {ind['support'][0]:.4f}")

        if ind['volume_trend'] == VolumeTrend.INCREASING.value and sma_direction:
            if sma_direction > 0:
                bull += 1
            else:
                bear += 1
            reasons.append(f"Volume increasing ({ind['volume_ratio']:.2f}x average)")

        if bull > bear:
            trend = Trend.BULLISH
        elif bear > bull:
            trend = Trend.BEARISH
        else:
            trend = Trend.NEUTRAL

        strength = self._strength(ind)
        confidence = self._confidence(ind, price)

        if bull > bear and bull >= 2:
            signal = Signal.BUY
            score = confidence
        elif bear > bull and bear >= 2:
            signal = Signal.SELL
            score = -confidence
        else:
            signal = Signal.HOLD
            score = 0.0

        if not reasons:
            reasons.append("No indicator signals")

        return TechnicalAnalysis(
            symbol=symbol,
            price=price,
            trend=trend,
            strength=strength,
            confidence=confidence,
            signal=signal,
            score=score,
            bullish_votes=bull,
            bearish_votes=bear,
            indicators=ind,
            reasoning=". ".join(reasons),
            timestamp=float(df['timestamp'].iloc[-1]) / 1000.0,
        )

    def _strength(self, ind: Dict[str, Any]) -> Strength:
        score = 0
        rsi = ind['rsi']
        if rsi is not None:
            if rsi < 20 or rsi > 80:
                score += 2
            elif rsi < 30 or rsi > 70:
                score += 1
        if ind['volume_ratio'] > 1.5:
            score += 2
        elif ind['volume_ratio'] > 1.2:
            score += 1
        if ind['macd_histogram'] is not None and abs(ind['macd_histogram']) > 0.5:
            score += 1

        if score >= 4:
            return Strength.STRONG
        if score >= 2:
            return Strength.MODERATE
        return Strength.WEAK

    def _confidence(self, ind: Dict[str, Any], price: float) -> float:
        """0.5 plus 0.1 per indicator at an actionable reading, capped at 1.0."""
        corroborating = 0
        rsi = ind['rsi']
        if rsi is not None and (rsi < self.rsi_oversold or rsi > self.rsi_overbought):
            corroborating += 1
        if ind['volume_ratio'] > 1.2:
            corroborating += 1
        if ind['macd_histogram'] is not None and abs(ind['macd_histogram']) > 0.3:
            corroborating += 1
        if ind['bb_lower'] is not None and ind['bb_upper'] is not None:
            if price < ind['bb_lower'] or price > ind['bb_upper']:
                corroborating += 1
        if ind['stoch_k'] is not None and (ind['stoch_k'] < 20 or ind['stoch_k'] > 80):
            corroborating += 1
        if ind['williams_r'] is not None and (ind['williams_r'] < -80 or ind['williams_r'] > -20):
            corroborating += 1
        return min(1.0, 0.5 + 0.1 * corroborating)

    # -----------------------
    # Snapshots
    # -----------------------

    def get_latest(self, symbol: str) -> Optional[TechnicalAnalysis]:
        with self._lock:
            return self._latest.get(symbol)

    def get_history(self, symbol: str, limit: Optional[int] = None) -> List[TechnicalAnalysis]:
        """Stored analyses for symbol, oldest first."""
        with self._lock:
            items = list(self._history.get(symbol, []))
        return items if limit is None else items[-limit:]

    def clear(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._latest.clear()
                self._history.clear()
            else:
                self._latest.pop(symbol, None)
                self._history.pop(symbol, None)
