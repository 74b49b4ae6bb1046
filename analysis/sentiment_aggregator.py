"""
sentiment_aggregator.py - Sentiment Aggregation Engine

Consumes externally pushed sentiment observations for registered symbols,
classifies them into news / social / market by source name, and blends
the categories into one score per symbol:

    category score   = sum(sentiment * confidence) / sum(confidence)
    blend weight     = base weight (0.4 / 0.3 / 0.3) * category confidence
    overall score    = sum(weight * score) / sum(weight)
    confidence       = mean confidence of all retained observations

Aggregation is scheduled on the running event loop whenever new data
arrives, so ingestion never waits for it.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from analysis.technical_analysis import Strength, Trend
from core.errors import ValidationError
from core.events import SENTIMENT_ANALYZED


logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = {
    'news': ('news', 'article', 'api'),
    'social': ('social', 'twitter', 'reddit'),
    'market': ('market', 'vix', 'fear'),
}

DEFAULT_WEIGHTS = {'news': 0.4, 'social': 0.3, 'market': 0.3}


def classify_source(source: str) -> List[str]:
    """Categories whose keywords appear in the source name (may be several or none)."""
    name = source.lower()
    return [category for category, words in CATEGORY_KEYWORDS.items() if any(w in name for w in words)]


@dataclass
class SentimentObservation:
    """One pushed sentiment reading."""
    symbol: str
    source: str
    sentiment: float
    confidence: float
    timestamp: float = field(default_factory=time.time)
    text: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Raises:
            ValidationError: Listing every malformed field
        """
        reasons = []
        if not self.symbol or not isinstance(self.symbol, str):
            reasons.append("symbol is required")
        if not self.source or not isinstance(self.source, str):
            reasons.append("source is required")
        if not isinstance(self.sentiment, (int, float)) or not -1 <= self.sentiment <= 1:
            reasons.append(f"sentiment must be in [-1, 1], got {self.sentiment!r}")
        if not isinstance(self.confidence, (int, float)) or not 0 <= self.confidence <= 1:
            reasons.append(f"confidence must be in [0, 1], got {self.confidence!r}")
        if reasons:
            raise ValidationError("Malformed sentiment observation", reasons=reasons)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'source': self.source,
            'sentiment': self.sentiment,
            'confidence': self.confidence,
            'timestamp': self.timestamp,
            'text': self.text,
            'url': self.url,
            'metadata': dict(self.metadata),
        }


@dataclass
class CategorySentiment:
    score: float = 0.0
    confidence: float = 0.0
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'score': self.score, 'confidence': self.confidence, 'count': self.count}


@dataclass
class SentimentAnalysis:
    """
    Aggregated sentiment snapshot for one symbol.

    Attributes:
        score: Blended sentiment in [-1, 1]
        confidence: Mean observation confidence
        categories: Per-category breakdown (news, social, market)
        timestamp: Time of the newest observation included
    """
    symbol: str
    score: float
    confidence: float
    trend: Trend
    strength: Strength
    categories: Dict[str, CategorySentiment]
    observation_count: int
    reasoning: str
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'score': self.score,
            'confidence': self.confidence,
            'trend': self.trend.value,
            'strength': self.strength.value,
            'categories': {k: v.to_dict() for k, v in self.categories.items()},
            'observation_count': self.observation_count,
            'reasoning': self.reasoning,
            'timestamp': self.timestamp,
        }


@dataclass
class IngestResult:
    accepted: bool
    symbol: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'accepted': self.accepted, 'symbol': self.symbol, 'message': self.message}


class SentimentAggregator:
    """
    Per-symbol sentiment aggregation.

    Thread-safe; observations, snapshots and histories share one lock.
    """

    def __init__(
        self,
        bullish_threshold: float = 0.2,
        bearish_threshold: float = -0.2,
        strong_threshold: float = 0.6,
        moderate_threshold: float = 0.3,
        weights: Optional[Dict[str, float]] = None,
        history_size: int = 100,
        retention_hours: float = 24,
        max_observations: int = 500,
        event_bus=None,
        clock: Callable[[], float] = time.time,
    ):
        if not bearish_threshold < 0 < bullish_threshold:
            raise ValueError("require bearish_threshold < 0 < bullish_threshold")
        if not 0 < moderate_threshold < strong_threshold <= 1:
            raise ValueError("require 0 < moderate_threshold < strong_threshold <= 1")

        self.bullish_threshold = bullish_threshold
        self.bearish_threshold = bearish_threshold
        self.strong_threshold = strong_threshold
        self.moderate_threshold = moderate_threshold
        self.weights = dict(DEFAULT_WEIGHTS)
        self.weights.update(weights or {})
        self.history_size = history_size
        self.retention_seconds = retention_hours * 3600
        self.max_observations = max_observations
        self.event_bus = event_bus
        self._clock = clock

        self._lock = threading.RLock()
        self._tracked: Set[str] = set()
        self._observations: Dict[str, Deque[SentimentObservation]] = {}
        self._latest: Dict[str, SentimentAnalysis] = {}
        self._history: Dict[str, Deque[SentimentAnalysis]] = {}
        self._scheduled: Set[str] = set()

        self.stats = {'accepted': 0, 'rejected': 0, 'aggregations': 0}

    @classmethod
    def from_config(cls, sentiment: Dict[str, Any], event_bus=None) -> "SentimentAggregator":
        keys = ('bullish_threshold', 'bearish_threshold', 'strong_threshold', 'moderate_threshold',
                'weights', 'history_size', 'retention_hours', 'max_observations')
        return cls(**{k: sentiment[k] for k in keys if k in sentiment}, event_bus=event_bus)

    # -----------------------
    # Tracking
    # -----------------------

    def register_symbol(self, symbol: str) -> None:
        with self._lock:
            if symbol not in self._tracked:
                self._tracked.add(symbol)
                self._observations.setdefault(symbol, deque(maxlen=self.max_observations))
                logger.info(f"Tracking sentiment for {symbol}")

    def unregister_symbol(self, symbol: str) -> None:
        with self._lock:
            self._tracked.discard(symbol)
            self._observations.pop(symbol, None)
            self._scheduled.discard(symbol)
        logger.info(f"Stopped tracking sentiment for {symbol}")

    def tracked_symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._tracked)

    def is_tracked(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._tracked

    # -----------------------
    # Ingestion
    # -----------------------

    def ingest(self, observation: SentimentObservation) -> IngestResult:
        """
        Accept one observation and schedule aggregation.

        Args:
            observation: Pushed reading

        Returns:
            IngestResult; accepted=False for untracked symbols

        Raises:
            ValidationError: Malformed observation
        """
        observation.validate()
        symbol = observation.symbol

        with self._lock:
            if symbol not in self._tracked:
                self.stats['rejected'] += 1
                logger.warning(f"Received sentiment for untracked symbol: {symbol}")
                return IngestResult(False, symbol, f"Symbol {symbol} is not tracked")
            self._observations[symbol].append(observation)
            self._prune(symbol)
            self.stats['accepted'] += 1

        logger.debug(f"Received sentiment for {symbol}: {observation.sentiment:+.3f} ({observation.source})")
        self._schedule(symbol)
        return IngestResult(True, symbol, "Sentiment data received")

    def _schedule(self, symbol: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.aggregate(symbol)
            return
        with self._lock:
            if symbol in self._scheduled:
                return
            self._scheduled.add(symbol)
        loop.call_soon(self._run_scheduled, symbol)

    def _run_scheduled(self, symbol: str) -> None:
        with self._lock:
            self._scheduled.discard(symbol)
            if symbol not in self._tracked:
                return
        try:
            self.aggregate(symbol)
        except Exception as e:
            logger.error(f"Sentiment aggregation failed for {symbol}: {e}", exc_info=True)

    def _prune(self, symbol: str) -> None:
        """Caller holds the lock."""
        cutoff = self._clock() - self.retention_seconds
        observations = self._observations[symbol]
        while observations and observations[0].timestamp < cutoff:
            observations.popleft()

    # -----------------------
    # Aggregation
    # -----------------------

    def aggregate(self, symbol: str) -> SentimentAnalysis:
        """
        Recompute and store the snapshot for symbol.

        Re-aggregating an unchanged observation set yields an identical
        snapshot and does not grow the history.
        """
        with self._lock:
            observations = list(self._observations.get(symbol, []))

        analysis = self._build(symbol, observations)

        with self._lock:
            previous = self._latest.get(symbol)
            if previous == analysis:
                return previous
            self._latest[symbol] = analysis
            self._history.setdefault(symbol, deque(maxlen=self.history_size)).append(analysis)
            self.stats['aggregations'] += 1

        logger.info(
            f"Sentiment {symbol}: {analysis.trend.value} ({analysis.strength.value}) "
            f"score={analysis.score:+.3f} confidence={analysis.confidence:.2f}"
        )
        if self.event_bus is not None:
            self.event_bus.emit(SENTIMENT_ANALYZED, analysis.to_dict())
        return analysis

    def _build(self, symbol: str, observations: List[SentimentObservation]) -> SentimentAnalysis:
        if not observations:
            return self.neutral(symbol)

        categories: Dict[str, CategorySentiment] = {}
        for category in CATEGORY_KEYWORDS:
            members = [o for o in observations if category in classify_source(o.source)]
            categories[category] = self._category(members)

        total_weight = 0.0
        weighted = 0.0
        for category, data in categories.items():
            weight = self.weights.get(category, 0.0) * data.confidence
            weighted += data.score * weight
            total_weight += weight
        score = weighted / total_weight if total_weight > 0 else 0.0
        confidence = sum(o.confidence for o in observations) / len(observations)

        trend = self.trend_for(score)
        strength = self.strength_for(score)
        return SentimentAnalysis(
            symbol=symbol,
            score=score,
            confidence=confidence,
            trend=trend,
            strength=strength,
            categories=categories,
            observation_count=len(observations),
            reasoning=self._reasoning(score, trend, strength, categories),
            timestamp=max(o.timestamp for o in observations),
        )

    @staticmethod
    def _category(members: List[SentimentObservation]) -> CategorySentiment:
        if not members:
            return CategorySentiment()
        total_conf = sum(o.confidence for o in members)
        score = sum(o.sentiment * o.confidence for o in members) / total_conf if total_conf > 0 else 0.0
        return CategorySentiment(score=score, confidence=total_conf / len(members), count=len(members))

    def trend_for(self, score: float) -> Trend:
        if score > self.bullish_threshold:
            return Trend.BULLISH
        if score < self.bearish_threshold:
            return Trend.BEARISH
        return Trend.NEUTRAL

    def strength_for(self, score: float) -> Strength:
        magnitude = abs(score)
        if magnitude > self.strong_threshold:
            return Strength.STRONG
        if magnitude > self.moderate_threshold:
            return Strength.MODERATE
        return Strength.WEAK

    @staticmethod
    def _reasoning(score: float, trend: Trend, strength: Strength, categories: Dict[str, CategorySentiment]) -> str:
        parts = [f"Overall sentiment is {trend.value.lower()} ({strength.value.lower()}) with a score of {score:.3f}"]
        for category, data in categories.items():
            if data.confidence > 0.5:
                tone = 'positive' if data.score > 0 else 'negative'
                parts.append(f"{category.capitalize()} sentiment is {tone} ({data.score:.3f})")
        return ". ".join(parts)

    @staticmethod
    def neutral(symbol: str) -> SentimentAnalysis:
        """Zero-confidence neutral snapshot used when no data exists."""
        return SentimentAnalysis(
            symbol=symbol,
            score=0.0,
            confidence=0.0,
            trend=Trend.NEUTRAL,
            strength=Strength.WEAK,
            categories={c: CategorySentiment() for c in CATEGORY_KEYWORDS},
            observation_count=0,
            reasoning="No sentiment data available",
            timestamp=0.0,
        )

    # -----------------------
    # Snapshots
    # -----------------------

    def get_latest(self, symbol: str) -> Optional[SentimentAnalysis]:
        with self._lock:
            return self._latest.get(symbol)

    def get_history(self, symbol: str, limit: Optional[int] = None) -> List[SentimentAnalysis]:
        """Stored snapshots for symbol, oldest first."""
        with self._lock:
            items = list(self._history.get(symbol, []))
        return items if limit is None else items[-limit:]

    def get_observations(self, symbol: str) -> List[SentimentObservation]:
        with self._lock:
            return list(self._observations.get(symbol, []))

    def get_trend(self, symbol: str, hours: float = 24) -> Dict[str, Any]:
        """
        Direction of the snapshots within the last `hours`.

        Returns:
            Dict with average_score, direction (improving / declining / stable) and samples
        """
        cutoff = self._clock() - hours * 3600
        window = [a for a in self.get_history(symbol) if a.timestamp >= cutoff]
        if not window:
            return {'symbol': symbol, 'average_score': 0.0, 'direction': 'stable', 'samples': 0}

        change = window[-1].score - window[0].score
        if change > 0.1:
            direction = 'improving'
        elif change < -0.1:
            direction = 'declining'
        else:
            direction = 'stable'
        return {
            'symbol': symbol,
            'average_score': sum(a.score for a in window) / len(window),
            'direction': direction,
            'change': change,
            'samples': len(window),
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.stats,
                'tracked_symbols': len(self._tracked),
                'observations': sum(len(v) for v in self._observations.values()),
            }
