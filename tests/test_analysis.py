"""
test_analysis.py - Tests for technical analysis and sentiment aggregation
"""

import asyncio
from unittest.mock import Mock

import pytest

from analysis.sentiment_aggregator import SentimentAggregator, SentimentObservation, classify_source
from analysis.technical_analysis import Signal, Strength, TechnicalAnalysisEngine, Trend
from core.errors import InsufficientDataError, ValidationError
from core.events import SENTIMENT_ANALYZED, TECHNICAL_ANALYZED
from conftest import build_candles


class TestTechnicalAnalysisEngine:
    """Test indicator voting on synthetic trends."""

    def test_required_lookback(self):
        assert TechnicalAnalysisEngine().required_lookback == 35

    def test_uptrend_is_buy(self, uptrend_candles):
        engine = TechnicalAnalysisEngine()
        analysis = engine.analyze('BTC/USDT', uptrend_candles)

        assert analysis.signal == Signal.BUY
        assert analysis.trend == Trend.BULLISH
        assert analysis.bullish_votes > analysis.bearish_votes
        assert 0.9 <= analysis.confidence <= 1.0
        assert analysis.score == analysis.confidence
        assert analysis.price == uptrend_candles[-1].close
        assert analysis.timestamp == uptrend_candles[-1].timestamp / 1000.0
        assert "Price above SMA" in analysis.reasoning
        assert analysis.indicators['volume_trend'] == "increasing"

    def test_downtrend_is_sell(self, downtrend_candles):
        analysis = TechnicalAnalysisEngine().analyze('ETH/USDT', downtrend_candles)
        assert analysis.signal == Signal.SELL
        assert analysis.trend == Trend.BEARISH
        assert analysis.score == -analysis.confidence

    def test_flat_market_holds(self):
        analysis = TechnicalAnalysisEngine().analyze('BTC/USDT', build_candles([100.0] * 60))
        assert analysis.signal == Signal.HOLD
        assert analysis.score == 0.0
        assert analysis.strength == Strength.WEAK

    def test_insufficient_data(self):
        with pytest.raises(InsufficientDataError) as exc_info:
            TechnicalAnalysisEngine().analyze('BTC/USDT', build_candles([100.0] * 20))
        assert exc_info.value.required == 35
        assert exc_info.value.available == 20

    def test_latest_history_and_event(self, uptrend_candles):
        bus = Mock()
        engine = TechnicalAnalysisEngine(history_size=2, event_bus=bus)
        for _ in range(3):
            engine.analyze('BTC/USDT', uptrend_candles)

        assert engine.get_latest('BTC/USDT') is engine.get_history('BTC/USDT')[-1]
        assert len(engine.get_history('BTC/USDT')) == 2
        assert bus.emit.call_args.args[0] == TECHNICAL_ANALYZED

        engine.clear('BTC/USDT')
        assert engine.get_latest('BTC/USDT') is None

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            TechnicalAnalysisEngine(macd_fast=26, macd_slow=12)
        with pytest.raises(ValueError):
            TechnicalAnalysisEngine(rsi_oversold=80, rsi_overbought=70)

    def test_from_config(self):
        engine = TechnicalAnalysisEngine.from_config({'rsi_period': 7, 'macd_slow': 20, 'macd_signal': 5})
        assert engine.rsi_period == 7
        assert engine.required_lookback == 25


def _obs(symbol, source, sentiment, confidence, timestamp):
    return SentimentObservation(symbol=symbol, source=source, sentiment=sentiment,
                                confidence=confidence, timestamp=timestamp)


class TestSentimentAggregator:
    """Test ingestion, category blending and snapshots."""

    @pytest.fixture
    def aggregator(self, clock):
        aggregator = SentimentAggregator(clock=clock)
        aggregator.register_symbol('BTC/USDT')
        return aggregator

    def test_classify_source(self):
        assert classify_source('NewsAPI') == ['news']
        assert classify_source('reddit') == ['social']
        assert classify_source('fear_greed') == ['market']
        assert classify_source('market-news') == ['news', 'market']
        assert classify_source('blog') == []

    def test_weighted_blend(self, aggregator, clock):
        aggregator.ingest(_obs('BTC/USDT', 'newsapi', 0.8, 0.9, clock()))
        aggregator.ingest(_obs('BTC/USDT', 'twitter', 0.4, 0.5, clock()))
        aggregator.ingest(_obs('BTC/USDT', 'fear_greed', -0.2, 1.0, clock()))

        analysis = aggregator.get_latest('BTC/USDT')
        assert analysis.score == pytest.approx(0.288 / 0.81)
        assert analysis.confidence == pytest.approx(0.8)
        assert analysis.trend == Trend.BULLISH
        assert analysis.strength == Strength.MODERATE
        assert analysis.categories['news'].count == 1
        assert analysis.observation_count == 3
        assert "News sentiment is positive" in analysis.reasoning

    def test_uncategorized_source_only_counts_for_confidence(self, aggregator, clock):
        aggregator.ingest(_obs('BTC/USDT', 'blog', 0.9, 0.6, clock()))
        analysis = aggregator.get_latest('BTC/USDT')
        assert analysis.score == 0.0
        assert analysis.confidence == pytest.approx(0.6)
        assert analysis.trend == Trend.NEUTRAL

    def test_untracked_symbol_rejected(self, aggregator, clock):
        result = aggregator.ingest(_obs('DOGE/USDT', 'twitter', 0.5, 0.5, clock()))
        assert not result.accepted
        assert aggregator.get_stats()['rejected'] == 1

    def test_malformed_observation(self, aggregator, clock):
        with pytest.raises(ValidationError) as exc_info:
            aggregator.ingest(_obs('BTC/USDT', 'twitter', 1.5, -0.1, clock()))
        assert len(exc_info.value.reasons) == 2

    def test_reaggregation_is_idempotent(self, aggregator, clock):
        aggregator.ingest(_obs('BTC/USDT', 'twitter', 0.5, 0.5, clock()))
        first = aggregator.get_latest('BTC/USDT')
        assert aggregator.aggregate('BTC/USDT') is first
        assert len(aggregator.get_history('BTC/USDT')) == 1

    def test_retention_prunes_old_observations(self, aggregator, clock):
        aggregator.ingest(_obs('BTC/USDT', 'twitter', 0.5, 0.5, clock()))
        clock.advance(25 * 3600)
        aggregator.ingest(_obs('BTC/USDT', 'twitter', -0.5, 0.5, clock()))
        assert len(aggregator.get_observations('BTC/USDT')) == 1
        assert aggregator.get_latest('BTC/USDT').score == pytest.approx(-0.5)

    def test_trend_direction(self, aggregator, clock):
        aggregator.ingest(_obs('BTC/USDT', 'twitter', -0.6, 1.0, clock()))
        clock.advance(60)
        aggregator.ingest(_obs('BTC/USDT', 'twitter', 0.9, 1.0, clock()))
        clock.advance(60)
        aggregator.ingest(_obs('BTC/USDT', 'twitter', 0.9, 1.0, clock()))

        trend = aggregator.get_trend('BTC/USDT')
        assert trend['direction'] == "improving"
        assert trend['samples'] == 3

    def test_neutral_when_no_data(self, aggregator):
        assert aggregator.get_latest('BTC/USDT') is None
        neutral = aggregator.neutral('BTC/USDT')
        assert neutral.confidence == 0.0
        assert aggregator.get_trend('BTC/USDT')['direction'] == "stable"

    @pytest.mark.asyncio
    async def test_aggregation_scheduled_once_per_burst(self, clock):
        bus = Mock()
        aggregator = SentimentAggregator(clock=clock, event_bus=bus)
        aggregator.register_symbol('ETH/USDT')
        for value in (0.1, 0.5, 0.9):
            assert aggregator.ingest(_obs('ETH/USDT', 'reddit', value, 1.0, clock())).accepted
        assert aggregator.get_latest('ETH/USDT') is None

        await asyncio.sleep(0)
        analysis = aggregator.get_latest('ETH/USDT')
        assert analysis.observation_count == 3
        assert analysis.score == pytest.approx(0.5)
        assert aggregator.get_stats()['aggregations'] == 1
        assert bus.emit.call_args.args[0] == SENTIMENT_ANALYZED

    def test_unregister(self, aggregator):
        aggregator.unregister_symbol('BTC/USDT')
        assert not aggregator.is_tracked('BTC/USDT')
        assert aggregator.tracked_symbols() == []
