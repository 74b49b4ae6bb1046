"""
Pytest configuration file.
Adds project root to Python path to allow imports from main package,
and provides shared fixtures (candle builders, fake clock, fake sleep).
"""

import sys
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

# Add project root to sys.path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from data.candles import Candle  # noqa: E402


HOUR_MS = 3_600_000


def build_candles(closes: Sequence[float], volumes: Optional[Sequence[float]] = None,
                  spread: float = 0.005, start_ms: int = 1_700_000_000_000) -> List[Candle]:
    """Candles whose open is the previous close and high/low bracket open/close by `spread`."""
    candles = []
    previous = closes[0]
    for i, close in enumerate(closes):
        open_ = previous
        high = max(open_, close) * (1 + spread)
        low = min(open_, close) * (1 - spread)
        volume = volumes[i] if volumes is not None else 100.0
        candles.append(Candle(start_ms + i * HOUR_MS, open_, high, low, close, volume))
        previous = close
    return candles


def trending_closes(count: int = 60, start: float = 100.0, step: float = 1.0) -> List[float]:
    return [start + step * i for i in range(count)]


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Async sleep that records delays and advances an optional clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def uptrend_candles():
    """60 steadily rising bars with rising volume on the last bar."""
    closes = trending_closes(60, 100.0, 1.0)
    volumes = [100.0] * 59 + [200.0]
    return build_candles(closes, volumes)


@pytest.fixture
def downtrend_candles():
    closes = trending_closes(60, 200.0, -1.0)
    volumes = [100.0] * 59 + [200.0]
    return build_candles(closes, volumes)


def build_paper_engine(overrides=None, balances=None, logger_manager=None):
    """TradingEngine on an offline paper gateway with a fresh event bus."""
    from core.config import EngineConfig, deep_merge
    from core.events import EventBus
    from core.trading_engine import TradingEngine
    from data.paper_exchange import PaperExchangeGateway

    config = EngineConfig.from_dict(deep_merge({'environment': 'test'}, overrides or {}))
    gateway = PaperExchangeGateway(initial_balances=balances or {'USDT': 100000.0})
    return TradingEngine.from_config(config, gateway, event_bus=EventBus(), logger_manager=logger_manager)
