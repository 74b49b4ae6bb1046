"""
decision_engine.py - Trade Decision Engine

Fuses the latest technical and sentiment snapshots with the current
position into a BUY / SELL / HOLD decision per (portfolio, symbol).

Per-key state machine:

    FLAT -> ENTERING -> OPEN -> EXITING -> FLAT

FLAT enters only when technical score and sentiment agree in sign and
both clear their entry thresholds. OPEN exits side-aware: a LONG exits on
bearish technical or sentiment beyond the exit threshold, a SHORT on the
bullish mirror. ENTERING / EXITING hold while an order is in flight.

Decisions are immutable and appended to an unbounded audit trail. Only
decisions at or above min_confidence are marked executable.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from analysis.sentiment_aggregator import SentimentAnalysis
from analysis.technical_analysis import TechnicalAnalysis
from core.events import DECISION_MADE
from portfolio.position_book import Position, PositionSide
from risk.position_sizing import PositionSizer


logger = logging.getLogger(__name__)


class TradeAction(Enum):
    """Decision actions."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PositionState(Enum):
    """Lifecycle state of a (portfolio, symbol) key."""
    FLAT = "FLAT"
    ENTERING = "ENTERING"
    OPEN = "OPEN"
    EXITING = "EXITING"


class DecisionIntent(Enum):
    ENTRY = "entry"
    EXIT = "exit"
    NONE = "none"


ALLOWED_TRANSITIONS = {
    PositionState.FLAT: {PositionState.ENTERING, PositionState.OPEN},
    PositionState.ENTERING: {PositionState.OPEN, PositionState.FLAT},
    PositionState.OPEN: {PositionState.EXITING, PositionState.FLAT},
    PositionState.EXITING: {PositionState.FLAT, PositionState.OPEN},
}


@dataclass(frozen=True)
class TradeDecision:
    """
    Immutable trade decision.

    Attributes:
        action: BUY, SELL or HOLD
        intent: Whether the action opens or closes a position
        confidence: Combined confidence in [0, 1]
        technical_score / sentiment_score: Inputs the decision was based on
        technical / sentiment: Snapshot dicts referenced at decision time
        quantity: Suggested quantity (sized entry, or the open quantity for exits)
        price: Reference price (latest close)
        executable: confidence >= min_confidence and action is not HOLD
    """
    symbol: str
    portfolio_id: str
    action: TradeAction
    intent: DecisionIntent
    confidence: float
    reasoning: str
    technical_score: float
    sentiment_score: float
    state: PositionState
    technical: Optional[Dict[str, Any]] = None
    sentiment: Optional[Dict[str, Any]] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    sizing_method: Optional[str] = None
    executable: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'symbol': self.symbol,
            'portfolio_id': self.portfolio_id,
            'action': self.action.value,
            'intent': self.intent.value,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'technical_score': self.technical_score,
            'sentiment_score': self.sentiment_score,
            'state': self.state.value,
            'technical': self.technical,
            'sentiment': self.sentiment,
            'quantity': self.quantity,
            'price': self.price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'sizing_method': self.sizing_method,
            'executable': self.executable,
            'timestamp': self.timestamp,
        }


class DecisionEngine:
    """
    Combines technical and sentiment signals into trade decisions.

    Args:
        min_confidence: Executable threshold
        sentiment_weight: Confidence contribution per unit |sentiment|
        technical_weight: Confidence contribution per unit |technical score|
        technical_entry_threshold: |technical| needed to enter
        sentiment_entry_threshold: |sentiment| needed to enter
        exit_threshold: |signal| against an open position that triggers an exit
        stop_loss_pct / take_profit_pct: Defaults for suggested protective levels
        sizer: Optional PositionSizer for entry quantities
        event_bus: Optional EventBus for decision.made notifications
    """

    def __init__(
        self,
        min_confidence: float = 0.7,
        sentiment_weight: float = 0.4,
        technical_weight: float = 0.6,
        technical_entry_threshold: float = 0.7,
        sentiment_entry_threshold: float = 0.3,
        exit_threshold: float = 0.5,
        stop_loss_pct: Optional[float] = 0.05,
        take_profit_pct: Optional[float] = 0.10,
        sizer: Optional[PositionSizer] = None,
        event_bus=None,
    ):
        if not 0 <= min_confidence <= 1:
            raise ValueError(f"min_confidence must be in [0, 1], got {min_confidence}")
        self.min_confidence = min_confidence
        self.sentiment_weight = sentiment_weight
        self.technical_weight = technical_weight
        self.technical_entry_threshold = technical_entry_threshold
        self.sentiment_entry_threshold = sentiment_entry_threshold
        self.exit_threshold = exit_threshold
        self.stop_loss_pct = stop_loss_pct
        self.take_profit_pct = take_profit_pct
        self.sizer = sizer
        self.event_bus = event_bus

        self._lock = threading.RLock()
        self._states: Dict[Tuple[str, str], PositionState] = {}
        self._decisions: List[TradeDecision] = []

    @classmethod
    def from_config(cls, decision: Dict[str, Any], sizer: Optional[PositionSizer] = None,
                    event_bus=None) -> "DecisionEngine":
        keys = ('min_confidence', 'sentiment_weight', 'technical_weight', 'technical_entry_threshold',
                'sentiment_entry_threshold', 'exit_threshold', 'stop_loss_pct', 'take_profit_pct')
        return cls(**{k: decision[k] for k in keys if k in decision}, sizer=sizer, event_bus=event_bus)

    # -----------------------
    # State machine
    # -----------------------

    def get_state(self, portfolio_id: str, symbol: str) -> PositionState:
        with self._lock:
            return self._states.get((portfolio_id, symbol), PositionState.FLAT)

    def _transition(self, portfolio_id: str, symbol: str, new_state: PositionState) -> bool:
        with self._lock:
            current = self._states.get((portfolio_id, symbol), PositionState.FLAT)
            if current == new_state:
                return True
            if new_state not in ALLOWED_TRANSITIONS[current]:
                logger.warning(f"Ignoring transition {current.value} -> {new_state.value} for {portfolio_id} {symbol}")
                return False
            self._states[(portfolio_id, symbol)] = new_state
        logger.debug(f"{portfolio_id} {symbol}: {current.value} -> {new_state.value}")
        return True

    def mark_entering(self, portfolio_id: str, symbol: str) -> bool:
        return self._transition(portfolio_id, symbol, PositionState.ENTERING)

    def mark_open(self, portfolio_id: str, symbol: str) -> bool:
        return self._transition(portfolio_id, symbol, PositionState.OPEN)

    def mark_exiting(self, portfolio_id: str, symbol: str) -> bool:
        return self._transition(portfolio_id, symbol, PositionState.EXITING)

    def mark_flat(self, portfolio_id: str, symbol: str) -> bool:
        return self._transition(portfolio_id, symbol, PositionState.FLAT)

    def reset(self, portfolio_id: Optional[str] = None) -> None:
        """Forget state for one portfolio, or for all."""
        with self._lock:
            if portfolio_id is None:
                self._states.clear()
            else:
                for key in [k for k in self._states if k[0] == portfolio_id]:
                    del self._states[key]

    # -----------------------
    # Decisions
    # -----------------------

    def combined_confidence(self, technical_score: float, sentiment_score: float) -> float:
        raw = 0.5 + abs(sentiment_score) * self.sentiment_weight + abs(technical_score) * self.technical_weight
        return max(0.0, min(1.0, raw))

    def decide(
        self,
        portfolio_id: str,
        symbol: str,
        technical: Optional[TechnicalAnalysis],
        sentiment: Optional[SentimentAnalysis],
        position: Optional[Position] = None,
        budget: Optional[float] = None,
        volatility: Optional[float] = None,
        open_positions: int = 0,
    ) -> TradeDecision:
        """
        Produce and record a decision.

        Args:
            portfolio_id: Portfolio being traded
            symbol: Trading pair
            technical: Latest technical snapshot (None reads as score 0)
            sentiment: Latest sentiment snapshot (None reads as score 0)
            position: Open position for the key, if any
            budget: Capital available to the symbol, enables entry sizing
            volatility: Optional volatility forwarded to the sizer
            open_positions: Open positions in the portfolio, forwarded to the sizer

        Returns:
            TradeDecision
        """
        technical_score = technical.score if technical is not None else 0.0
        sentiment_score = sentiment.score if sentiment is not None else 0.0
        price = technical.price if technical is not None else (position.current_price if position else None)

        state = self._reconcile(portfolio_id, symbol, position)
        action = TradeAction.HOLD
        intent = DecisionIntent.NONE
        reasons: List[str] = []

        if state in (PositionState.ENTERING, PositionState.EXITING):
            reasons.append(f"Order in flight ({state.value.lower()})")
        elif state == PositionState.OPEN and position is not None:
            if position.side == PositionSide.LONG:
                if technical_score < -self.exit_threshold or sentiment_score < -self.exit_threshold:
                    action, intent = TradeAction.SELL, DecisionIntent.EXIT
                    reasons.append("Exit long position due to bearish signals")
            else:
                if technical_score > self.exit_threshold or sentiment_score > self.exit_threshold:
                    action, intent = TradeAction.BUY, DecisionIntent.EXIT
                    reasons.append("Exit short position due to bullish signals")
            if action == TradeAction.HOLD:
                reasons.append(f"Holding {position.side.value} position")
        else:
            if technical_score > self.technical_entry_threshold and sentiment_score > self.sentiment_entry_threshold:
                action, intent = TradeAction.BUY, DecisionIntent.ENTRY
                reasons.append("Strong bullish signals from both technical and sentiment analysis")
            elif technical_score < -self.technical_entry_threshold and sentiment_score < -self.sentiment_entry_threshold:
                action, intent = TradeAction.SELL, DecisionIntent.ENTRY
                reasons.append("Strong bearish signals from both technical and sentiment analysis")
            else:
                reasons.append("No clear signals")

        reasons.append(f"Technical score {technical_score:+.2f}")
        if technical is not None:
            reasons.append(f"Technical: {technical.reasoning}")
        reasons.append(f"Sentiment score {sentiment_score:+.2f}")
        if sentiment is not None:
            reasons.append(f"Sentiment: {sentiment.reasoning}")

        confidence = self.combined_confidence(technical_score, sentiment_score)

        quantity = None
        sizing_method = None
        stop_loss = take_profit = None
        if intent == DecisionIntent.ENTRY and price:
            stop_loss, take_profit = self.protective_levels(action, price)
            if self.sizer is not None and budget:
                sizing = self.sizer.size_position(budget, confidence, price, volatility, open_positions)
                quantity = sizing.quantity
                sizing_method = sizing.method.value
        elif intent == DecisionIntent.EXIT and position is not None:
            quantity = position.quantity

        decision = TradeDecision(
            symbol=symbol,
            portfolio_id=portfolio_id,
            action=action,
            intent=intent,
            confidence=confidence,
            reasoning=". ".join(reasons),
            technical_score=technical_score,
            sentiment_score=sentiment_score,
            state=state,
            technical=technical.to_dict() if technical is not None else None,
            sentiment=sentiment.to_dict() if sentiment is not None else None,
            quantity=quantity,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            sizing_method=sizing_method,
            executable=action != TradeAction.HOLD and confidence >= self.min_confidence,
        )

        with self._lock:
            self._decisions.append(decision)

        logger.info(
            f"Decision {portfolio_id} {symbol}: {action.value} ({intent.value}) "
            f"confidence={confidence:.2f} executable={decision.executable}"
        )
        if self.event_bus is not None:
            self.event_bus.emit(DECISION_MADE, decision.to_dict())
        return decision

    def _reconcile(self, portfolio_id: str, symbol: str, position: Optional[Position]) -> PositionState:
        """Align FLAT/OPEN with the observed position; in-flight states are kept."""
        state = self.get_state(portfolio_id, symbol)
        if state == PositionState.FLAT and position is not None:
            self._transition(portfolio_id, symbol, PositionState.OPEN)
            return PositionState.OPEN
        if state == PositionState.OPEN and position is None:
            self._transition(portfolio_id, symbol, PositionState.FLAT)
            return PositionState.FLAT
        return state

    def protective_levels(self, action: TradeAction, price: float) -> Tuple[Optional[float], Optional[float]]:
        """Side-aware stop-loss and take-profit for an entry at price."""
        direction = 1 if action == TradeAction.BUY else -1
        stop_loss = price * (1 - direction * self.stop_loss_pct) if self.stop_loss_pct else None
        take_profit = price * (1 + direction * self.take_profit_pct) if self.take_profit_pct else None
        return stop_loss, take_profit

    def get_decisions(self, portfolio_id: Optional[str] = None, symbol: Optional[str] = None,
                      limit: Optional[int] = None) -> List[TradeDecision]:
        """Audit trail, oldest first, optionally filtered."""
        with self._lock:
            items = [d for d in self._decisions
                     if (portfolio_id is None or d.portfolio_id == portfolio_id)
                     and (symbol is None or d.symbol == symbol)]
        return items if limit is None else items[-limit:]
