"""
events.py - Engine Notification Channel

Observers subscribe to engine events (order placed/failed/filled, sentiment
aggregated, decisions, alerts) without changing what the emitting call
returns. Callers always get a typed result or an exception; the event is an
additional, independent notification.

Two subscription styles:
- subscribe(callback, event_types): synchronous callbacks
- subscribe_queue(event_types): an asyncio.Queue that receives matching events
"""

import asyncio
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set


logger = logging.getLogger(__name__)


# Event type names emitted by the engine
ORDER_PLACED = "order.placed"
ORDER_FAILED = "order.failed"
ORDER_UPDATED = "order.updated"
ORDER_FILLED = "order.filled"
ORDER_CANCELED = "order.canceled"
ORDER_MONITOR_TIMEOUT = "order.monitor_timeout"
SENTIMENT_ANALYZED = "sentiment.analyzed"
TECHNICAL_ANALYZED = "technical.analyzed"
DECISION_MADE = "decision.made"
POSITION_OPENED = "position.opened"
POSITION_CLOSED = "position.closed"
PERFORMANCE_ALERT = "performance.alert"
SLIPPAGE_EXCEEDED = "slippage.exceeded"
CIRCUIT_STATE_CHANGED = "circuit.state_changed"


@dataclass
class Event:
    """A single emitted notification."""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {'type': self.type, 'payload': self.payload, 'timestamp': self.timestamp}


@dataclass
class _Subscription:
    callback: Optional[Callable[[Event], Any]]
    queue: Optional[asyncio.Queue]
    event_types: Optional[Set[str]]

    def matches(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types


class EventBus:
    """
    Thread-safe publish/subscribe channel.

    Listener failures are logged and never propagate into the emitter.
    """

    def __init__(self, history_size: int = 200, logger_manager: Any = None):
        """
        Initialize event bus.

        Args:
            history_size: Number of recent events kept for inspection
            logger_manager: Optional monitoring LoggerManager that mirrors events
        """
        self._lock = threading.RLock()
        self._subscriptions: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._recent = deque(maxlen=history_size)
        self._logger_manager = logger_manager
        self._dropped = 0

    def subscribe(self, callback: Callable[[Event], Any], event_types: Optional[Iterable[str]] = None) -> int:
        """
        Register a synchronous callback.

        Returns:
            Subscription id usable with unsubscribe()
        """
        types = set(event_types) if event_types is not None else None
        with self._lock:
            sub_id = next(self._ids)
            self._subscriptions[sub_id] = _Subscription(callback, None, types)
        return sub_id

    def subscribe_queue(self, event_types: Optional[Iterable[str]] = None, maxsize: int = 1000) -> asyncio.Queue:
        """Register and return a bounded asyncio.Queue receiving matching events."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        types = set(event_types) if event_types is not None else None
        with self._lock:
            sub_id = next(self._ids)
            self._subscriptions[sub_id] = _Subscription(None, queue, types)
        return queue

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def emit(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        """
        Publish an event to all matching subscribers.

        Args:
            event_type: Event name, e.g. "order.placed"
            payload: Structured event data

        Returns:
            The emitted Event
        """
        event = Event(type=event_type, payload=dict(payload or {}))
        with self._lock:
            self._recent.append(event)
            targets = [s for s in self._subscriptions.values() if s.matches(event_type)]

        if self._logger_manager is not None:
            level = "WARNING" if event_type in (ORDER_FAILED, PERFORMANCE_ALERT, SLIPPAGE_EXCEEDED) else "INFO"
            self._logger_manager.log_event(event_type, event.payload, level=level)

        for sub in targets:
            if sub.queue is not None:
                try:
                    sub.queue.put_nowait(event)
                except asyncio.QueueFull:
                    with self._lock:
                        self._dropped += 1
                    logger.warning(f"Event queue full, dropped {event_type}")
                continue
            try:
                sub.callback(event)
            except Exception as e:
                logger.error(f"Event listener failed for {event_type}: {e}", exc_info=True)
        return event

    def get_recent(self, limit: Optional[int] = None, event_type: Optional[str] = None) -> List[Event]:
        """Return recent events, newest first."""
        with self._lock:
            events = [e for e in reversed(self._recent) if event_type is None or e.type == event_type]
        return events if limit is None else events[:limit]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'subscribers': len(self._subscriptions),
                'recent_events': len(self._recent),
                'dropped_events': self._dropped,
            }
