"""
logger.py - Engine Logging Setup

Responsibilities:
- Configure process logging: level, console handler and rotating file handler.
- Mirror engine events, trades and errors as structured (JSON payload) log lines.
- Keep a bounded in-memory cache of recent structured entries for the API.
- Redact credential-like fields before anything reaches a handler.

Usage:
    from monitoring.logger import LoggerManager

    mgr = LoggerManager()
    mgr.configure(level="INFO", log_file="logs/engine.log")
    mgr.log_event("engine.start", {"portfolios": 2})
    mgr.log_trade(closed_trade.to_dict())
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

# Fields redacted from structured payloads (matched case-insensitively)
SENSITIVE_KEYS = frozenset({"api_key", "apikey", "secret", "api_secret", "password", "private_key", "token"})

RECENT_CACHE_SIZE = 200

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _level(level: str | int) -> int:
    return level if isinstance(level, int) else getattr(logging, str(level).upper(), logging.INFO)


def _as_kv_str(event: str, payload: Optional[Dict[str, Any]]) -> str:
    """Return a compact 'event {json}' string for handlers."""
    if not payload:
        return event
    return f"{event} {json.dumps(payload, separators=(',', ':'), default=str)}"


def scrub_secrets(payload: Any, sensitive_keys: Optional[Iterable[str]] = None) -> Any:
    """
    Return a copy of payload with sensitive fields redacted.

    Nested dicts and lists are walked; other values are returned as-is.

    Args:
        payload: structured payload (may be None)
        sensitive_keys: optional keys to redact instead of SENSITIVE_KEYS
    """
    keys = {k.lower() for k in (sensitive_keys or SENSITIVE_KEYS)}

    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: ("<REDACTED>" if str(k).lower() in keys else _scrub(v)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_scrub(v) for v in value]
        return value

    return _scrub(payload)


class LoggerManager:
    """
    Thread-safe logging configuration and structured event log.

    configure() sets up the root logger so every module's
    logging.getLogger(__name__) output reaches the same handlers.
    """

    def __init__(self, name: str = "engine.events", recent_size: int = RECENT_CACHE_SIZE):
        self._lock = threading.RLock()
        self._logger = logging.getLogger(name)
        self._recent = deque(maxlen=recent_size)
        self._handlers: List[logging.Handler] = []
        self.log_file: Optional[Path] = None

    @classmethod
    def from_config(cls, monitoring: Dict[str, Any]) -> "LoggerManager":
        """Build and configure from the monitoring config section."""
        manager = cls()
        manager.configure(
            level=monitoring.get('log_level', 'INFO'),
            log_file=monitoring.get('log_file'),
            max_bytes=monitoring.get('max_bytes', 10 * 1024 * 1024),
            backup_count=monitoring.get('backup_count', 5),
            console=monitoring.get('console', True),
        )
        return manager

    # -----------------------
    # Configuration
    # -----------------------

    def configure(
        self,
        level: str | int = "INFO",
        log_file: Optional[str] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        console: bool = True,
    ) -> None:
        """
        Attach handlers to the root logger, replacing ones from a previous call.

        Args:
            level: logging level name or int
            log_file: optional rotating log file; parent directories are created
            max_bytes: rotation size in bytes
            backup_count: rotated files kept
            console: enable console handler
        """
        lvl = _level(level)
        root = logging.getLogger()
        formatter = logging.Formatter(LOG_FORMAT)

        with self._lock:
            for handler in self._handlers:
                root.removeHandler(handler)
                handler.close()
            self._handlers = []

            if console:
                self._handlers.append(logging.StreamHandler())
            if log_file:
                path = Path(log_file)
                path.parent.mkdir(parents=True, exist_ok=True)
                self._handlers.append(logging.handlers.RotatingFileHandler(
                    path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"))
                self.log_file = path

            for handler in self._handlers:
                handler.setLevel(lvl)
                handler.setFormatter(formatter)
                root.addHandler(handler)
            root.setLevel(lvl)

        self._logger.debug(f"Logging configured: level={logging.getLevelName(lvl)}, file={log_file}")

    def close(self) -> None:
        """Detach and close handlers added by configure()."""
        root = logging.getLogger()
        with self._lock:
            for handler in self._handlers:
                root.removeHandler(handler)
                handler.close()
            self._handlers = []

    # -----------------------
    # Recent cache
    # -----------------------

    def _record_recent(self, kind: str, event: str, payload: Any) -> None:
        with self._lock:
            self._recent.appendleft({"ts": time.time(), "kind": kind, "event": event, "payload": payload})

    def get_recent(self, limit: Optional[int] = None, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recent structured entries, newest first."""
        with self._lock:
            entries = [e for e in self._recent if kind is None or e["kind"] == kind]
        return entries if limit is None else entries[:limit]

    # -----------------------
    # Structured logging
    # -----------------------

    def log_event(self, event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
        """
        Log an engine event with a structured payload.

        Args:
            event: event name, e.g. "order.placed"
            payload: structured payload (scrubbed)
            level: log level
        """
        safe = scrub_secrets(payload)
        self._logger.log(_level(level), _as_kv_str(event, safe))
        self._record_recent("event", event, safe)

    def log_trade(self, trade: Dict[str, Any]) -> None:
        """Log a closed trade."""
        safe = scrub_secrets(trade)
        self._logger.info(_as_kv_str("trade", safe))
        self._record_recent("trade", "trade", safe)

    def log_error(self, event: str, message: Optional[str] = None,
                  payload: Optional[Dict[str, Any]] = None, exc_info: Any = None) -> None:
        """
        Log an error.

        Args:
            event: short error name
            message: human-readable message
            payload: structured context
            exc_info: exception info passed to logging
        """
        safe = scrub_secrets(payload)
        text = f"{event} {message or ''}".strip()
        self._logger.error(_as_kv_str(text, safe), exc_info=exc_info)
        self._record_recent("error", event, {"message": message, "payload": safe})

    def get_logger(self) -> logging.Logger:
        return self._logger
