"""
Diagnostic event sinks.

The engine and the attribution pipeline report what they do as named
events with key/value fields. Observers decide what happens to them:
log lines, counters, or both.
"""

import logging
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENTS = (
    'strategy_selected',
    'fallback_used',
    'model_updated',
    'update_failed',
    'impression_recorded',
    'action_recorded',
    'reward_attributed',
    'identity_migrated',
    'batch_processed',
)

_WARNING_EVENTS = {'fallback_used', 'update_failed'}


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.6g}"
    return str(value)


class BanditObserver:
    """Base observer. Ignores everything."""

    def emit(self, event: str, **fields: Any) -> None:
        pass


class LoggingObserver(BanditObserver):
    """Renders events as ``event=<name> key=value`` log lines."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, event: str, **fields: Any) -> None:
        rendered = ' '.join(f"{key}={_format_value(value)}" for key, value in fields.items())
        level = logging.WARNING if event in _WARNING_EVENTS else logging.INFO
        self.log.log(level, f"event={event} {rendered}".rstrip())


class MetricsObserver(BanditObserver):
    """Counts events and keeps the most recent fields of each."""

    def __init__(self, keep_history: int = 0):
        self.counts = Counter()
        self.last_fields: Dict[str, Dict[str, Any]] = {}
        self.history: List[Dict[str, Any]] = []
        self.keep_history = keep_history
        self._lock = threading.Lock()

    def emit(self, event: str, **fields: Any) -> None:
        with self._lock:
            self.counts[event] += 1
            self.last_fields[event] = dict(fields)
            if self.keep_history:
                self.history.append({'event': event, **fields})
                del self.history[:-self.keep_history]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counts)


class CompositeObserver(BanditObserver):
    """Fans every event out to several observers."""

    def __init__(self, *observers: BanditObserver):
        self.observers = list(observers)

    def emit(self, event: str, **fields: Any) -> None:
        for observer in self.observers:
            try:
                observer.emit(event, **fields)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__} failed on {event}: {e}")
