"""
Storage for impressions and actions.

Impressions are mutated only to stamp an attributed reward and, once the
learner has consumed that reward, a ``learned_at`` marker. Actions are
append-only.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from models.entities import Action, Impression

logger = logging.getLogger(__name__)


class EventStore(ABC):
    """
    Persistence interface for impressions and actions.

    Implementations raise PersistenceError when the backend fails.
    """

    @abstractmethod
    def add_impression(self, impression: Impression) -> None:
        ...

    @abstractmethod
    def get_impression(self, impression_id: str) -> Optional[Impression]:
        ...

    @abstractmethod
    def find_impressions(self, identity: str, book_id: str, since: datetime,
                         until: datetime) -> List[Impression]:
        """Impressions of one book for one identity shown in [since, until], newest first."""

    @abstractmethod
    def list_impressions(self, identity: str) -> List[Impression]:
        ...

    @abstractmethod
    def set_impression_reward(self, impression_id: str, reward: float, attributed_at: datetime) -> None:
        """Overwrite the attributed reward. Clears ``learned_at`` so the new reward is learned."""

    @abstractmethod
    def mark_learned(self, impression_id: str, learned_at: datetime) -> None:
        ...

    @abstractmethod
    def unlearned_rewarded_impressions(self, identity: Optional[str] = None,
                                       since: Optional[datetime] = None) -> List[Impression]:
        """Impressions carrying a reward the learner has not consumed yet, oldest first."""

    @abstractmethod
    def add_action(self, action: Action) -> None:
        ...

    @abstractmethod
    def list_actions(self, identity: str) -> List[Action]:
        ...

    @abstractmethod
    def rename_identity(self, old_identity: str, new_identity: str) -> Tuple[int, int]:
        """Re-key every impression and action. Returns (impressions, actions) moved."""


class InMemoryEventStore(EventStore):
    """Thread-safe in-process event store."""

    def __init__(self):
        self._impressions: Dict[str, Impression] = {}
        self._actions: List[Action] = []
        self._lock = threading.Lock()

    def add_impression(self, impression: Impression) -> None:
        with self._lock:
            self._impressions[impression.impression_id] = replace(impression)

    def get_impression(self, impression_id: str) -> Optional[Impression]:
        with self._lock:
            impression = self._impressions.get(impression_id)
            return replace(impression) if impression else None

    def find_impressions(self, identity: str, book_id: str, since: datetime,
                         until: datetime) -> List[Impression]:
        with self._lock:
            matches = [
                replace(impression) for impression in self._impressions.values()
                if impression.identity == identity
                and impression.book_id == book_id
                and since <= impression.shown_at <= until
            ]
        matches.sort(key=lambda impression: impression.shown_at, reverse=True)
        return matches

    def list_impressions(self, identity: str) -> List[Impression]:
        with self._lock:
            impressions = [replace(imp) for imp in self._impressions.values() if imp.identity == identity]
        impressions.sort(key=lambda impression: impression.shown_at)
        return impressions

    def set_impression_reward(self, impression_id: str, reward: float, attributed_at: datetime) -> None:
        with self._lock:
            impression = self._impressions.get(impression_id)
            if impression is None:
                logger.warning(f"Cannot attribute reward to unknown impression {impression_id}")
                return
            impression.reward = reward
            impression.attributed_at = attributed_at
            impression.learned_at = None

    def mark_learned(self, impression_id: str, learned_at: datetime) -> None:
        with self._lock:
            impression = self._impressions.get(impression_id)
            if impression is not None:
                impression.learned_at = learned_at

    def unlearned_rewarded_impressions(self, identity: Optional[str] = None,
                                       since: Optional[datetime] = None) -> List[Impression]:
        with self._lock:
            pending = [
                replace(impression) for impression in self._impressions.values()
                if impression.reward is not None
                and impression.learned_at is None
                and (identity is None or impression.identity == identity)
                and (since is None or impression.shown_at >= since)
            ]
        pending.sort(key=lambda impression: impression.shown_at)
        return pending

    def add_action(self, action: Action) -> None:
        with self._lock:
            self._actions.append(replace(action))

    def list_actions(self, identity: str) -> List[Action]:
        with self._lock:
            return [replace(action) for action in self._actions if action.identity == identity]

    def rename_identity(self, old_identity: str, new_identity: str) -> Tuple[int, int]:
        moved_impressions = 0
        moved_actions = 0
        with self._lock:
            for impression in self._impressions.values():
                if impression.identity == old_identity:
                    impression.identity = new_identity
                    moved_impressions += 1
            for index, action in enumerate(self._actions):
                if action.identity == old_identity:
                    self._actions[index] = replace(action, identity=new_identity)
                    moved_actions += 1
        return moved_impressions, moved_actions
