"""
Records exchanged between the selector, the attribution pipeline and the
stores: impressions, actions, attributions, selections and statistics.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.context_encoder import Context


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Impression:
    """One book shown to one identity under one strategy."""
    impression_id: str
    identity: str
    book_id: str
    context: Context
    arm_id: str
    rank: int
    score: float
    shown_at: datetime
    reward: Optional[float] = None
    attributed_at: Optional[datetime] = None
    learned_at: Optional[datetime] = None

    @property
    def attributed(self) -> bool:
        return self.attributed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'impression_id': self.impression_id,
            'identity': self.identity,
            'book_id': self.book_id,
            'context': self.context.to_dict(),
            'arm_id': self.arm_id,
            'rank': self.rank,
            'score': self.score,
            'shown_at': _format_time(self.shown_at),
            'reward': self.reward,
            'attributed_at': _format_time(self.attributed_at),
            'learned_at': _format_time(self.learned_at),
        }


@dataclass
class Action:
    """A user interaction with a book. Append-only."""
    action_id: str
    identity: str
    book_id: str
    action_type: str
    timestamp: datetime
    value: Optional[float] = None
    context: Optional[Context] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action_id': self.action_id,
            'identity': self.identity,
            'book_id': self.book_id,
            'action_type': self.action_type,
            'timestamp': _format_time(self.timestamp),
            'value': self.value,
            'context': self.context.to_dict() if self.context else None,
        }


@dataclass
class RewardAttribution:
    """Reward credited to one impression for one action."""
    impression_id: str
    action_id: str
    arm_id: str
    reward: float
    base_reward: float
    time_decay: float
    context_match: float
    recency_multiplier: float
    confidence: float
    reason: str
    learned: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StrategySelection:
    """Outcome of choosing a strategy for a request."""
    arm_id: str
    arm_name: str
    predicted_reward: float
    exploration_bonus: float
    ucb: float
    confidence: float
    exploration_level: float
    explanation: str
    fallback: bool = False
    context_signature: Optional[str] = None
    scores: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArmStats:
    arm_id: str
    arm_name: str
    interactions: int
    average_reward: float
    total_reward: float
    confidence: float
    last_updated: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_updated'] = _format_time(self.last_updated)
        return data


@dataclass
class BanditStats:
    """Per-identity learning summary."""
    identity: str
    total_interactions: int
    best_arm: Optional[str]
    per_arm: List[ArmStats]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identity': self.identity,
            'total_interactions': self.total_interactions,
            'best_arm': self.best_arm,
            'per_arm': [arm.to_dict() for arm in self.per_arm],
        }
