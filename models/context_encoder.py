"""
Context Encoder for Strategy Selection

Turns a semantic reading context (mood, situation, goal, time) into the
fixed 44-dimension vector consumed by the LinUCB selector:

    mood (8) | situation (8) | goal (8) | temporal (12) | user (8)

The full vector is L2-normalised. Encoding never raises: a block that
cannot be computed degrades to zeros and the failure is logged.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from categories import DAY_OF_WEEK_NAMES, TIME_OF_DAY_CATEGORIES
from config.config import EncoderConfig
from utils import (
    cosine_similarity,
    cyclical_encoding,
    encode_categorical_feature,
    encode_one_hot,
    l2_normalise,
    normalise_numeric_feature,
    normalise_timestamp,
)

logger = logging.getLogger(__name__)

_CAMEL_KEYS = {
    'timeOfDay': 'time_of_day',
    'dayOfWeek': 'day_of_week',
    'customText': 'custom_text',
}


@dataclass(frozen=True)
class Context:
    """Situational descriptor supplied with a recommendation request."""
    mood: Optional[str] = None
    situation: Optional[str] = None
    goal: Optional[str] = None
    time_of_day: Optional[str] = None
    day_of_week: Optional[Union[int, str]] = None
    custom_text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Context':
        """Build a context from snake_case or camelCase keys, ignoring unknown ones."""
        if not data:
            return cls()
        if isinstance(data, Context):
            return data
        values = {}
        for key, value in data.items():
            key = _CAMEL_KEYS.get(key, key)
            if key in cls.__dataclass_fields__:
                values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @property
    def signature(self) -> str:
        parts = [self.mood, self.situation, self.goal, self.time_of_day]
        return '|'.join(part or 'none' for part in parts)

    def describe(self) -> str:
        parts = []
        if self.mood:
            parts.append(f"mood:{self.mood}")
        if self.situation:
            parts.append(f"situation:{self.situation}")
        if self.goal:
            parts.append(f"goal:{self.goal}")
        if self.time_of_day:
            parts.append(f"time:{self.time_of_day}")
        return ', '.join(parts) or 'neutral context'


@dataclass(frozen=True, eq=False)
class EncodedContext:
    """Encoded context vector with its per-block breakdown."""
    vector: np.ndarray
    blocks: Dict[str, List[float]]
    context: Context
    signature: str
    encoded_at: datetime
    degraded_blocks: List[str] = field(default_factory=list)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class ContextSimilarity:
    context1: str
    context2: str
    similarity: float
    explanation: str


class ContextEncoder:
    """
    Encodes reading contexts into fixed-length vectors.

    Categorical fields go through hand-authored lookup tables whose related
    concepts overlap, so "excited" sits near both "motivated" and
    "adventurous". Unknown or missing values are neutral (zero block).
    """

    def __init__(self, config: EncoderConfig = None):
        self.config = config or EncoderConfig()

    @property
    def dimension(self) -> int:
        return self.config.total_dim

    def encode(self, context: Union[Context, Dict[str, Any], None], identity: Optional[str] = None,
               user_features: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None) -> EncodedContext:
        """
        Encode a complete context into a unit-length vector.

        Args:
            context: Semantic context (Context or dict)
            identity: Stable identity key, when known
            user_features: Optional history summary (preference_history,
                engagement_level, diversity_score, new_user_bonus)
            now: Timestamp for the temporal block; defaults to the current time

        Returns:
            EncodedContext holding the normalised vector and raw blocks
        """
        now = normalise_timestamp(now) or datetime.now()
        degraded = []

        try:
            context = Context.from_dict(context) if not isinstance(context, Context) else context
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Unreadable context {context!r}, encoding as neutral: {e}")
            context = Context()

        blocks = {
            'mood': self._safe_block('mood', self.config.mood_dim, degraded,
                                     lambda: encode_categorical_feature(context.mood, 'mood', self.config.mood_dim)),
            'situation': self._safe_block('situation', self.config.situation_dim, degraded,
                                          lambda: encode_categorical_feature(context.situation, 'situation',
                                                                             self.config.situation_dim)),
            'goal': self._safe_block('goal', self.config.goal_dim, degraded,
                                     lambda: encode_categorical_feature(context.goal, 'goal', self.config.goal_dim)),
            'temporal': self._safe_block('temporal', self.config.temporal_dim, degraded,
                                         lambda: self._encode_temporal(context, now)),
            'user': self._safe_block('user', self.config.user_dim, degraded,
                                     lambda: self._encode_user(identity, user_features)),
        }

        raw = np.array(
            blocks['mood'] + blocks['situation'] + blocks['goal'] + blocks['temporal'] + blocks['user'],
            dtype=float,
        )
        vector = l2_normalise(raw)
        vector.setflags(write=False)

        logger.debug(f"Encoded context '{context.signature}' to {vector.shape[0]}D vector")

        return EncodedContext(
            vector=vector,
            blocks=blocks,
            context=context,
            signature=context.signature,
            encoded_at=now,
            degraded_blocks=degraded,
        )

    def similarity(self, a: Union[EncodedContext, Sequence[float]],
                   b: Union[EncodedContext, Sequence[float]]) -> float:
        """Cosine similarity between two encoded contexts or raw vectors."""
        vector_a = a.vector if isinstance(a, EncodedContext) else a
        vector_b = b.vector if isinstance(b, EncodedContext) else b
        return cosine_similarity(vector_a, vector_b)

    def compare(self, context1: Union[Context, Dict[str, Any]], context2: Union[Context, Dict[str, Any]],
                now: Optional[datetime] = None) -> ContextSimilarity:
        """Compare two contexts encoded at the same instant, with an explanation."""
        now = now or datetime.now()
        context1 = Context.from_dict(context1)
        context2 = Context.from_dict(context2)
        similarity = self.similarity(self.encode(context1, now=now), self.encode(context2, now=now))

        return ContextSimilarity(
            context1=context1.describe(),
            context2=context2.describe(),
            similarity=similarity,
            explanation=self._explain_similarity(context1, context2, similarity),
        )

    def find_similar_contexts(self, target: Union[Context, Dict[str, Any]],
                              history: Sequence[Union[Context, Dict[str, Any]]],
                              threshold: float = 0.7, limit: int = 5,
                              now: Optional[datetime] = None) -> List[ContextSimilarity]:
        """Historical contexts at or above the similarity threshold, most similar first."""
        now = now or datetime.now()
        matches = [self.compare(target, candidate, now=now) for candidate in history]
        matches = [match for match in matches if match.similarity >= threshold]
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[:limit]

    def current_time_of_day(self, now: Optional[datetime] = None) -> str:
        hour = (now or datetime.now()).hour
        if self.config.morning_start_hour <= hour < self.config.afternoon_start_hour:
            return 'morning'
        if self.config.afternoon_start_hour <= hour < self.config.evening_start_hour:
            return 'afternoon'
        if self.config.evening_start_hour <= hour < self.config.night_start_hour:
            return 'evening'
        return 'night'

    def smart_defaults(self, now: Optional[datetime] = None) -> Context:
        """Sensible mood/situation/goal for the current time of day."""
        now = now or datetime.now()
        time_of_day = self.current_time_of_day(now)
        weekend = self._day_index(now) in (0, 6)

        defaults = {
            'morning': ('motivated', 'weekend' if weekend else 'commuting', 'learning'),
            'afternoon': ('curious', 'weekend' if weekend else 'lunch_break', 'entertainment'),
            'evening': ('relaxed', 'weekend' if weekend else 'evening', 'escape'),
            'night': ('peaceful', 'before_bed', 'relaxation'),
        }
        mood, situation, goal = defaults[time_of_day]
        return Context(mood=mood, situation=situation, goal=goal, time_of_day=time_of_day)

    def is_stale(self, context: Union[Context, Dict[str, Any]], last_updated: Optional[datetime],
                 now: Optional[datetime] = None) -> bool:
        """A stored context is stale once it is old or the time of day has moved on."""
        if last_updated is None:
            return False
        now = normalise_timestamp(now) or datetime.now()
        context = Context.from_dict(context)

        hours_stale = (now - normalise_timestamp(last_updated)).total_seconds() / 3600
        time_shifted = bool(context.time_of_day) and context.time_of_day != self.current_time_of_day(now)
        return hours_stale > self.config.stale_after_hours or time_shifted

    def zero_encoding(self, context: Optional[Context] = None, now: Optional[datetime] = None) -> EncodedContext:
        """Fully degraded encoding: the exact zero vector."""
        vector = np.zeros(self.dimension)
        vector.setflags(write=False)
        blocks = {
            'mood': [0.0] * self.config.mood_dim,
            'situation': [0.0] * self.config.situation_dim,
            'goal': [0.0] * self.config.goal_dim,
            'temporal': [0.0] * self.config.temporal_dim,
            'user': [0.0] * self.config.user_dim,
        }
        context = context or Context()
        return EncodedContext(vector=vector, blocks=blocks, context=context, signature='default',
                              encoded_at=now or datetime.now(), degraded_blocks=list(blocks))

    # Block encoders

    def _safe_block(self, name, dim, degraded, build) -> List[float]:
        try:
            block = [float(value) for value in build()]
            if len(block) != dim or not all(math.isfinite(value) for value in block):
                raise ValueError(f"expected {dim} finite values, got {block}")
            return block
        except Exception as e:
            logger.warning(f"Failed to encode {name} block, using neutral zeros: {e}")
            degraded.append(name)
            return [0.0] * dim

    def _encode_temporal(self, context: Context, now: datetime) -> List[float]:
        hour = now.hour
        day = self._day_index(now, context.day_of_week)

        time_of_day = context.time_of_day or self.current_time_of_day(now)
        if time_of_day not in TIME_OF_DAY_CATEGORIES:
            logger.debug(f"Unknown time of day '{time_of_day}', leaving bucket empty")

        return (
            cyclical_encoding(hour, 24)
            + cyclical_encoding(day, 7)
            + encode_one_hot(time_of_day, TIME_OF_DAY_CATEGORIES)
            + [1.0 if day in (0, 6) else 0.0]
            + [math.sin(2 * math.pi * (now.month - 1) / 12)]
            + [hour / 24, day / 7]
        )

    def _encode_user(self, identity: Optional[str], features: Optional[Dict[str, Any]]) -> List[float]:
        neutral = self.config.neutral_user_value
        features = features or {}

        preference_history = list(features.get('preference_history', [neutral, neutral, neutral]))
        preference_history = (preference_history + [neutral] * 3)[:3]

        new_user_bonus = features.get('new_user_bonus', 0.0 if identity else 1.0)

        return preference_history + [
            normalise_numeric_feature(features.get('engagement_level'), 0.0, 1.0, neutral),
            normalise_numeric_feature(features.get('diversity_score'), 0.0, 1.0, neutral),
            new_user_bonus,
            1.0 if identity else 0.0,
            0.0,  # reserved
        ]

    @staticmethod
    def _day_index(now: datetime, override: Optional[Union[int, str]] = None) -> int:
        """Day of week with 0 = Sunday ... 6 = Saturday."""
        if override is not None:
            if isinstance(override, str):
                if override.isdigit():
                    return int(override) % 7
                return DAY_OF_WEEK_NAMES.index(override.lower())
            return int(override) % 7
        return (now.weekday() + 1) % 7

    @staticmethod
    def _explain_similarity(context1: Context, context2: Context, similarity: float) -> str:
        shared = []
        if context1.mood and context1.mood == context2.mood:
            shared.append(f"same mood ({context1.mood})")
        if context1.situation and context1.situation == context2.situation:
            shared.append(f"same situation ({context1.situation})")
        if context1.goal and context1.goal == context2.goal:
            shared.append(f"same goal ({context1.goal})")

        if similarity > 0.8:
            return f"Very similar contexts: {', '.join(shared)}"
        if similarity > 0.6:
            return f"Similar contexts: {', '.join(shared)}"
        if similarity > 0.4:
            return f"Somewhat similar contexts: {', '.join(shared)}"
        return "Different contexts"
