"""
Reward Attribution Pipeline

Records impressions and user actions and turns each action into reward
signals for the impressions that plausibly caused it:

    reward = base_reward(action) * exp(-hours / decay) * context_match * recency

Every matched impression has its reward overwritten (latest attribution
wins) and the learner is called with the impression's original strategy
and context. A learner failure on one impression never stops the others.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from categories import ACTION_CATEGORIES
from config.config import AttributionConfig, BanditConfig
from models.context_encoder import Context, ContextEncoder
from models.entities import Action, Impression, RewardAttribution
from models.exceptions import BanditError, PersistenceError
from services.event_store import EventStore, InMemoryEventStore
from services.observer import BanditObserver
from utils import clamp, normalise_timestamp

logger = logging.getLogger(__name__)

# learner(impression, arm_id, reward) applies one update and raises BanditError on failure
Learner = Callable[[Impression, str, float], Any]


def resolve_arm_id(arm_id: str, config: BanditConfig) -> str:
    """Map a stored strategy name onto the configured arm set."""
    arm_ids = config.arm_ids
    if arm_id in arm_ids:
        return arm_id
    target = config.legacy_arm_aliases.get(arm_id, config.default_alias_target)
    if target in arm_ids:
        return target
    if config.default_alias_target in arm_ids:
        return config.default_alias_target
    return arm_ids[0]


def attribution_reason(hours: float) -> str:
    if hours < 1:
        return 'immediate_interaction'
    if hours < 24:
        return 'same_day_interaction'
    if hours < 72:
        return 'recent_interaction'
    return 'delayed_interaction'


class RewardAttributionPipeline:
    """Converts user actions into time-decayed rewards for past impressions."""

    def __init__(self, config: AttributionConfig = None, bandit_config: BanditConfig = None,
                 encoder: ContextEncoder = None, event_store: EventStore = None,
                 learner: Optional[Learner] = None, observer: BanditObserver = None):
        self.config = config or AttributionConfig()
        self.bandit_config = bandit_config or BanditConfig()
        self.encoder = encoder or ContextEncoder()
        self.event_store = event_store or InMemoryEventStore()
        self.learner = learner
        self.observer = observer or BanditObserver()

    def base_reward(self, action_type: str, value: Optional[float] = None) -> float:
        """Fixed per-action reward before decay. Unknown action types earn nothing."""
        rewards = self.config.base_rewards

        if action_type == 'rate':
            rating = self.config.default_rating if value is None else float(value)
            return clamp(rating, 1.0, 5.0)
        if action_type == 'view':
            duration = 0.0 if value is None else float(value)
            return rewards['view_engaged'] if duration >= self.config.min_view_duration_ms else 0.0
        if action_type in rewards:
            return rewards[action_type]

        logger.warning(f"Unknown action type '{action_type}', no reward")
        return 0.0

    def time_decay(self, shown_at: datetime, acted_at: datetime) -> float:
        hours = max(0.0, (acted_at - shown_at).total_seconds() / 3600)
        return math.exp(-hours / self.config.decay_hours)

    def context_match(self, impression: Impression, action: Action) -> float:
        """Similarity of the impression context to the action's, both encoded at the action time."""
        if action.context is None:
            return 1.0
        shown = self.encoder.encode(impression.context, impression.identity, now=action.timestamp)
        acted = self.encoder.encode(action.context, action.identity, now=action.timestamp)
        return clamp(self.encoder.similarity(shown, acted), 0.0, 1.0)

    def recency_multipliers(self, match_count: int) -> List[float]:
        """
        Multipliers for matches ordered newest first.

        Normalised: the newest match weighs ``recency_bonus``, the rest 1.0,
        and the weights are divided by their sum so one action hands out a
        single unit of credit. Otherwise every match gets ``recency_bonus``.
        """
        if match_count == 0:
            return []
        bonus = self.config.recency_bonus
        if not self.config.normalize_recency:
            return [bonus] * match_count
        weights = [bonus] + [1.0] * (match_count - 1)
        total = sum(weights)
        return [weight / total for weight in weights]

    def record_impression(self, identity: str, book_id: str, context: Union[Context, Dict[str, Any], None],
                          arm_id: str, rank: int = 0, score: float = 0.0,
                          shown_at: Optional[datetime] = None) -> str:
        """
        Store that a book was shown under a strategy.

        Raises:
            ValueError: If identity, book or strategy is missing
            PersistenceError: If the event store fails
        """
        if not identity or not book_id or not arm_id:
            raise ValueError("identity, book_id and arm_id are required")

        impression = Impression(
            impression_id=str(uuid.uuid4()),
            identity=identity,
            book_id=book_id,
            context=Context.from_dict(context) if not isinstance(context, Context) else context,
            arm_id=arm_id,
            rank=int(rank),
            score=float(score),
            shown_at=normalise_timestamp(shown_at) or datetime.now(),
        )
        self.event_store.add_impression(impression)

        self.observer.emit('impression_recorded', impression_id=impression.impression_id,
                           identity=identity, book_id=book_id, arm_id=arm_id, rank=impression.rank)
        return impression.impression_id

    def record_action(self, identity: str, book_id: str, action_type: str, value: Optional[float] = None,
                      timestamp: Optional[datetime] = None,
                      context: Union[Context, Dict[str, Any], None] = None) -> List[RewardAttribution]:
        """
        Store a user action and attribute it to recent impressions.

        Raises:
            ValueError: If identity, book or action type is missing
            PersistenceError: If the action itself cannot be stored
        """
        if not identity or not book_id or not action_type:
            raise ValueError("identity, book_id and action_type are required")
        if action_type not in ACTION_CATEGORIES:
            logger.warning(f"Recording unrecognised action type '{action_type}'")

        action = Action(
            action_id=str(uuid.uuid4()),
            identity=identity,
            book_id=book_id,
            action_type=action_type,
            timestamp=normalise_timestamp(timestamp) or datetime.now(),
            value=value,
            context=Context.from_dict(context) if context is not None else None,
        )
        self.event_store.add_action(action)

        self.observer.emit('action_recorded', action_id=action.action_id, identity=identity,
                           book_id=book_id, action_type=action_type)
        return self.attribute(action)

    def attribute(self, action: Action) -> List[RewardAttribution]:
        """
        Credit one action to every matching impression in the lookback window.

        Zero matches is a normal outcome and returns an empty list.
        """
        since = action.timestamp - timedelta(hours=self.config.window_hours)
        try:
            matches = self.event_store.find_impressions(action.identity, action.book_id, since, action.timestamp)
        except PersistenceError as e:
            logger.error(f"Could not look up impressions for action {action.action_id}: {e}")
            return []

        if not matches:
            logger.debug(f"No impressions of {action.book_id} for {action.identity} to attribute")
            return []

        base = self.base_reward(action.action_type, action.value)
        if base == 0:
            logger.debug(f"Action {action.action_type} on {action.book_id} carries no reward")
            return []

        logger.info(f"Attributing {action.action_type} on {action.book_id} to {len(matches)} impression(s)")

        attributions = []
        for impression, recency in zip(matches, self.recency_multipliers(len(matches))):
            attribution = self._attribute_one(impression, action, base, recency)
            attributions.append(attribution)
        return attributions

    def process_pending(self, identity: Optional[str] = None, since: Optional[datetime] = None,
                        now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Feed rewards that were attributed but never learned to the learner.

        Only impressions without a ``learned_at`` stamp are considered, so
        overlapping runs never count a reward twice.
        """
        summary = {'processed': 0, 'updated': 0, 'errors': 0}
        if self.learner is None:
            return summary
        since = normalise_timestamp(since)
        now = normalise_timestamp(now)

        try:
            pending = self.event_store.unlearned_rewarded_impressions(identity, since)
        except PersistenceError as e:
            logger.error(f"Could not list pending rewards: {e}")
            summary['errors'] += 1
            return summary

        for impression in pending:
            summary['processed'] += 1
            arm_id = resolve_arm_id(impression.arm_id, self.bandit_config)
            try:
                self.learner(impression, arm_id, impression.reward)
            except BanditError as e:
                logger.error(f"Error processing reward for impression {impression.impression_id}: {e}")
                summary['errors'] += 1
                continue
            summary['updated'] += 1
            self._mark_learned(impression.impression_id, now or datetime.now())

        return summary

    def _attribute_one(self, impression: Impression, action: Action, base: float,
                       recency: float) -> RewardAttribution:
        hours = max(0.0, (action.timestamp - impression.shown_at).total_seconds() / 3600)
        decay = self.time_decay(impression.shown_at, action.timestamp)
        try:
            match = self.context_match(impression, action)
        except ValueError as e:
            logger.warning(f"Context match failed for impression {impression.impression_id}: {e}")
            match = 1.0

        attribution = RewardAttribution(
            impression_id=impression.impression_id,
            action_id=action.action_id,
            arm_id=resolve_arm_id(impression.arm_id, self.bandit_config),
            reward=base * decay * match * recency,
            base_reward=base,
            time_decay=decay,
            context_match=match,
            recency_multiplier=recency,
            confidence=decay * match,
            reason=attribution_reason(hours),
        )

        try:
            self.event_store.set_impression_reward(impression.impression_id, attribution.reward,
                                                   action.timestamp)
        except PersistenceError as e:
            logger.error(f"Failed to store reward for impression {impression.impression_id}: {e}")
            attribution.error = str(e)
            return attribution

        if self.learner is not None:
            try:
                self.learner(impression, attribution.arm_id, attribution.reward)
                attribution.learned = True
            except BanditError as e:
                logger.error(f"Learner rejected reward for impression {impression.impression_id}: {e}")
                attribution.error = str(e)
            else:
                self._mark_learned(impression.impression_id, action.timestamp)

        self.observer.emit('reward_attributed', impression_id=impression.impression_id,
                           action_id=action.action_id, arm_id=attribution.arm_id, reward=attribution.reward,
                           reason=attribution.reason, learned=attribution.learned)
        return attribution

    def _mark_learned(self, impression_id: str, learned_at: datetime) -> None:
        try:
            self.event_store.mark_learned(impression_id, learned_at)
        except PersistenceError as e:
            # the model already holds this reward; a later batch run may replay it
            logger.error(f"Failed to mark impression {impression_id} as learned: {e}")
