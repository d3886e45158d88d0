"""
Recommendation Engine Service

Facade over the strategy bandit:
1. Strategy selection: encode the request context and let LinUCB pick which
   recommendation strategy (arm) to trust for this identity
2. Feedback: record impressions and user actions, attribute rewards and
   update the per-(identity, arm) models
3. Operations: statistics, resets, identity migration and batch reward
   reprocessing

Producing the ranked books for the chosen strategy is left to the catalogue
service that calls this engine.
"""

import logging
import threading
import time
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from config.config import AttributionConfig, BanditConfig, EncoderConfig
from config.settings import Settings
from models.context_encoder import Context, ContextEncoder
from models.contextual_bandit import ArmPrediction, LearningResult, LinUCBSelector
from models.entities import ArmStats, BanditStats, Impression, RewardAttribution, StrategySelection
from models.exceptions import PersistenceError
from services.cache import MemoryCache, RedisCache
from services.database import SQLEventStore, SQLModelBackend, create_database_engine, create_tables
from services.event_store import EventStore, InMemoryEventStore
from services.model_store import BanditModelStore, InMemoryModelBackend, RedisModelBackend
from services.observer import BanditObserver, LoggingObserver
from services.reward_attribution import RewardAttributionPipeline
from utils import normalise_timestamp, safe_divide

logger = logging.getLogger(__name__)

ContextLike = Union[Context, Dict[str, Any], None]

# Fixed pool of update locks shared by all (identity, arm) pairs
LOCK_STRIPES = 64


class BanditRecommendationEngine:
    """
    Contextual bandit strategy engine.

    All collaborators are injected; anything not supplied gets an in-process
    default so the engine works standalone in tests and demos.
    """

    def __init__(self, bandit_config: BanditConfig = None, encoder_config: EncoderConfig = None,
                 attribution_config: AttributionConfig = None, model_store: BanditModelStore = None,
                 event_store: EventStore = None, observer: BanditObserver = None):
        self.bandit_config = bandit_config or BanditConfig()
        self.encoder = ContextEncoder(encoder_config)

        if self.encoder.dimension != self.bandit_config.feature_dim:
            raise ValueError(
                f"Encoder produces {self.encoder.dimension} dimensions but the bandit expects "
                f"{self.bandit_config.feature_dim}"
            )

        self.selector = LinUCBSelector(self.bandit_config)
        self.model_store = model_store or BanditModelStore(InMemoryModelBackend(), self.bandit_config)
        self.event_store = event_store or InMemoryEventStore()
        self.observer = observer or LoggingObserver()

        self.attribution = RewardAttributionPipeline(
            config=attribution_config,
            bandit_config=self.bandit_config,
            encoder=self.encoder,
            event_store=self.event_store,
            learner=self._learn_from_impression,
            observer=self.observer,
        )

        # The stripe of an (identity, arm) serialises its load -> update -> save
        self._update_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._metrics_lock = threading.Lock()

        # Performance tracking
        self.metrics = {
            'total_selections': 0,
            'fallback_selections': 0,
            'model_updates': 0,
            'failed_updates': 0,
            'impressions_recorded': 0,
            'actions_recorded': 0,
            'rewards_attributed': 0,
            'avg_response_time': 0.0,
        }

        logger.info(f"Bandit recommendation engine initialised with {len(self.bandit_config.arms)} strategies")

    @classmethod
    def from_settings(cls, settings: Settings, observer: BanditObserver = None) -> 'BanditRecommendationEngine':
        """Wire storage backends from environment settings."""
        bandit_config = settings.bandit_config()
        cache_config = settings.cache_config()

        if settings.storage_backend == 'redis':
            backend = RedisModelBackend.from_settings(
                settings.redis_host, settings.redis_port, settings.redis_password, settings.redis_db,
                key_prefix=cache_config.key_prefix,
            )
            cache = RedisCache(backend.client)
            event_store = InMemoryEventStore()
            logger.warning("Redis backend keeps impressions and actions in process memory")
        elif settings.storage_backend == 'sql':
            engine = create_database_engine(settings.database_config())
            create_tables(engine)
            backend = SQLModelBackend(engine)
            cache = MemoryCache()
            event_store = SQLEventStore(engine)
        else:
            backend = InMemoryModelBackend()
            cache = None
            event_store = InMemoryEventStore()

        model_store = BanditModelStore(backend, bandit_config, cache=cache, cache_config=cache_config)
        return cls(
            bandit_config=bandit_config,
            attribution_config=settings.attribution_config(),
            model_store=model_store,
            event_store=event_store,
            observer=observer,
        )

    # Strategy selection

    def select_strategy(self, context: ContextLike, identity: str,
                        user_features: Optional[Dict[str, Any]] = None,
                        now: Optional[datetime] = None) -> StrategySelection:
        """
        Choose the strategy to use for this request.

        Never raises: if every arm fails the fallback strategy is returned
        with zero confidence.
        """
        start_time = time.time()
        signature = None
        predictions: List[ArmPrediction] = []
        best = None

        try:
            encoded = self.encoder.encode(context, identity, user_features, now)
            signature = encoded.signature
            models = self.model_store.load_all(identity)
            predictions = self.selector.score_arms(models, encoded.vector)
            best = self.selector.choose(predictions)
        except Exception as e:
            logger.error(f"Strategy selection failed for {identity}: {e}")

        if best is None:
            selection = self._fallback_selection(signature)
            self._count('fallback_selections')
            self.observer.emit('fallback_used', identity=identity, arm_id=selection.arm_id)
        else:
            exploration_level = self._exploration_level(best)
            selection = StrategySelection(
                arm_id=best.arm_id,
                arm_name=best.arm_name,
                predicted_reward=best.predicted_reward,
                exploration_bonus=best.exploration_bonus,
                ucb=best.ucb,
                confidence=best.confidence,
                exploration_level=exploration_level,
                explanation=(
                    f"Selected {best.arm_name} strategy (confidence: {best.confidence * 100:.1f}%, "
                    f"exploration: {exploration_level * 100:.1f}%)"
                ),
                context_signature=signature,
                scores=[self._prediction_summary(prediction) for prediction in predictions],
            )

        self._record_selection_time(time.time() - start_time)

        self.observer.emit('strategy_selected', identity=identity, arm_id=selection.arm_id,
                           ucb=selection.ucb, fallback=selection.fallback, context=signature)
        return selection

    def _fallback_selection(self, signature: Optional[str]) -> StrategySelection:
        arm_id = self.bandit_config.resolve_fallback_arm()
        return StrategySelection(
            arm_id=arm_id,
            arm_name=self.bandit_config.arm_name(arm_id),
            predicted_reward=0.0,
            exploration_bonus=0.0,
            ucb=0.0,
            confidence=0.0,
            exploration_level=0.0,
            explanation='Using fallback strategy due to bandit error',
            fallback=True,
            context_signature=signature,
        )

    @staticmethod
    def _exploration_level(prediction: ArmPrediction) -> float:
        return safe_divide(prediction.exploration_bonus, prediction.predicted_reward + prediction.exploration_bonus)

    @staticmethod
    def _prediction_summary(prediction: ArmPrediction) -> Dict[str, Any]:
        return {
            'arm_id': prediction.arm_id,
            'predicted_reward': prediction.predicted_reward,
            'exploration_bonus': prediction.exploration_bonus,
            'ucb': prediction.ucb,
        }

    # Feedback

    def record_impression(self, identity: str, book_id: str, context: ContextLike, arm_id: str,
                          rank: int = 0, score: float = 0.0, shown_at: Optional[datetime] = None) -> str:
        """Record that a book was shown under a strategy. Returns the impression id."""
        impression_id = self.attribution.record_impression(identity, book_id, context, arm_id, rank, score,
                                                           shown_at)
        self._count('impressions_recorded')
        return impression_id

    def record_action(self, identity: str, book_id: str, action_type: str, value: Optional[float] = None,
                      timestamp: Optional[datetime] = None,
                      context: ContextLike = None) -> List[RewardAttribution]:
        """Record a user action and learn from the rewards it attributes."""
        attributions = self.attribution.record_action(identity, book_id, action_type, value, timestamp, context)
        self._count('actions_recorded')
        self._count('rewards_attributed', len(attributions))

        logger.info(f"Recorded action: identity={identity}, book={book_id}, action={action_type}, "
                    f"attributed={len(attributions)}")
        return attributions

    def update_model(self, arm_id: str, context: ContextLike, reward: float, identity: str,
                     context_time: Optional[datetime] = None,
                     now: Optional[datetime] = None) -> LearningResult:
        """
        Apply one reward to the (identity, arm) model and persist it.

        Args:
            arm_id: Strategy that earned the reward
            context: Context the strategy was chosen in
            reward: Observed reward
            identity: Identity owning the model
            context_time: Instant the context is encoded at, normally when
                the impression was shown; defaults to now
            now: Timestamp recorded on the model

        Raises:
            ValueError: If the arm is not configured
            ComputationError: If the rank-1 update is undefined; the stored model is untouched
            PersistenceError: If the updated model cannot be saved
        """
        if arm_id not in self.bandit_config.arm_ids:
            raise ValueError(f"Unknown strategy: {arm_id}")

        now = normalise_timestamp(now) or datetime.now()
        encoded = self.encoder.encode(context, identity, now=context_time or now)

        with self._lock_for(identity, arm_id):
            model = self.model_store.load(identity, arm_id)
            old_average = model.average_reward

            try:
                updated = self.selector.apply_update(model, encoded.vector, reward, now)
                self.model_store.save(identity, updated)
            except Exception as e:
                self._count('failed_updates')
                self.observer.emit('update_failed', identity=identity, arm_id=arm_id, error=str(e))
                raise

        improvement = updated.average_reward - old_average
        result = LearningResult(
            arm_id=arm_id,
            old_average=old_average,
            new_average=updated.average_reward,
            improvement=improvement,
            confidence=self.selector.prediction_confidence(updated),
            learning_rate=abs(improvement) / max(0.01, old_average),
            interaction_count=updated.interaction_count,
        )

        self._count('model_updates')
        self.observer.emit('model_updated', identity=identity, arm_id=arm_id, reward=float(reward),
                           new_average=result.new_average, interactions=result.interaction_count)
        return result

    def _learn_from_impression(self, impression: Impression, arm_id: str, reward: float) -> LearningResult:
        return self.update_model(arm_id, impression.context, reward, impression.identity,
                                 context_time=impression.shown_at)

    def _stripe(self, identity: str, arm_id: str) -> int:
        return hash((identity, arm_id)) % len(self._update_locks)

    def _lock_for(self, identity: str, arm_id: str) -> threading.Lock:
        return self._update_locks[self._stripe(identity, arm_id)]

    @contextmanager
    def _identity_locks(self, *identities: str):
        """Hold the update locks of every arm of the given identities, taken in stripe order."""
        stripes = sorted({self._stripe(identity, arm_id)
                          for identity in identities for arm_id in self.bandit_config.arm_ids})
        with ExitStack() as stack:
            for stripe in stripes:
                stack.enter_context(self._update_locks[stripe])
            yield

    # Statistics

    def get_stats(self, identity: str) -> BanditStats:
        """Per-arm learning summary for an identity."""
        models = self.model_store.load_all(identity)

        per_arm = []
        for arm_id, model in models.items():
            per_arm.append(ArmStats(
                arm_id=arm_id,
                arm_name=self.bandit_config.arm_name(arm_id),
                interactions=model.interaction_count,
                average_reward=model.average_reward,
                total_reward=model.total_reward,
                confidence=self.selector.model_confidence(model),
                last_updated=model.last_updated if model.interaction_count else None,
            ))

        trained = [arm for arm in per_arm if arm.interactions > 0]
        best_arm = max(trained, key=lambda arm: arm.average_reward).arm_id if trained else None

        return BanditStats(
            identity=identity,
            total_interactions=sum(arm.interactions for arm in per_arm),
            best_arm=best_arm,
            per_arm=per_arm,
        )

    def stats_frame(self, identity: str) -> pd.DataFrame:
        """Per-arm statistics as a DataFrame, best average reward first."""
        stats = self.get_stats(identity)
        frame = pd.DataFrame([arm.to_dict() for arm in stats.per_arm])
        frame['trained'] = frame['interactions'] >= self.bandit_config.min_interactions
        return frame.sort_values(['average_reward', 'interactions'], ascending=False).reset_index(drop=True)

    def get_metrics(self) -> Dict[str, Any]:
        """Get performance metrics."""
        with self._metrics_lock:
            return self.metrics.copy()

    def _count(self, key: str, amount: int = 1) -> None:
        with self._metrics_lock:
            self.metrics[key] += amount

    def _record_selection_time(self, response_time: float):
        """Count a selection and update the average response time."""
        with self._metrics_lock:
            self.metrics['total_selections'] += 1
            total = self.metrics['total_selections']
            current_avg = self.metrics['avg_response_time']
            self.metrics['avg_response_time'] = (current_avg * (total - 1) + response_time) / total

    # Operations

    def initialize_models(self, identity: str) -> Dict[str, int]:
        """Persist fresh models for every arm that has no stored state yet."""
        summary = {'initialized': 0, 'errors': 0}
        for arm_id in self.bandit_config.arm_ids:
            try:
                if self.model_store.has_model(identity, arm_id):
                    continue
                self.model_store.save(identity, self.selector.new_model(arm_id))
                summary['initialized'] += 1
            except PersistenceError as e:
                logger.error(f"Failed to initialise model {identity}/{arm_id}: {e}")
                summary['errors'] += 1

        logger.info(f"Initialised {summary['initialized']} model(s) for {identity}")
        return summary

    def reset(self, identity: str, arm_id: Optional[str] = None) -> int:
        """Forget learned state for one arm or every arm of an identity."""
        if arm_id is not None and arm_id not in self.bandit_config.arm_ids:
            raise ValueError(f"Unknown strategy: {arm_id}")
        return self.model_store.reset(identity, arm_id)

    def migrate_identity(self, anonymous: str, authenticated: str,
                         policy: Optional[str] = None) -> Dict[str, int]:
        """
        Move an anonymous identity's models, impressions and actions to an authenticated one.

        Updates to either identity wait until the models have been re-keyed.
        """
        with self._identity_locks(anonymous, authenticated):
            summary = self.model_store.migrate_identity(anonymous, authenticated, policy)
        impressions, actions = self.event_store.rename_identity(anonymous, authenticated)
        summary['impressions'] = impressions
        summary['actions'] = actions

        self.observer.emit('identity_migrated', anonymous=anonymous, authenticated=authenticated,
                           policy=policy or self.bandit_config.merge_policy, **summary)
        return summary

    def process_reward_signals(self, identity: Optional[str] = None, hours_back: float = 24,
                               now: Optional[datetime] = None) -> Dict[str, int]:
        """Batch job: learn from attributed rewards that were never applied to a model."""
        now = normalise_timestamp(now) or datetime.now()
        summary = self.attribution.process_pending(identity, since=now - timedelta(hours=hours_back), now=now)

        self.observer.emit('batch_processed', identity=identity or 'all', hours_back=hours_back, **summary)
        return summary
