"""
Configuration classes for the reading strategy bandit.

Every tunable of the encoder, the LinUCB selector and the reward
attribution pipeline lives here and is passed in at construction.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from categories import (
    DEFAULT_ALIAS_TARGET,
    FALLBACK_ARM,
    LEGACY_ARM_ALIASES,
    STRATEGY_ARMS,
)


@dataclass
class EncoderConfig:
    """Configuration for context encoding."""
    mood_dim: int = 8
    situation_dim: int = 8
    goal_dim: int = 8
    temporal_dim: int = 12
    user_dim: int = 8
    neutral_user_value: float = 0.5  # Default for preference/engagement/diversity
    morning_start_hour: int = 5
    afternoon_start_hour: int = 12
    evening_start_hour: int = 17
    night_start_hour: int = 21
    stale_after_hours: float = 6.0  # Stored contexts older than this are stale

    @property
    def total_dim(self) -> int:
        return self.mood_dim + self.situation_dim + self.goal_dim + self.temporal_dim + self.user_dim


@dataclass
class BanditConfig:
    """Configuration for the LinUCB strategy selector."""
    alpha: float = 0.1  # Exploration parameter
    regularization: float = 1.0  # Lambda, seeds A = lambda * I
    feature_dim: int = 44  # Must match EncoderConfig.total_dim
    arms: List[Dict] = None  # Ordered arm catalogue, first listed wins ties
    fallback_arm: str = FALLBACK_ARM  # Served with zero confidence on total failure
    legacy_arm_aliases: Dict[str, str] = None
    default_alias_target: str = DEFAULT_ALIAS_TARGET
    confidence_saturation: int = 100  # Interactions until prediction confidence is 1.0
    min_interactions: int = 5  # Interactions before a model is considered trained
    merge_policy: str = 'merge'  # Identity migration: merge, keep_authenticated, keep_anonymous
    tie_tolerance: float = 1e-12

    def __post_init__(self):
        """Initialise default arm configuration if not provided."""
        if self.arms is None:
            self.arms = [dict(arm) for arm in STRATEGY_ARMS]
        if self.legacy_arm_aliases is None:
            self.legacy_arm_aliases = dict(LEGACY_ARM_ALIASES)
        if self.regularization <= 0:
            raise ValueError("regularization must be positive to keep A invertible")
        if self.alpha < 0:
            raise ValueError("alpha must be non-negative")
        if not self.arms:
            raise ValueError("At least one arm must be configured")
        if self.merge_policy not in ('merge', 'keep_authenticated', 'keep_anonymous'):
            raise ValueError(f"Unsupported merge policy: {self.merge_policy}")

    @property
    def arm_ids(self) -> List[str]:
        return [arm['arm_id'] for arm in self.arms]

    def arm_name(self, arm_id: str) -> str:
        for arm in self.arms:
            if arm['arm_id'] == arm_id:
                return arm.get('name', arm_id)
        return arm_id

    def resolve_fallback_arm(self) -> str:
        """Fallback arm, or the first configured arm when it is not configured."""
        if self.fallback_arm in self.arm_ids:
            return self.fallback_arm
        return self.arm_ids[0]


@dataclass
class AttributionConfig:
    """Configuration for reward attribution."""
    window_hours: float = 168.0  # 7 day lookback
    decay_hours: float = 48.0  # exp(-dt / decay_hours)
    recency_bonus: float = 1.1
    normalize_recency: bool = True  # Share one action's credit across matches
    min_view_duration_ms: float = 2000.0  # Shorter views earn nothing
    default_rating: float = 3.0
    base_rewards: Dict[str, float] = field(default_factory=lambda: {
        'click': 1.0,
        'save': 3.0,
        'unsave': -1.0,
        'view_engaged': 0.5,
        'dismiss': -0.5,
        'share': 2.0,
    })


@dataclass
class CacheConfig:
    """Configuration for the model cache."""
    ttl_seconds: int = 60
    key_prefix: str = 'bandit'


@dataclass
class DatabaseConfig:
    """Configuration for database connections."""
    url: str = 'sqlite:///bandit.db'

    # Connection pool settings
    pool_pre_ping: bool = True
    pool_recycle: int = 3600
    echo: bool = False

    # SSL settings (optional)
    ssl_ca: Optional[str] = None

    def get_database_url(self) -> str:
        """Return the SQLAlchemy database URL."""
        return self.url

    def get_engine_kwargs(self) -> dict:
        """Get SQLAlchemy engine kwargs."""
        kwargs = {
            'pool_pre_ping': self.pool_pre_ping,
            'echo': self.echo,
        }
        if not self.url.startswith('sqlite'):
            kwargs['pool_recycle'] = self.pool_recycle

        if self.ssl_ca:
            kwargs['connect_args'] = {'sslrootcert': self.ssl_ca}

        return kwargs
