from models.context_encoder import Context, ContextEncoder, EncodedContext
from models.contextual_bandit import ArmPrediction, BanditModel, LearningResult, LinUCBSelector
from models.entities import (
    Action,
    ArmStats,
    BanditStats,
    Impression,
    RewardAttribution,
    StrategySelection,
)
from models.exceptions import (
    BanditError,
    ComputationError,
    ConfigurationError,
    PersistenceError,
)

__all__ = [
    'Action',
    'ArmPrediction',
    'ArmStats',
    'BanditError',
    'BanditModel',
    'BanditStats',
    'ComputationError',
    'ConfigurationError',
    'Context',
    'ContextEncoder',
    'EncodedContext',
    'Impression',
    'LearningResult',
    'LinUCBSelector',
    'PersistenceError',
    'RewardAttribution',
    'StrategySelection',
]
