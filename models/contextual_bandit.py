"""
Contextual Bandit Model for Strategy Selection

Implements LinUCB (Linear Upper Confidence Bound) over a small, fixed set
of recommendation strategies (arms). Each (identity, arm) pair owns a
disjoint ridge regression:

    A     = lambda * I + sum(x x^T)
    b     = sum(r x)
    theta = A^-1 b
    ucb   = theta . x + alpha * sqrt(x^T A^-1 x)

A^-1 is maintained incrementally with the Sherman-Morrison rank-1 formula
so an update costs O(d^2) instead of a fresh O(d^3) inversion.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from config.config import BanditConfig
from models.exceptions import ComputationError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class BanditModel:
    """Learner state for one (identity, arm) pair."""
    arm_id: str
    theta: np.ndarray
    A: np.ndarray
    b: np.ndarray
    A_inv: np.ndarray
    interaction_count: int = 0
    total_reward: float = 0.0
    average_reward: float = 0.0
    last_updated: datetime = None

    @classmethod
    def initial(cls, arm_id: str, dim: int, regularization: float,
                now: Optional[datetime] = None) -> 'BanditModel':
        """Fresh model: A = lambda * I, b = 0, theta = 0."""
        return cls(
            arm_id=arm_id,
            theta=np.zeros(dim),
            A=regularization * np.eye(dim),
            b=np.zeros(dim),
            A_inv=np.eye(dim) / regularization,
            last_updated=now or datetime.now(),
        )

    @property
    def dimension(self) -> int:
        return int(self.b.shape[0])

    def copy(self) -> 'BanditModel':
        return BanditModel(
            arm_id=self.arm_id,
            theta=self.theta.copy(),
            A=self.A.copy(),
            b=self.b.copy(),
            A_inv=self.A_inv.copy(),
            interaction_count=self.interaction_count,
            total_reward=self.total_reward,
            average_reward=self.average_reward,
            last_updated=self.last_updated,
        )

    def merge(self, other: 'BanditModel', regularization: float,
              now: Optional[datetime] = None) -> 'BanditModel':
        """
        Combine the evidence of two models for the same arm.

        Both started from lambda * I, so the prior is counted once:
        A = A1 + A2 - lambda * I and b = b1 + b2.

        Raises:
            ComputationError: If the merged matrix cannot be inverted
        """
        A = self.A + other.A - regularization * np.eye(self.dimension)
        b = self.b + other.b
        A_inv = _checked_inverse(A, self.arm_id)

        interaction_count = self.interaction_count + other.interaction_count
        total_reward = self.total_reward + other.total_reward
        timestamps = [ts for ts in (self.last_updated, other.last_updated) if ts]

        return BanditModel(
            arm_id=self.arm_id,
            theta=A_inv @ b,
            A=A,
            b=b,
            A_inv=A_inv,
            interaction_count=interaction_count,
            total_reward=total_reward,
            average_reward=total_reward / interaction_count if interaction_count else 0.0,
            last_updated=max(timestamps) if timestamps else (now or datetime.now()),
        )

    def to_record(self) -> Dict[str, Any]:
        """Serialise to plain lists and scalars for a key-value backend."""
        return {
            'arm_id': self.arm_id,
            'theta': self.theta.tolist(),
            'A': self.A.tolist(),
            'b': self.b.tolist(),
            'A_inv': self.A_inv.tolist(),
            'interaction_count': self.interaction_count,
            'total_reward': self.total_reward,
            'average_reward': self.average_reward,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any], dim: int) -> 'BanditModel':
        """
        Rebuild a model from a stored record.

        Raises:
            ConfigurationError: If the record is malformed or has the wrong shape
        """
        try:
            theta = np.asarray(record['theta'], dtype=float)
            A = np.asarray(record['A'], dtype=float)
            b = np.asarray(record['b'], dtype=float)
            A_inv = record.get('A_inv')
            last_updated = record.get('last_updated')

            if theta.shape != (dim,) or b.shape != (dim,) or A.shape != (dim, dim):
                raise ConfigurationError(
                    f"Stored model for arm {record.get('arm_id')} has shapes "
                    f"theta={theta.shape} A={A.shape} b={b.shape}, expected dimension {dim}"
                )
            if not (np.all(np.isfinite(theta)) and np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
                raise ConfigurationError(f"Stored model for arm {record.get('arm_id')} has non-finite values")

            if A_inv is None:
                A_inv = _checked_inverse(A, record.get('arm_id'))
            else:
                A_inv = np.asarray(A_inv, dtype=float)
                if A_inv.shape != (dim, dim) or not np.all(np.isfinite(A_inv)):
                    raise ConfigurationError(f"Stored inverse for arm {record.get('arm_id')} is malformed")

            return cls(
                arm_id=str(record['arm_id']),
                theta=theta,
                A=A,
                b=b,
                A_inv=A_inv,
                interaction_count=int(record.get('interaction_count', 0)),
                total_reward=float(record.get('total_reward', 0.0)),
                average_reward=float(record.get('average_reward', 0.0)),
                last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            )
        except ConfigurationError:
            raise
        except ComputationError as e:
            raise ConfigurationError(str(e)) from e
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed bandit model record: {e}") from e


@dataclass
class ArmPrediction:
    arm_id: str
    arm_name: str
    predicted_reward: float
    exploration_bonus: float
    ucb: float
    confidence: float


@dataclass
class LearningResult:
    arm_id: str
    old_average: float
    new_average: float
    improvement: float
    confidence: float
    learning_rate: float
    interaction_count: int


def _checked_inverse(matrix: np.ndarray, arm_id: str = None) -> np.ndarray:
    try:
        inverse = np.linalg.inv(matrix)
    except np.linalg.LinAlgError as e:
        raise ComputationError(f"Matrix inversion failed for arm {arm_id}: {e}", arm_id) from e
    if not np.all(np.isfinite(inverse)):
        raise ComputationError(f"Matrix inversion produced non-finite values for arm {arm_id}", arm_id)
    return inverse


class LinUCBSelector:
    """
    LinUCB strategy selector.

    Scores every configured arm for a context vector, picks the arm with the
    highest upper confidence bound and applies learning updates. The
    selector decides which scoring strategy to trust; producing the actual
    ranked books for that strategy is the caller's concern.
    """

    def __init__(self, config: BanditConfig):
        self.config = config
        logger.info(f"Initialised LinUCB selector with alpha={config.alpha}, "
                    f"lambda={config.regularization}, arms={config.arm_ids}")

    def new_model(self, arm_id: str, now: Optional[datetime] = None) -> BanditModel:
        return BanditModel.initial(arm_id, self.config.feature_dim, self.config.regularization, now)

    def predict(self, model: BanditModel, x: np.ndarray) -> ArmPrediction:
        """
        Score one arm.

        Raises:
            ComputationError: If the confidence width is undefined
        """
        x = self._as_vector(x)
        predicted_reward = float(model.theta @ x)
        variance = float(x @ model.A_inv @ x)

        # A^-1 is positive-definite, so only rounding can push this below zero
        if variance < 0 and variance > -1e-12:
            variance = 0.0
        if not np.isfinite(predicted_reward) or not np.isfinite(variance) or variance < 0:
            raise ComputationError(
                f"Undefined confidence bound for arm {model.arm_id} (variance={variance})", model.arm_id
            )

        exploration_bonus = self.config.alpha * float(np.sqrt(variance))
        return ArmPrediction(
            arm_id=model.arm_id,
            arm_name=self.config.arm_name(model.arm_id),
            predicted_reward=predicted_reward,
            exploration_bonus=exploration_bonus,
            ucb=predicted_reward + exploration_bonus,
            confidence=self.prediction_confidence(model),
        )

    def score_arms(self, models: Mapping[str, BanditModel], x: np.ndarray) -> List[ArmPrediction]:
        """
        Predictions for every configured arm, in canonical order.

        An arm whose model is missing or whose computation fails is skipped
        and logged; it never blocks the others.
        """
        predictions = []
        for arm_id in self.config.arm_ids:
            model = models.get(arm_id)
            if model is None:
                logger.warning(f"No model loaded for arm {arm_id}, skipping")
                continue
            try:
                predictions.append(self.predict(model, x))
            except ComputationError as e:
                logger.error(f"Skipping arm {arm_id} during selection: {e}")
        return predictions

    def choose(self, predictions: List[ArmPrediction]) -> Optional[ArmPrediction]:
        """Highest UCB; the first prediction in canonical order wins ties."""
        best = None
        for prediction in predictions:
            if best is None or prediction.ucb > best.ucb + self.config.tie_tolerance:
                best = prediction
        return best

    def select_arm(self, models: Mapping[str, BanditModel], x: np.ndarray) -> str:
        """Arm maximising the UCB, or the fallback arm if every arm failed."""
        best = self.choose(self.score_arms(models, x))
        if best is None:
            fallback = self.config.resolve_fallback_arm()
            logger.error(f"All arms failed to score, falling back to {fallback}")
            return fallback
        return best.arm_id

    def apply_update(self, model: BanditModel, x: np.ndarray, reward: float,
                     now: Optional[datetime] = None) -> BanditModel:
        """
        Apply one LinUCB observation and return the updated model.

        The input model is left untouched so that a failed update can simply
        be discarded.

        Raises:
            ComputationError: If the rank-1 inverse update is undefined
        """
        x = self._as_vector(x)
        reward = float(reward)
        if not np.isfinite(reward):
            raise ComputationError(f"Non-finite reward {reward} for arm {model.arm_id}", model.arm_id)

        updated = model.copy()

        # Sherman-Morrison: (A + x x^T)^-1 = A^-1 - (A^-1 x)(A^-1 x)^T / (1 + x^T A^-1 x)
        u = updated.A_inv @ x
        denominator = 1.0 + float(x @ u)
        if not np.isfinite(denominator) or denominator <= 0:
            raise ComputationError(
                f"Rank-1 inverse update undefined for arm {model.arm_id} (denominator={denominator})",
                model.arm_id,
            )

        A_inv = updated.A_inv - np.outer(u, u) / denominator
        A_inv = (A_inv + A_inv.T) / 2.0
        if not np.all(np.isfinite(A_inv)):
            raise ComputationError(f"Inverse update produced non-finite values for arm {model.arm_id}",
                                   model.arm_id)

        updated.A = updated.A + np.outer(x, x)
        updated.b = updated.b + reward * x
        updated.A_inv = A_inv
        updated.theta = A_inv @ updated.b

        updated.interaction_count += 1
        updated.total_reward += reward
        updated.average_reward = updated.total_reward / updated.interaction_count
        updated.last_updated = now or datetime.now()

        return updated

    def prediction_confidence(self, model: BanditModel) -> float:
        """Confidence grows linearly with interactions until saturation."""
        return min(1.0, model.interaction_count / self.config.confidence_saturation)

    @staticmethod
    def model_confidence(model: BanditModel) -> float:
        """Blend of interaction volume and reward stability, used for reporting."""
        interaction_confidence = min(1.0, model.interaction_count / 50)
        reward_stability = max(0.0, 1 - abs(model.average_reward - 0.5))
        return (interaction_confidence + reward_stability) / 2

    def _as_vector(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float).ravel()
        if x.shape != (self.config.feature_dim,):
            raise ValueError(f"Expected a {self.config.feature_dim}-dimension context vector, got {x.shape}")
        return x
