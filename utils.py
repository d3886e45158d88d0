"""
Utility Functions for the Reading Strategy Bandit

Contains helper functions for vector maths, encoding and feature engineering.
"""

import math
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as _pairwise_cosine

from categories import get_categories


def encode_categorical_feature(value: str, category_name: str, dim: int = 8) -> List[float]:
    """
    Encode a semantic categorical value through its lookup table.

    Args:
        value: The categorical value to encode (case-insensitive)
        category_name: Name of the category (must exist in categories.py)
        dim: Dimension of the returned vector

    Returns:
        Copy of the table vector, or the zero vector for unknown/missing values

    Example:
        >>> encode_categorical_feature('relaxation', 'goal')
        [0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0]

        >>> encode_categorical_feature('grumpy', 'mood')
        [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    """
    try:
        table = get_categories(category_name)
    except KeyError:
        raise ValueError(f"Unknown category name: {category_name}")

    if not value or not isinstance(value, str):
        return [0.0] * dim

    encoded = table.get(value.lower())
    if encoded is None:
        return [0.0] * dim

    return list(encoded[:dim]) + [0.0] * max(0, dim - len(encoded))


def encode_one_hot(value: str, categories: Sequence[str]) -> List[float]:
    """
    One-hot encode a value against an ordered category list.

    Unknown values produce the all-zero vector.
    """
    features = [0.0] * len(categories)
    if value in categories:
        features[list(categories).index(value)] = 1.0
    return features


def cyclical_encoding(value: float, period: float) -> List[float]:
    """
    Encode a periodic value as [sin, cos] on the unit circle.

    Example:
        >>> cyclical_encoding(6, 24)
        [1.0, 6.123233995736766e-17]
    """
    angle = 2 * math.pi * value / period
    return [math.sin(angle), math.cos(angle)]


def l2_normalise(vector: np.ndarray) -> np.ndarray:
    """
    L2-normalise a vector.

    A vector with magnitude exactly zero is returned unchanged.
    """
    magnitude = float(np.linalg.norm(vector))
    if magnitude == 0.0:
        return vector
    return vector / magnitude


def cosine_similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors have different lengths
    """
    a = np.asarray(vector_a, dtype=float).reshape(1, -1)
    b = np.asarray(vector_b, dtype=float).reshape(1, -1)
    if a.shape != b.shape:
        raise ValueError('Vectors must have the same length')
    return float(_pairwise_cosine(a, b)[0][0])


def normalise_numeric_feature(value: float, min_val: float, max_val: float,
                              default_val: float = 0.0) -> float:
    """
    Normalise a numeric feature to [0, 1] range.

    Args:
        value: Value to normalise
        min_val: Minimum expected value
        max_val: Maximum expected value
        default_val: Default value if input is None or invalid

    Returns:
        Normalised value between 0 and 1
    """
    if value is None or not isinstance(value, (int, float)):
        value = default_val

    if max_val <= min_val:
        return 0.0

    value = clamp(value, min_val, max_val)
    return (value - min_val) / (max_val - min_val)


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator value
        denominator: Denominator value
        default: Default value to return if division by zero

    Returns:
        Result of division or default value
    """
    if denominator == 0:
        return default
    return numerator / denominator


def normalise_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """
    Express a timestamp as naive local time, the convention of ``datetime.now()``.

    Aware values are converted to the local zone and stripped of their tzinfo
    so they order correctly against naive ones. Naive values and None pass
    through unchanged.

    Example:
        >>> normalise_timestamp(datetime(2024, 3, 5, 9, 30)).tzinfo is None
        True
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)
