"""
Shared fixtures for the bandit test suite.
"""

from datetime import datetime

import pytest
import redis

from config.config import AttributionConfig, BanditConfig, EncoderConfig
from models.context_encoder import ContextEncoder
from models.contextual_bandit import LinUCBSelector
from services.event_store import InMemoryEventStore
from services.model_store import BanditModelStore, InMemoryModelBackend
from services.observer import MetricsObserver
from services.recommendation_engine import BanditRecommendationEngine


class FakeRedis:
    """Minimal in-memory stand-in for the redis client calls the services make."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.hashes = {}
        self.values = {}

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def hget(self, key, field):
        self._check()
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field, value):
        self._check()
        self.hashes.setdefault(key, {})[field] = value
        return 1

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def hkeys(self, key):
        self._check()
        return list(self.hashes.get(key, {}))

    def hdel(self, key, field):
        self._check()
        return 1 if self.hashes.get(key, {}).pop(field, None) is not None else 0

    def get(self, key):
        self._check()
        return self.values.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.values[key] = value
        return True

    def delete(self, key):
        self._check()
        removed = int(key in self.values) + int(key in self.hashes)
        self.values.pop(key, None)
        self.hashes.pop(key, None)
        return removed


@pytest.fixture
def now():
    """A fixed Tuesday morning."""
    return datetime(2024, 3, 5, 9, 30)


@pytest.fixture
def encoder():
    return ContextEncoder(EncoderConfig())


@pytest.fixture
def bandit_config():
    return BanditConfig()


@pytest.fixture
def three_arm_config():
    return BanditConfig(arms=[
        {'arm_id': 'A', 'name': 'Strategy A'},
        {'arm_id': 'B', 'name': 'Strategy B'},
        {'arm_id': 'C', 'name': 'Strategy C'},
    ])


@pytest.fixture
def selector(bandit_config):
    return LinUCBSelector(bandit_config)


@pytest.fixture
def model_store(bandit_config):
    return BanditModelStore(InMemoryModelBackend(), bandit_config)


@pytest.fixture
def event_store():
    return InMemoryEventStore()


@pytest.fixture
def metrics_observer():
    return MetricsObserver()


@pytest.fixture
def engine(bandit_config, metrics_observer):
    return BanditRecommendationEngine(
        bandit_config=bandit_config,
        attribution_config=AttributionConfig(),
        observer=metrics_observer,
    )


@pytest.fixture
def three_arm_engine(three_arm_config, metrics_observer):
    return BanditRecommendationEngine(bandit_config=three_arm_config, observer=metrics_observer)


@pytest.fixture
def fake_redis():
    return FakeRedis()
