"""
Tests for model persistence: store semantics, backends and identity migration.
"""

from datetime import timedelta
from unittest.mock import Mock

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config.config import CacheConfig
from models.context_encoder import Context
from models.entities import Action, Impression
from models.exceptions import PersistenceError
from services.cache import MemoryCache, RedisCache
from services.database import SQLEventStore, SQLModelBackend, create_tables
from services.model_store import (
    BanditModelStore,
    InMemoryModelBackend,
    ModelBackend,
    RedisModelBackend,
)


@pytest.fixture
def sqlite_engine():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    create_tables(engine)
    yield engine
    engine.dispose()


def trained_model(selector, arm_id, rewards, seed=0):
    rng = np.random.default_rng(seed)
    model = selector.new_model(arm_id)
    for reward in rewards:
        x = rng.normal(size=44)
        model = selector.apply_update(model, x / np.linalg.norm(x), reward)
    return model


class InterleavedBackend(InMemoryModelBackend):
    """Runs a callback after reading a snapshot, before returning it."""

    during_read = None

    def get_all(self, identity):
        records = super().get_all(identity)
        callback, self.during_read = self.during_read, None
        if callback is not None:
            callback()
        return records


class TestBanditModelStore:
    """Test load-or-default reads and surfaced writes."""

    def test_missing_model_loads_fresh(self, model_store):
        model = model_store.load('reader-1', 'contextual_mood')
        assert model.arm_id == 'contextual_mood'
        assert np.array_equal(model.A, np.eye(44))
        assert model.interaction_count == 0

    def test_save_then_load(self, model_store, selector):
        model = trained_model(selector, 'contextual_mood', [1.0, 0.5])
        model_store.save('reader-1', model)

        loaded = model_store.load('reader-1', 'contextual_mood')
        assert np.array_equal(loaded.theta, model.theta)
        assert np.array_equal(loaded.A, model.A)
        assert np.array_equal(loaded.b, model.b)
        assert loaded.interaction_count == 2

    def test_read_failure_degrades_to_default(self, bandit_config):
        backend = Mock(spec=ModelBackend)
        backend.get.side_effect = PersistenceError("connection reset")
        backend.get_all.side_effect = PersistenceError("connection reset")
        store = BanditModelStore(backend, bandit_config)

        assert store.load('reader-1', 'contextual_mood').interaction_count == 0
        models = store.load_all('reader-1')
        assert list(models) == bandit_config.arm_ids

    def test_malformed_record_degrades_to_default(self, bandit_config):
        backend = InMemoryModelBackend()
        backend.put('reader-1', 'contextual_mood', {'arm_id': 'contextual_mood', 'theta': [1.0, 2.0],
                                                    'A': [[1.0]], 'b': [0.0]})
        store = BanditModelStore(backend, bandit_config)

        model = store.load('reader-1', 'contextual_mood')
        assert model.interaction_count == 0
        assert model.theta.shape == (44,)

    def test_write_failure_is_surfaced(self, bandit_config, selector):
        backend = Mock(spec=ModelBackend)
        backend.put.side_effect = PersistenceError("disk full")
        store = BanditModelStore(backend, bandit_config)

        with pytest.raises(PersistenceError):
            store.save('reader-1', selector.new_model('contextual_mood'))

    def test_save_is_idempotent_upsert(self, model_store, selector):
        model = trained_model(selector, 'trending_popular', [1.0])
        model_store.save('reader-1', model)
        model_store.save('reader-1', model)

        assert len(model_store.list_models('reader-1')) == 1

    def test_reset(self, model_store, selector):
        model_store.save('reader-1', trained_model(selector, 'trending_popular', [1.0]))
        model_store.save('reader-1', trained_model(selector, 'contextual_mood', [1.0]))

        assert model_store.reset('reader-1', 'trending_popular') == 1
        assert model_store.load('reader-1', 'trending_popular').interaction_count == 0
        assert model_store.load('reader-1', 'contextual_mood').interaction_count == 1
        assert model_store.reset('reader-1') == 1
        assert model_store.list_models('reader-1') == []


class TestModelCache:
    """Test the snapshot cache in front of the backend."""

    def test_load_all_is_cached_and_save_invalidates(self, bandit_config, selector):
        backend = InMemoryModelBackend()
        store = BanditModelStore(backend, bandit_config, cache=MemoryCache(), cache_config=CacheConfig(ttl_seconds=60))

        store.load_all('reader-1')
        backend.put('reader-1', 'contextual_mood', trained_model(selector, 'contextual_mood', [1.0]).to_record())
        # still served from the cache
        assert store.load_all('reader-1')['contextual_mood'].interaction_count == 0

        store.save('reader-1', trained_model(selector, 'contextual_mood', [1.0, 1.0]))
        assert store.load_all('reader-1')['contextual_mood'].interaction_count == 2

    def test_empty_memory_cache_still_caches(self, bandit_config):
        cache = MemoryCache()
        store = BanditModelStore(InMemoryModelBackend(), bandit_config, cache=cache,
                                 cache_config=CacheConfig(ttl_seconds=60))

        store.load_all('reader-1')
        assert len(cache) == 1

        store.reset('reader-1')
        assert len(cache) == 0

    def test_snapshot_read_before_a_save_is_not_cached(self, bandit_config, selector):
        backend = InterleavedBackend()
        store = BanditModelStore(backend, bandit_config, cache=MemoryCache(), cache_config=CacheConfig(ttl_seconds=60))
        backend.during_read = lambda: store.save('reader-1', trained_model(selector, 'contextual_mood', [1.0]))

        stale = store.load_all('reader-1')
        assert stale['contextual_mood'].interaction_count == 0
        assert store.load_all('reader-1')['contextual_mood'].interaction_count == 1

    def test_memory_cache_expires(self):
        clock = Mock(return_value=100.0)
        cache = MemoryCache(clock=clock)
        cache.set('key', {'value': 1}, ttl=10)
        assert cache.get('key') == {'value': 1}

        clock.return_value = 111.0
        assert cache.get('key') is None

    def test_zero_ttl_disables_caching(self):
        cache = MemoryCache()
        cache.set('key', 1, ttl=0)
        assert cache.get('key') is None

    def test_redis_cache(self, fake_redis):
        cache = RedisCache(fake_redis)
        cache.set('key', {'arm': [1.0, 2.0]}, ttl=30)
        assert cache.get('key') == {'arm': [1.0, 2.0]}
        cache.delete('key')
        assert cache.get('key') is None

    def test_redis_cache_failures_are_misses(self, fake_redis):
        fake_redis.fail = True
        cache = RedisCache(fake_redis)
        cache.set('key', 1, ttl=30)
        assert cache.get('key') is None


class TestRedisModelBackend:
    """Test the Redis hash backend."""

    def test_round_trip(self, bandit_config, selector, fake_redis):
        store = BanditModelStore(RedisModelBackend(fake_redis), bandit_config)
        model = trained_model(selector, 'semantic_similarity', [1.0, -0.5, 3.0])
        store.save('reader-1', model)

        assert 'bandit:models:reader-1' in fake_redis.hashes
        loaded = store.load('reader-1', 'semantic_similarity')
        assert np.array_equal(loaded.A, model.A)
        assert np.array_equal(loaded.theta, model.theta)

    def test_failures_become_persistence_errors(self, bandit_config, selector, fake_redis):
        fake_redis.fail = True
        backend = RedisModelBackend(fake_redis)
        with pytest.raises(PersistenceError):
            backend.put('reader-1', 'semantic_similarity', selector.new_model('semantic_similarity').to_record())

        store = BanditModelStore(backend, bandit_config)
        assert store.load('reader-1', 'semantic_similarity').interaction_count == 0

    def test_delete(self, fake_redis, selector):
        backend = RedisModelBackend(fake_redis)
        backend.put('reader-1', 'A', selector.new_model('A').to_record())
        backend.put('reader-1', 'B', selector.new_model('B').to_record())

        assert backend.delete('reader-1', 'A') == 1
        assert backend.delete('reader-1') == 1
        assert backend.get_all('reader-1') == {}


class TestSQLModelBackend:
    """Test the SQLAlchemy backend against in-memory SQLite."""

    def test_round_trip_is_bit_identical(self, sqlite_engine, bandit_config, selector):
        store = BanditModelStore(SQLModelBackend(sqlite_engine), bandit_config)
        model = trained_model(selector, 'collaborative_filtering', [0.997, 1.0, -1.0])
        store.save('reader-1', model)

        loaded = store.load('reader-1', 'collaborative_filtering')
        assert np.array_equal(loaded.theta, model.theta)
        assert np.array_equal(loaded.A, model.A)
        assert np.array_equal(loaded.b, model.b)
        assert loaded.interaction_count == 3
        assert loaded.last_updated == model.last_updated

    def test_upsert_overwrites(self, sqlite_engine, bandit_config, selector):
        backend = SQLModelBackend(sqlite_engine)
        store = BanditModelStore(backend, bandit_config)
        store.save('reader-1', trained_model(selector, 'contextual_basic', [1.0]))
        store.save('reader-1', trained_model(selector, 'contextual_basic', [1.0, 2.0]))

        records = backend.get_all('reader-1')
        assert list(records) == ['contextual_basic']
        assert records['contextual_basic']['interaction_count'] == 2

    def test_missing_table_is_persistence_error(self, selector):
        engine = create_engine("sqlite://", poolclass=StaticPool)
        backend = SQLModelBackend(engine)
        with pytest.raises(PersistenceError):
            backend.get('reader-1', 'contextual_basic')
        with pytest.raises(PersistenceError):
            backend.put('reader-1', 'contextual_basic', selector.new_model('contextual_basic').to_record())


class TestSQLEventStore:
    """Test impression and action persistence in SQL."""

    def make_impression(self, impression_id, shown_at, identity='reader-1', book_id='B1'):
        return Impression(
            impression_id=impression_id,
            identity=identity,
            book_id=book_id,
            context=Context(mood='curious'),
            arm_id='semantic_similarity',
            rank=1,
            score=0.5,
            shown_at=shown_at,
        )

    def test_find_impressions_in_window(self, sqlite_engine, now):
        store = SQLEventStore(sqlite_engine)
        store.add_impression(self.make_impression('old', now - timedelta(days=10)))
        store.add_impression(self.make_impression('recent', now - timedelta(hours=2)))
        store.add_impression(self.make_impression('newest', now - timedelta(hours=1)))
        store.add_impression(self.make_impression('other-book', now, book_id='B2'))

        matches = store.find_impressions('reader-1', 'B1', now - timedelta(days=7), now)
        assert [imp.impression_id for imp in matches] == ['newest', 'recent']
        assert matches[0].context == Context(mood='curious')

    def test_reward_and_learned_markers(self, sqlite_engine, now):
        store = SQLEventStore(sqlite_engine)
        store.add_impression(self.make_impression('imp-1', now))

        store.set_impression_reward('imp-1', 0.9, now)
        assert [imp.impression_id for imp in store.unlearned_rewarded_impressions()] == ['imp-1']

        store.mark_learned('imp-1', now)
        assert store.unlearned_rewarded_impressions() == []
        assert store.get_impression('imp-1').reward == pytest.approx(0.9)

    def test_rename_identity(self, sqlite_engine, now):
        store = SQLEventStore(sqlite_engine)
        store.add_impression(self.make_impression('imp-1', now, identity='anon'))
        store.add_action(Action('act-1', 'anon', 'B1', 'click', now))

        assert store.rename_identity('anon', 'reader-1') == (1, 1)
        assert store.list_impressions('reader-1')[0].impression_id == 'imp-1'
        assert store.list_actions('reader-1')[0].action_type == 'click'


class TestIdentityMigration:
    """Test re-keying anonymous models onto authenticated identities."""

    def setup_identities(self, store, selector):
        store.save('anon', trained_model(selector, 'contextual_mood', [1.0, 1.0], seed=1))
        store.save('anon', trained_model(selector, 'trending_popular', [0.5], seed=2))
        store.save('user', trained_model(selector, 'contextual_mood', [-1.0], seed=3))

    def test_merge_combines_statistics(self, model_store, selector):
        self.setup_identities(model_store, selector)
        anon_model = model_store.load('anon', 'contextual_mood')
        user_model = model_store.load('user', 'contextual_mood')

        summary = model_store.migrate_identity('anon', 'user')

        assert summary['merged'] == 1
        assert summary['moved'] == 1
        merged = model_store.load('user', 'contextual_mood')
        assert merged.interaction_count == 3
        assert merged.total_reward == pytest.approx(1.0)
        assert np.allclose(merged.A, anon_model.A + user_model.A - np.eye(44))
        assert np.allclose(merged.b, anon_model.b + user_model.b)
        assert model_store.load('user', 'trending_popular').interaction_count == 1
        assert model_store.list_models('anon') == []

    def test_keep_authenticated(self, model_store, selector):
        self.setup_identities(model_store, selector)
        summary = model_store.migrate_identity('anon', 'user', policy='keep_authenticated')

        assert summary['kept_authenticated'] == 1
        assert model_store.load('user', 'contextual_mood').total_reward == pytest.approx(-1.0)

    def test_keep_anonymous(self, model_store, selector):
        self.setup_identities(model_store, selector)
        summary = model_store.migrate_identity('anon', 'user', policy='keep_anonymous')

        assert summary['replaced'] == 1
        assert model_store.load('user', 'contextual_mood').total_reward == pytest.approx(2.0)

    def test_invalid_migrations(self, model_store):
        with pytest.raises(ValueError):
            model_store.migrate_identity('same', 'same')
        with pytest.raises(ValueError):
            model_store.migrate_identity('anon', 'user', policy='coin_flip')
