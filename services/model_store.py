"""
Bandit Model Store

Loads and saves per-(identity, arm) LinUCB state through a pluggable
key-value backend. Reads are load-or-default: a missing, unreadable or
malformed record yields a fresh model. Writes surface failures as
PersistenceError so the caller of an update knows it was lost.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

from config.config import BanditConfig, CacheConfig
from models.contextual_bandit import BanditModel
from models.exceptions import ComputationError, ConfigurationError, PersistenceError
from services.cache import ModelCache

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class ModelBackend(ABC):
    """
    Key-value persistence keyed by (identity, arm_id).

    Every method raises PersistenceError when the underlying storage fails.
    """

    @abstractmethod
    def get(self, identity: str, arm_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def put(self, identity: str, arm_id: str, record: Record) -> None:
        """Idempotent upsert."""

    @abstractmethod
    def get_all(self, identity: str) -> Dict[str, Record]:
        ...

    @abstractmethod
    def delete(self, identity: str, arm_id: Optional[str] = None) -> int:
        """Delete one arm, or every arm when arm_id is None. Returns records removed."""


class InMemoryModelBackend(ModelBackend):
    """Process-local backend holding JSON-encoded records."""

    def __init__(self):
        self._records: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get(self, identity: str, arm_id: str) -> Optional[Record]:
        with self._lock:
            raw = self._records.get(identity, {}).get(arm_id)
        return json.loads(raw) if raw is not None else None

    def put(self, identity: str, arm_id: str, record: Record) -> None:
        try:
            raw = json.dumps(record)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot serialise model {identity}/{arm_id}: {e}") from e
        with self._lock:
            self._records.setdefault(identity, {})[arm_id] = raw

    def get_all(self, identity: str) -> Dict[str, Record]:
        with self._lock:
            records = dict(self._records.get(identity, {}))
        return {arm_id: json.loads(raw) for arm_id, raw in records.items()}

    def delete(self, identity: str, arm_id: Optional[str] = None) -> int:
        with self._lock:
            records = self._records.get(identity)
            if not records:
                return 0
            if arm_id is None:
                return len(self._records.pop(identity))
            return 1 if records.pop(arm_id, None) is not None else 0


class RedisModelBackend(ModelBackend):
    """One Redis hash per identity, one JSON field per arm."""

    def __init__(self, client: redis.Redis, key_prefix: str = 'bandit'):
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, host: str = 'localhost', port: int = 6379, password: str = None,
                      db: int = 0, key_prefix: str = 'bandit') -> 'RedisModelBackend':
        client = redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        return cls(client, key_prefix)

    def _key(self, identity: str) -> str:
        return f"{self.key_prefix}:models:{identity}"

    def get(self, identity: str, arm_id: str) -> Optional[Record]:
        try:
            raw = self.client.hget(self._key(identity), arm_id)
        except redis.RedisError as e:
            raise PersistenceError(f"Redis read failed for {identity}/{arm_id}: {e}") from e
        return json.loads(raw) if raw else None

    def put(self, identity: str, arm_id: str, record: Record) -> None:
        try:
            self.client.hset(self._key(identity), arm_id, json.dumps(record))
        except (redis.RedisError, TypeError, ValueError) as e:
            raise PersistenceError(f"Redis write failed for {identity}/{arm_id}: {e}") from e

    def get_all(self, identity: str) -> Dict[str, Record]:
        try:
            raw_records = self.client.hgetall(self._key(identity))
        except redis.RedisError as e:
            raise PersistenceError(f"Redis read failed for {identity}: {e}") from e
        return {arm_id: json.loads(raw) for arm_id, raw in raw_records.items()}

    def delete(self, identity: str, arm_id: Optional[str] = None) -> int:
        try:
            if arm_id is None:
                removed = len(self.client.hkeys(self._key(identity)))
                self.client.delete(self._key(identity))
                return removed
            return int(self.client.hdel(self._key(identity), arm_id))
        except redis.RedisError as e:
            raise PersistenceError(f"Redis delete failed for {identity}: {e}") from e


class BanditModelStore:
    """
    Per-identity model access for the selector.

    Wraps a backend with load-or-default reads, an optional TTL cache of
    whole identity snapshots and the identity migration policies.
    """

    def __init__(self, backend: ModelBackend = None, config: BanditConfig = None,
                 cache: Optional[ModelCache] = None, cache_config: CacheConfig = None):
        self.backend = backend or InMemoryModelBackend()
        self.config = config or BanditConfig()
        self.cache = cache
        self.cache_config = cache_config or CacheConfig()

        # Bumped on every invalidation; a snapshot read before a bump is never cached
        self._generation = 0
        self._cache_lock = threading.Lock()

    def _cache_key(self, identity: str) -> str:
        return f"{self.cache_config.key_prefix}:snapshot:{identity}"

    def _fresh(self, arm_id: str) -> BanditModel:
        return BanditModel.initial(arm_id, self.config.feature_dim, self.config.regularization)

    def _parse(self, identity: str, arm_id: str, record: Optional[Record]) -> Optional[BanditModel]:
        if record is None:
            return None
        try:
            model = BanditModel.from_record(record, self.config.feature_dim)
        except ConfigurationError as e:
            logger.warning(f"Discarding malformed model {identity}/{arm_id}: {e}")
            return None
        model.arm_id = arm_id
        return model

    def load(self, identity: str, arm_id: str) -> BanditModel:
        """Stored model for (identity, arm), or a fresh one. Never raises."""
        try:
            record = self.backend.get(identity, arm_id)
        except PersistenceError as e:
            logger.warning(f"Model read failed, using default for {identity}/{arm_id}: {e}")
            return self._fresh(arm_id)
        except ValueError as e:
            logger.warning(f"Unreadable model record {identity}/{arm_id}: {e}")
            return self._fresh(arm_id)
        return self._parse(identity, arm_id, record) or self._fresh(arm_id)

    def load_all(self, identity: str) -> Dict[str, BanditModel]:
        """Models for every configured arm, in canonical order. Never raises."""
        records = self.cache.get(self._cache_key(identity)) if self.cache is not None else None

        if records is None:
            generation = self._generation
            try:
                records = self.backend.get_all(identity)
            except (PersistenceError, ValueError) as e:
                logger.warning(f"Model read failed for {identity}, using defaults: {e}")
                records = {}
            else:
                self._fill_cache(identity, records, generation)

        models = {}
        for arm_id in self.config.arm_ids:
            models[arm_id] = self._parse(identity, arm_id, records.get(arm_id)) or self._fresh(arm_id)
        return models

    def has_model(self, identity: str, arm_id: str) -> bool:
        """
        Raises:
            PersistenceError: If the backend cannot be read
        """
        try:
            return self.backend.get(identity, arm_id) is not None
        except ValueError:
            return False

    def save(self, identity: str, model: BanditModel) -> None:
        """
        Upsert a model.

        Raises:
            PersistenceError: If the write fails
        """
        self.backend.put(identity, model.arm_id, model.to_record())
        self.invalidate(identity)
        logger.debug(f"Saved model {identity}/{model.arm_id} ({model.interaction_count} interactions)")

    def reset(self, identity: str, arm_id: Optional[str] = None) -> int:
        """Delete stored state so the next load starts fresh."""
        removed = self.backend.delete(identity, arm_id)
        self.invalidate(identity)
        logger.info(f"Reset {removed} model(s) for {identity}" + (f" arm {arm_id}" if arm_id else ""))
        return removed

    def invalidate(self, identity: str) -> None:
        if self.cache is None:
            return
        with self._cache_lock:
            self._generation += 1
            self.cache.delete(self._cache_key(identity))

    def _fill_cache(self, identity: str, records: Dict[str, Record], generation: int) -> None:
        if self.cache is None:
            return
        with self._cache_lock:
            if generation != self._generation:
                logger.debug(f"Not caching models for {identity}: invalidated during read")
                return
            self.cache.set(self._cache_key(identity), records, self.cache_config.ttl_seconds)

    def list_models(self, identity: str) -> List[BanditModel]:
        """Stored (not defaulted) models for an identity."""
        try:
            records = self.backend.get_all(identity)
        except (PersistenceError, ValueError) as e:
            logger.warning(f"Model listing failed for {identity}: {e}")
            return []
        models = [self._parse(identity, arm_id, record) for arm_id, record in records.items()]
        return [model for model in models if model is not None]

    def migrate_identity(self, anonymous: str, authenticated: str, policy: Optional[str] = None,
                         now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Re-key every model of an anonymous identity onto an authenticated one.

        When the authenticated identity already owns a model for the same arm
        the policy decides: ``merge`` combines both, ``keep_authenticated``
        drops the anonymous model and ``keep_anonymous`` overwrites.

        Raises:
            ValueError: If both identities are the same or the policy is unknown
            PersistenceError: If the backend fails
        """
        policy = policy or self.config.merge_policy
        if policy not in ('merge', 'keep_authenticated', 'keep_anonymous'):
            raise ValueError(f"Unsupported merge policy: {policy}")
        if anonymous == authenticated:
            raise ValueError("Cannot migrate an identity onto itself")

        summary = {'moved': 0, 'merged': 0, 'kept_authenticated': 0, 'replaced': 0, 'skipped': 0}

        for arm_id, record in self.backend.get_all(anonymous).items():
            anonymous_model = self._parse(anonymous, arm_id, record)
            if anonymous_model is None:
                summary['skipped'] += 1
                continue

            existing = self._parse(authenticated, arm_id, self.backend.get(authenticated, arm_id))

            if existing is None:
                target = anonymous_model
                summary['moved'] += 1
            elif policy == 'keep_authenticated':
                summary['kept_authenticated'] += 1
                continue
            elif policy == 'keep_anonymous':
                target = anonymous_model
                summary['replaced'] += 1
            else:
                try:
                    target = existing.merge(anonymous_model, self.config.regularization, now)
                except ComputationError as e:
                    logger.error(f"Could not merge models for arm {arm_id}, keeping authenticated: {e}")
                    summary['skipped'] += 1
                    continue
                summary['merged'] += 1

            self.backend.put(authenticated, arm_id, target.to_record())

        self.backend.delete(anonymous)
        self.invalidate(anonymous)
        self.invalidate(authenticated)

        logger.info(f"Migrated models {anonymous} -> {authenticated} with policy {policy}: {summary}")
        return summary
