"""
SQL persistence for bandit models, impressions and actions.

Uses SQLAlchemy Core so the same code runs against SQLite in development
and tests and PostgreSQL or MySQL in production.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from config.config import DatabaseConfig
from models.context_encoder import Context
from models.entities import Action, Impression
from models.exceptions import PersistenceError
from services.event_store import EventStore
from services.model_store import ModelBackend, Record

logger = logging.getLogger(__name__)

metadata = MetaData()

bandit_models = Table(
    'bandit_models',
    metadata,
    Column('identity', String(255), primary_key=True),
    Column('arm_id', String(64), primary_key=True),
    Column('theta', JSON, nullable=False),
    Column('a_matrix', JSON, nullable=False),
    Column('b_vector', JSON, nullable=False),
    Column('a_inverse', JSON),
    Column('interaction_count', Integer, nullable=False, default=0),
    Column('total_reward', Float, nullable=False, default=0.0),
    Column('average_reward', Float, nullable=False, default=0.0),
    Column('last_updated', DateTime),
)

recommendation_impressions = Table(
    'recommendation_impressions',
    metadata,
    Column('impression_id', String(64), primary_key=True),
    Column('identity', String(255), nullable=False, index=True),
    Column('book_id', String(255), nullable=False, index=True),
    Column('context', JSON),
    Column('arm_id', String(64), nullable=False),
    Column('rank', Integer),
    Column('score', Float),
    Column('shown_at', DateTime, nullable=False, index=True),
    Column('reward', Float),
    Column('attributed_at', DateTime),
    Column('learned_at', DateTime),
)

recommendation_actions = Table(
    'recommendation_actions',
    metadata,
    Column('action_id', String(64), primary_key=True),
    Column('identity', String(255), nullable=False, index=True),
    Column('book_id', String(255), nullable=False),
    Column('action_type', String(32), nullable=False),
    Column('value', Float),
    Column('context', JSON),
    Column('timestamp', DateTime, nullable=False),
)


def create_database_engine(config: DatabaseConfig = None) -> Engine:
    config = config or DatabaseConfig()
    return create_engine(config.get_database_url(), **config.get_engine_kwargs())


def create_tables(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    metadata.create_all(engine)
    logger.info(f"Database tables ready: {', '.join(metadata.tables)}")


def drop_tables(engine: Engine) -> None:
    metadata.drop_all(engine)


class SQLModelBackend(ModelBackend):
    """Model backend over the ``bandit_models`` table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _to_record(row) -> Record:
        return {
            'arm_id': row.arm_id,
            'theta': row.theta,
            'A': row.a_matrix,
            'b': row.b_vector,
            'A_inv': row.a_inverse,
            'interaction_count': row.interaction_count,
            'total_reward': row.total_reward,
            'average_reward': row.average_reward,
            'last_updated': row.last_updated.isoformat() if row.last_updated else None,
        }

    def get(self, identity: str, arm_id: str) -> Optional[Record]:
        query = select(bandit_models).where(
            and_(bandit_models.c.identity == identity, bandit_models.c.arm_id == arm_id)
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read model {identity}/{arm_id}: {e}") from e
        return self._to_record(row) if row is not None else None

    def put(self, identity: str, arm_id: str, record: Record) -> None:
        last_updated = record.get('last_updated')
        values = {
            'theta': record['theta'],
            'a_matrix': record['A'],
            'b_vector': record['b'],
            'a_inverse': record.get('A_inv'),
            'interaction_count': record.get('interaction_count', 0),
            'total_reward': record.get('total_reward', 0.0),
            'average_reward': record.get('average_reward', 0.0),
            'last_updated': datetime.fromisoformat(last_updated) if last_updated else None,
        }
        key = and_(bandit_models.c.identity == identity, bandit_models.c.arm_id == arm_id)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(update(bandit_models).where(key).values(**values))
                if result.rowcount == 0:
                    conn.execute(insert(bandit_models).values(identity=identity, arm_id=arm_id, **values))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save model {identity}/{arm_id}: {e}") from e

    def get_all(self, identity: str) -> Dict[str, Record]:
        query = select(bandit_models).where(bandit_models.c.identity == identity)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read models for {identity}: {e}") from e
        return {row.arm_id: self._to_record(row) for row in rows}

    def delete(self, identity: str, arm_id: Optional[str] = None) -> int:
        condition = bandit_models.c.identity == identity
        if arm_id is not None:
            condition = and_(condition, bandit_models.c.arm_id == arm_id)
        try:
            with self.engine.begin() as conn:
                return conn.execute(delete(bandit_models).where(condition)).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete models for {identity}: {e}") from e


class SQLEventStore(EventStore):
    """Event store over the impression and action tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _to_impression(row) -> Impression:
        return Impression(
            impression_id=row.impression_id,
            identity=row.identity,
            book_id=row.book_id,
            context=Context.from_dict(row.context),
            arm_id=row.arm_id,
            rank=row.rank,
            score=row.score,
            shown_at=row.shown_at,
            reward=row.reward,
            attributed_at=row.attributed_at,
            learned_at=row.learned_at,
        )

    @staticmethod
    def _to_action(row) -> Action:
        return Action(
            action_id=row.action_id,
            identity=row.identity,
            book_id=row.book_id,
            action_type=row.action_type,
            timestamp=row.timestamp,
            value=row.value,
            context=Context.from_dict(row.context) if row.context else None,
        )

    def _execute(self, statement, description: str):
        try:
            with self.engine.begin() as conn:
                return conn.execute(statement).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {description}: {e}") from e

    def _fetch(self, query, description: str):
        try:
            with self.engine.connect() as conn:
                return conn.execute(query).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {description}: {e}") from e

    def add_impression(self, impression: Impression) -> None:
        self._execute(insert(recommendation_impressions).values(
            impression_id=impression.impression_id,
            identity=impression.identity,
            book_id=impression.book_id,
            context=impression.context.to_dict(),
            arm_id=impression.arm_id,
            rank=impression.rank,
            score=impression.score,
            shown_at=impression.shown_at,
            reward=impression.reward,
            attributed_at=impression.attributed_at,
            learned_at=impression.learned_at,
        ), f"store impression {impression.impression_id}")

    def get_impression(self, impression_id: str) -> Optional[Impression]:
        rows = self._fetch(
            select(recommendation_impressions).where(recommendation_impressions.c.impression_id == impression_id),
            f"read impression {impression_id}",
        )
        return self._to_impression(rows[0]) if rows else None

    def find_impressions(self, identity: str, book_id: str, since: datetime,
                         until: datetime) -> List[Impression]:
        table = recommendation_impressions
        query = (
            select(table)
            .where(and_(
                table.c.identity == identity,
                table.c.book_id == book_id,
                table.c.shown_at >= since,
                table.c.shown_at <= until,
            ))
            .order_by(table.c.shown_at.desc())
        )
        return [self._to_impression(row) for row in self._fetch(query, f"find impressions of {book_id}")]

    def list_impressions(self, identity: str) -> List[Impression]:
        table = recommendation_impressions
        query = select(table).where(table.c.identity == identity).order_by(table.c.shown_at)
        return [self._to_impression(row) for row in self._fetch(query, f"list impressions of {identity}")]

    def set_impression_reward(self, impression_id: str, reward: float, attributed_at: datetime) -> None:
        table = recommendation_impressions
        updated = self._execute(
            update(table)
            .where(table.c.impression_id == impression_id)
            .values(reward=reward, attributed_at=attributed_at, learned_at=None),
            f"attribute reward to {impression_id}",
        )
        if not updated:
            logger.warning(f"Cannot attribute reward to unknown impression {impression_id}")

    def mark_learned(self, impression_id: str, learned_at: datetime) -> None:
        table = recommendation_impressions
        self._execute(
            update(table).where(table.c.impression_id == impression_id).values(learned_at=learned_at),
            f"mark impression {impression_id} learned",
        )

    def unlearned_rewarded_impressions(self, identity: Optional[str] = None,
                                       since: Optional[datetime] = None) -> List[Impression]:
        table = recommendation_impressions
        conditions = [table.c.reward.is_not(None), table.c.learned_at.is_(None)]
        if identity is not None:
            conditions.append(table.c.identity == identity)
        if since is not None:
            conditions.append(table.c.shown_at >= since)
        query = select(table).where(and_(*conditions)).order_by(table.c.shown_at)
        return [self._to_impression(row) for row in self._fetch(query, "list pending rewards")]

    def add_action(self, action: Action) -> None:
        self._execute(insert(recommendation_actions).values(
            action_id=action.action_id,
            identity=action.identity,
            book_id=action.book_id,
            action_type=action.action_type,
            value=action.value,
            context=action.context.to_dict() if action.context else None,
            timestamp=action.timestamp,
        ), f"store action {action.action_id}")

    def list_actions(self, identity: str) -> List[Action]:
        table = recommendation_actions
        query = select(table).where(table.c.identity == identity).order_by(table.c.timestamp)
        return [self._to_action(row) for row in self._fetch(query, f"list actions of {identity}")]

    def rename_identity(self, old_identity: str, new_identity: str) -> Tuple[int, int]:
        try:
            with self.engine.begin() as conn:
                impressions = conn.execute(
                    update(recommendation_impressions)
                    .where(recommendation_impressions.c.identity == old_identity)
                    .values(identity=new_identity)
                ).rowcount
                actions = conn.execute(
                    update(recommendation_actions)
                    .where(recommendation_actions.c.identity == old_identity)
                    .values(identity=new_identity)
                ).rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to re-key events {old_identity} -> {new_identity}: {e}") from e
        return impressions, actions
