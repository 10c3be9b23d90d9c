"""
SQL persistence plumbing: engine lifecycle, unit-of-work sessions and the
table definitions for challenge instances, the completion ledger and
external feature flags.

sqlite URLs get a single shared connection so `:memory:` databases live as
long as the engine; anything else gets a bounded QueuePool.
"""
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from quest_engine.core.config import settings

logger = logging.getLogger("quest_engine")

metadata = MetaData()

_POOL_OPTIONS: Dict[str, Any] = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL; both fall back to settings."""
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return dict(_POOL_OPTIONS)


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)build the module engine and its session factory."""
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured")

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, echo=False, **_engine_options(url))
    _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.info(f"[db] engine ready ({_engine.dialect.name})")
    return _engine


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine, _session_factory = None, None


def get_engine() -> Engine:
    return _engine if _engine is not None else init_engine()


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


@contextmanager
def get_db_session():
    """One unit of work: commit on clean exit, roll back and re-raise otherwise."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive; tests and local resets only."""
    metadata.drop_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning(f"[db] connection check failed: {exc}")
        return False
    return True


PILLAR_COLUMNS = [
    f"{pillar}_{frequency}_points"
    for pillar in ("recognise", "release", "rewire", "reconnect")
    for frequency in ("daily", "weekly")
]

# Challenge instances (one row per user run through the 7-day challenge)
challenge_instances = Table(
    'challenge_instances',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('group_id', String(100), nullable=True, index=True),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('current_day', Integer, nullable=False, server_default='0'),
    Column('challenge_start_date', DateTime(timezone=True), nullable=False),
    Column('last_active_date', DateTime(timezone=True), nullable=False),
    Column('total_points', Integer, nullable=False, server_default='0'),
    *[Column(name, Integer, nullable=False, server_default='0') for name in PILLAR_COLUMNS],
    Column('unlocked_artifacts', JSON, nullable=False, default=list),
    Column('bonus_awarded', JSON, nullable=False, default=dict),
    Column('persona', String(100), nullable=True),
    Column('current_stage', Integer, nullable=True),
    Column('streak_days', Integer, nullable=False, server_default='0'),
    Column('longest_streak', Integer, nullable=False, server_default='0'),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_challenge_instances_status_start', 'status', 'challenge_start_date'),
    # At most one active instance per user
    Index(
        'uq_challenge_instances_one_active',
        'user_id',
        unique=True,
        postgresql_where=text("status = 'active'"),
        sqlite_where=text("status = 'active'"),
    ),
)

# Append-only completion ledger
quest_completions = Table(
    'quest_completions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('challenge_instance_id', String(64), ForeignKey('challenge_instances.id'), nullable=False),
    Column('quest_id', String(100), nullable=False),
    Column('category', String(50), nullable=False),
    Column('pillar', String(50), nullable=True),
    Column('points_earned', Integer, nullable=False),
    Column('challenge_day', Integer, nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=False),
    Column('payload', Text, nullable=True),
    Column('dedup_key', String(300), nullable=False),
    UniqueConstraint('dedup_key', name='uq_quest_completions_dedup_key'),
    Index('idx_quest_completions_user_quest', 'user_id', 'quest_id'),
    Index('idx_quest_completions_instance', 'challenge_instance_id', 'completed_at'),
)

# External feature completion flags (flows that gate quests)
feature_completions = Table(
    'feature_completions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('challenge_instance_id', String(64), nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'feature', name='uq_feature_completions_user_feature'),
)
