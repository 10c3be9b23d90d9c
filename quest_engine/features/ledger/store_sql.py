"""
quest_engine/features/ledger/store_sql.py

SQLAlchemy Core challenge store (PostgreSQL in production, sqlite in tests).

Maintains an identical interface to InMemoryChallengeStore:
- Append-only completion ledger with insert-if-not-exists dedup keys
- Versioned (optimistic) instance writes
- Completion + instance update in a single transaction
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quest_engine.core.database import (
    challenge_instances,
    feature_completions,
    get_db_session,
    quest_completions,
)
from quest_engine.core.dates import ensure_aware
from quest_engine.core.errors import ConflictError, StaleInstanceError, StoreError
from quest_engine.models.challenge import ChallengeInstance, ChallengeStatus
from quest_engine.models.completion import QuestCompletion
from quest_engine.models.quest import Pillar

logger = logging.getLogger("quest_engine")


def _utc(moment: Optional[datetime]) -> Optional[datetime]:
    # sqlite drops offsets on write, so everything is stored as UTC
    if moment is None:
        return None
    return ensure_aware(moment).astimezone(timezone.utc)


def _pillar_column(pillar: Pillar, frequency: str) -> str:
    return f"{pillar.key}_{frequency}_points"


def _instance_values(instance: ChallengeInstance) -> dict:
    values = {
        "user_id": instance.user_id,
        "group_id": instance.group_id,
        "status": instance.status,
        "current_day": instance.current_day,
        "challenge_start_date": _utc(instance.challenge_start_date),
        "last_active_date": _utc(instance.last_active_date),
        "total_points": instance.total_points,
        "unlocked_artifacts": sorted(instance.unlocked_artifacts),
        "bonus_awarded": dict(instance.bonus_awarded),
        "persona": instance.persona,
        "current_stage": instance.current_stage,
        "streak_days": instance.streak_days,
        "longest_streak": instance.longest_streak,
    }
    for pillar in Pillar:
        values[_pillar_column(pillar, "daily")] = instance.daily_points.get(pillar, 0)
        values[_pillar_column(pillar, "weekly")] = instance.weekly_points.get(pillar, 0)
    return values


def _row_to_instance(row) -> ChallengeInstance:
    mapping = row._mapping
    return ChallengeInstance(
        id=row.id,
        user_id=row.user_id,
        group_id=row.group_id,
        status=row.status,
        current_day=row.current_day,
        challenge_start_date=ensure_aware(row.challenge_start_date),
        last_active_date=ensure_aware(row.last_active_date),
        total_points=row.total_points,
        daily_points={p: mapping[_pillar_column(p, "daily")] for p in Pillar},
        weekly_points={p: mapping[_pillar_column(p, "weekly")] for p in Pillar},
        unlocked_artifacts=set(row.unlocked_artifacts or []),
        bonus_awarded=dict(row.bonus_awarded or {}),
        persona=row.persona,
        current_stage=row.current_stage,
        streak_days=row.streak_days,
        longest_streak=row.longest_streak,
        version=row.version,
    )


def _row_to_completion(row) -> QuestCompletion:
    return QuestCompletion(
        id=row.id,
        user_id=row.user_id,
        challenge_instance_id=row.challenge_instance_id,
        quest_id=row.quest_id,
        category=row.category,
        pillar=row.pillar,
        points_earned=row.points_earned,
        challenge_day=row.challenge_day,
        completed_at=ensure_aware(row.completed_at),
        payload=row.payload,
    )


def _is_dedup_violation(exc: IntegrityError) -> bool:
    return "dedup_key" in str(exc.orig)


class SqlChallengeStore:
    """
    SQL-backed challenge store.

    Every SQLAlchemy failure surfaces as StoreError so callers can tell a
    system failure from a rejected completion.
    """

    # Instances --------------------------------------------------------
    def create_instance(self, instance: ChallengeInstance) -> ChallengeInstance:
        values = _instance_values(instance)
        values.update(id=instance.id, version=instance.version, created_at=datetime.now(timezone.utc))
        try:
            with get_db_session() as session:
                session.execute(insert(challenge_instances).values(**values))
        except IntegrityError as exc:
            raise ConflictError(f"User {instance.user_id} already has an active challenge") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create challenge instance: {exc}") from exc
        return instance.clone()

    def get_instance(self, instance_id: str) -> Optional[ChallengeInstance]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(challenge_instances).where(challenge_instances.c.id == instance_id)
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read challenge instance: {exc}") from exc
        return _row_to_instance(row) if row else None

    def get_active_instance(self, user_id: str) -> Optional[ChallengeInstance]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(challenge_instances)
                    .where(
                        and_(
                            challenge_instances.c.user_id == user_id,
                            challenge_instances.c.status == "active",
                        )
                    )
                    .order_by(challenge_instances.c.challenge_start_date.desc())
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read active challenge: {exc}") from exc
        return _row_to_instance(row) if row else None

    def list_instances(
        self,
        *,
        status: Optional[ChallengeStatus] = None,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
    ) -> List[ChallengeInstance]:
        filters = []
        if status is not None:
            filters.append(challenge_instances.c.status == status)
        if user_id is not None:
            filters.append(challenge_instances.c.user_id == user_id)
        if group_id is not None:
            filters.append(challenge_instances.c.group_id == group_id)
        if start_from is not None:
            filters.append(challenge_instances.c.challenge_start_date >= _utc(start_from))
        if start_before is not None:
            filters.append(challenge_instances.c.challenge_start_date < _utc(start_before))

        query = select(challenge_instances)
        if filters:
            query = query.where(and_(*filters))
        query = query.order_by(challenge_instances.c.created_at, challenge_instances.c.id)

        try:
            with get_db_session() as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to list challenge instances: {exc}") from exc
        return [_row_to_instance(row) for row in rows]

    @staticmethod
    def _versioned_update(session, instance: ChallengeInstance) -> None:
        values = _instance_values(instance)
        values["version"] = instance.version + 1
        result = session.execute(
            update(challenge_instances)
            .where(
                and_(
                    challenge_instances.c.id == instance.id,
                    challenge_instances.c.version == instance.version,
                )
            )
            .values(**values)
        )
        if result.rowcount == 0:
            raise StaleInstanceError(f"Challenge instance {instance.id} changed since it was read")

    def update_instance(self, instance: ChallengeInstance) -> ChallengeInstance:
        try:
            with get_db_session() as session:
                self._versioned_update(session, instance)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update challenge instance: {exc}") from exc
        updated = instance.clone()
        updated.version = instance.version + 1
        return updated

    def complete_active_instances(self, user_id: str) -> int:
        try:
            with get_db_session() as session:
                result = session.execute(
                    update(challenge_instances)
                    .where(
                        and_(
                            challenge_instances.c.user_id == user_id,
                            challenge_instances.c.status == "active",
                        )
                    )
                    .values(status="completed", version=challenge_instances.c.version + 1)
                )
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to complete active challenges: {exc}") from exc

    # Ledger -----------------------------------------------------------
    def commit_completion(
        self,
        completion: QuestCompletion,
        dedup_key: str,
        instance: ChallengeInstance,
    ) -> Optional[ChallengeInstance]:
        """Insert the ledger row and the versioned instance write in one transaction."""
        try:
            with get_db_session() as session:
                session.execute(
                    insert(quest_completions).values(
                        id=completion.id,
                        user_id=completion.user_id,
                        challenge_instance_id=completion.challenge_instance_id,
                        quest_id=completion.quest_id,
                        category=completion.category.value,
                        pillar=completion.pillar.value if completion.pillar else None,
                        points_earned=completion.points_earned,
                        challenge_day=completion.challenge_day,
                        completed_at=_utc(completion.completed_at),
                        payload=completion.payload,
                        dedup_key=dedup_key,
                    )
                )
                self._versioned_update(session, instance)
        except IntegrityError as exc:
            if _is_dedup_violation(exc):
                logger.info(
                    "Duplicate completion ignored",
                    extra={"user_id": completion.user_id, "quest_id": completion.quest_id},
                )
                return None
            raise StoreError(f"Failed to record completion: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to record completion: {exc}") from exc

        updated = instance.clone()
        updated.version = instance.version + 1
        return updated

    def list_completions(
        self,
        *,
        user_id: Optional[str] = None,
        challenge_instance_id: Optional[str] = None,
        quest_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[QuestCompletion]:
        filters = []
        if user_id is not None:
            filters.append(quest_completions.c.user_id == user_id)
        if challenge_instance_id is not None:
            filters.append(quest_completions.c.challenge_instance_id == challenge_instance_id)
        if quest_id is not None:
            filters.append(quest_completions.c.quest_id == quest_id)
        if start is not None:
            filters.append(quest_completions.c.completed_at >= _utc(start))
        if end is not None:
            filters.append(quest_completions.c.completed_at <= _utc(end))

        query = select(quest_completions)
        if filters:
            query = query.where(and_(*filters))
        # Deterministic ordering: completed_at, then id
        query = query.order_by(quest_completions.c.completed_at, quest_completions.c.id)

        try:
            with get_db_session() as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read completions: {exc}") from exc
        return [_row_to_completion(row) for row in rows]

    def has_completion(self, user_id: str, quest_id: str) -> bool:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(quest_completions.c.id).where(
                        and_(
                            quest_completions.c.user_id == user_id,
                            quest_completions.c.quest_id == quest_id,
                        )
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read completions: {exc}") from exc
        return row is not None

    # Feature flags ----------------------------------------------------
    def mark_feature_complete(
        self,
        user_id: str,
        feature: str,
        *,
        challenge_instance_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(feature_completions).values(
                        user_id=user_id,
                        feature=feature,
                        challenge_instance_id=challenge_instance_id,
                        completed_at=_utc(ensure_aware(completed_at)),
                    )
                )
        except IntegrityError:
            # Already complete
            return False
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to record feature completion: {exc}") from exc
        return True

    def is_feature_complete(self, user_id: str, feature: str) -> bool:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(feature_completions.c.id).where(
                        and_(
                            feature_completions.c.user_id == user_id,
                            feature_completions.c.feature == feature,
                        )
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read feature completions: {exc}") from exc
        return row is not None

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        with get_db_session() as session:
            session.execute(quest_completions.delete())
            session.execute(feature_completions.delete())
            session.execute(challenge_instances.delete())
