"""
quest_engine/features/ledger/store.py

Challenge instance + completion ledger store.
In-memory implementation; `store_sql.py` provides the SQLAlchemy one with the
same interface. Services are agnostic to which one they get.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from quest_engine.core.dates import ensure_aware
from quest_engine.core.errors import ConflictError, StaleInstanceError
from quest_engine.models.challenge import ChallengeInstance, ChallengeStatus
from quest_engine.models.completion import QuestCompletion

logger = logging.getLogger("quest_engine")


class ChallengeStore(Protocol):
    """What the engine needs from persistence. Both stores below satisfy it."""

    def create_instance(self, instance: ChallengeInstance) -> ChallengeInstance: ...

    def get_instance(self, instance_id: str) -> Optional[ChallengeInstance]: ...

    def get_active_instance(self, user_id: str) -> Optional[ChallengeInstance]: ...

    def list_instances(self, **filters) -> List[ChallengeInstance]: ...

    def update_instance(self, instance: ChallengeInstance) -> ChallengeInstance: ...

    def complete_active_instances(self, user_id: str) -> int: ...

    def commit_completion(
        self, completion: QuestCompletion, dedup_key: str, instance: ChallengeInstance
    ) -> Optional[ChallengeInstance]: ...

    def list_completions(self, **filters) -> List[QuestCompletion]: ...

    def has_completion(self, user_id: str, quest_id: str) -> bool: ...

    def mark_feature_complete(self, user_id: str, feature: str, **kwargs) -> bool: ...

    def is_feature_complete(self, user_id: str, feature: str) -> bool: ...


class InMemoryChallengeStore:
    """
    Process-local store.

    Instances are copied on the way in and out so callers can never mutate
    stored state without going through update_instance().
    """

    def __init__(self):
        self._instances: Dict[str, ChallengeInstance] = {}
        self._completions: List[QuestCompletion] = []
        self._dedup_keys: Dict[str, str] = {}
        self._features: Dict[Tuple[str, str], datetime] = {}

    # Instances --------------------------------------------------------
    def create_instance(self, instance: ChallengeInstance) -> ChallengeInstance:
        if instance.id in self._instances:
            raise ConflictError(f"Challenge instance {instance.id} already exists")
        if instance.is_active and self.get_active_instance(instance.user_id):
            raise ConflictError(f"User {instance.user_id} already has an active challenge")
        self._instances[instance.id] = instance.clone()
        return instance.clone()

    def get_instance(self, instance_id: str) -> Optional[ChallengeInstance]:
        stored = self._instances.get(instance_id)
        return stored.clone() if stored else None

    def get_active_instance(self, user_id: str) -> Optional[ChallengeInstance]:
        active = [i for i in self._instances.values() if i.user_id == user_id and i.is_active]
        if not active:
            return None
        return max(active, key=lambda i: ensure_aware(i.challenge_start_date)).clone()

    def list_instances(
        self,
        *,
        status: Optional[ChallengeStatus] = None,
        user_id: Optional[str] = None,
        group_id: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
    ) -> List[ChallengeInstance]:
        """Filter instances; results keep creation order."""
        results = []
        for instance in self._instances.values():
            if status is not None and instance.status != status:
                continue
            if user_id is not None and instance.user_id != user_id:
                continue
            if group_id is not None and instance.group_id != group_id:
                continue
            started = ensure_aware(instance.challenge_start_date)
            if start_from is not None and started < start_from:
                continue
            if start_before is not None and started >= start_before:
                continue
            results.append(instance.clone())
        return results

    def update_instance(self, instance: ChallengeInstance) -> ChallengeInstance:
        """Versioned write: fails if the stored copy moved since `instance` was read."""
        stored = self._instances.get(instance.id)
        if stored is None:
            raise StaleInstanceError(f"Challenge instance {instance.id} no longer exists")
        if stored.version != instance.version:
            raise StaleInstanceError(
                f"Challenge instance {instance.id} changed (expected v{instance.version}, found v{stored.version})"
            )
        updated = instance.clone()
        updated.version = instance.version + 1
        self._instances[instance.id] = updated
        return updated.clone()

    def complete_active_instances(self, user_id: str) -> int:
        count = 0
        for instance in self._instances.values():
            if instance.user_id == user_id and instance.is_active:
                instance.status = "completed"
                instance.version += 1
                count += 1
        return count

    # Ledger -----------------------------------------------------------
    def commit_completion(
        self,
        completion: QuestCompletion,
        dedup_key: str,
        instance: ChallengeInstance,
    ) -> Optional[ChallengeInstance]:
        """
        Append a completion and write the instance in one unit of work.

        Returns:
            The updated instance, or None if `dedup_key` was already taken
            (nothing is written in that case).
        """
        if dedup_key in self._dedup_keys:
            return None
        stored = self._instances.get(instance.id)
        if stored is None or stored.version != instance.version:
            raise StaleInstanceError(f"Challenge instance {instance.id} changed during completion")

        updated = self.update_instance(instance)
        self._completions.append(completion)
        self._dedup_keys[dedup_key] = completion.id
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
        """Ledger query; `start`/`end` are inclusive. Ordered by completed_at."""
        results = []
        for completion in self._completions:
            if user_id is not None and completion.user_id != user_id:
                continue
            if challenge_instance_id is not None and completion.challenge_instance_id != challenge_instance_id:
                continue
            if quest_id is not None and completion.quest_id != quest_id:
                continue
            completed_at = ensure_aware(completion.completed_at)
            if start is not None and completed_at < start:
                continue
            if end is not None and completed_at > end:
                continue
            results.append(completion)
        return sorted(results, key=lambda c: ensure_aware(c.completed_at))

    def has_completion(self, user_id: str, quest_id: str) -> bool:
        return any(c.user_id == user_id and c.quest_id == quest_id for c in self._completions)

    # Feature flags ----------------------------------------------------
    def mark_feature_complete(
        self,
        user_id: str,
        feature: str,
        *,
        challenge_instance_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        key = (user_id, feature)
        if key in self._features:
            return False
        self._features[key] = ensure_aware(completed_at)
        return True

    def is_feature_complete(self, user_id: str, feature: str) -> bool:
        return (user_id, feature) in self._features

    def clear(self) -> None:
        """FOR TESTING ONLY."""
        self._instances.clear()
        self._completions.clear()
        self._dedup_keys.clear()
        self._features.clear()


# ============================================================================
# Store selection
# ============================================================================

def get_challenge_store():
    """
    Get the appropriate store implementation.

    - PostgreSQL/SQL store if DATABASE_URL is configured and reachable
    - In-memory otherwise
    """
    from quest_engine.core.database import check_connection, create_all_tables, get_database_url

    if get_database_url():
        from quest_engine.features.ledger.store_sql import SqlChallengeStore

        if check_connection():
            create_all_tables()
            return SqlChallengeStore()
        logger.warning("[store] database unavailable, falling back to in-memory")

    return InMemoryChallengeStore()


# Global store instance (lazy initialization)
_store_instance = None


def get_store():
    """
    Get the singleton store instance.

    This is the primary API that all consumers should use.
    """
    global _store_instance
    if _store_instance is None:
        _store_instance = get_challenge_store()
    return _store_instance


def reset_store():
    """
    Reset the store instance.

    FOR TESTING ONLY - forces re-initialization on next get_store() call.
    """
    global _store_instance
    _store_instance = None
