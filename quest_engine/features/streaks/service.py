from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from quest_engine.core.dates import ensure_aware, local_date
from quest_engine.core.logging import log_event
from quest_engine.models.challenge import ChallengeInstance, StreakCheck


class StreakTracker:
    """
    Consecutive-day activity counter for a challenge instance.

    Activity is any accepted completion; days are local calendar days in the
    tz of the caller's `now`. Streak state lives on the instance itself.
    """

    def __init__(self, store):
        self._store = store

    def last_activity_date(self, challenge_instance_id: str, reference: datetime) -> Optional[date]:
        completions = self._store.list_completions(challenge_instance_id=challenge_instance_id)
        if not completions:
            return None
        return local_date(completions[-1].completed_at, reference)

    def check_streak_break(self, user_id: str, challenge_instance_id: str, now: datetime) -> StreakCheck:
        """
        Reset the streak when the last activity was neither today nor yesterday.

        Persists the reset; the caller must reload the instance when
        `streak_broken` is True.
        """
        now = ensure_aware(now)
        instance = self._store.get_instance(challenge_instance_id)
        if instance is None or instance.user_id != user_id:
            return StreakCheck(streak_broken=False)
        if instance.streak_days <= 0:
            return StreakCheck(streak_broken=False, streak_days=0)

        last_day = self.last_activity_date(challenge_instance_id, now)
        if last_day is not None and (now.date() - last_day).days <= 1:
            return StreakCheck(streak_broken=False, streak_days=instance.streak_days)

        previous = instance.streak_days
        instance.streak_days = 0
        self._store.update_instance(instance)
        log_event(
            "info",
            "Streak broken",
            user_id=user_id,
            challenge_instance_id=challenge_instance_id,
            event_type="streak.broken",
            extra={"previous_streak": previous, "last_active": last_day.isoformat() if last_day else None},
        )
        return StreakCheck(streak_broken=True, streak_days=0)

    def record_activity(self, instance: ChallengeInstance, now: datetime) -> List[dict]:
        """
        Activity hook for an accepted completion. Mutates `instance` in place
        (the caller persists it together with the ledger row).
        """
        now = ensure_aware(now)
        today = now.date()
        last_day = self.last_activity_date(instance.id, now)

        if last_day == today:
            return []

        if last_day is not None and (today - last_day).days == 1:
            instance.streak_days += 1
        elif instance.streak_days > 0 and last_day is not None:
            # Gap the break detector has not seen yet
            instance.streak_days = 1
        else:
            instance.streak_days += 1
        instance.longest_streak = max(instance.longest_streak, instance.streak_days)

        return [
            {
                "type": "streak.incremented",
                "payload": {
                    "userId": instance.user_id,
                    "challengeInstanceId": instance.id,
                    "streakDay": today.isoformat(),
                    "streakDays": instance.streak_days,
                },
            }
        ]
