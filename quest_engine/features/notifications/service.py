"""
Fire-and-forget user notifications.

The engine only ever calls notify(); delivery failures are logged and
swallowed so they can never affect challenge state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from quest_engine.core.config import settings

logger = logging.getLogger("quest_engine")


class Notifier(Protocol):
    def notify(self, user_id: str, title: str, body: str, tag: str) -> None:
        ...


class HttpPushNotifier:
    """Posts notifications as JSON to a push relay. No URL configured -> log only."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        url_path: Optional[str] = None,
    ):
        self.url = url if url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS
        self.url_path = url_path or settings.NOTIFICATION_URL_PATH

    def notify(self, user_id: str, title: str, body: str, tag: str) -> None:
        if not self.url:
            logger.info(f"Notification (not sent, no relay configured): {title}", extra={"user_id": user_id})
            return

        payload = {
            "userId": user_id,
            "title": title,
            "body": body,
            "tag": tag,
            "url": self.url_path,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=payload)
                response.raise_for_status()
        except Exception as exc:
            # Malformed relay URLs raise httpx.InvalidURL, which is not an HTTPError
            logger.warning(
                f"Notification delivery failed: {exc!r}",
                extra={"user_id": user_id, "event_type": "notification.failed"},
            )


@dataclass
class SentNotification:
    user_id: str
    title: str
    body: str
    tag: str


@dataclass
class RecordingNotifier:
    """Keeps notifications in memory (tests, local development)."""

    sent: List[SentNotification] = field(default_factory=list)

    def notify(self, user_id: str, title: str, body: str, tag: str) -> None:
        self.sent.append(SentNotification(user_id=user_id, title=title, body=body, tag=tag))

    def tags(self) -> List[str]:
        return [n.tag for n in self.sent]


def day_unlocked_message(day: int) -> tuple:
    title = f"Day {day} Unlocked!"
    body = f"Day {day} of your 7-day challenge is ready. New quests are waiting."
    return title, body, f"day-{day}"
