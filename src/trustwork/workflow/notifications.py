"""Notification hook — publishes committed state transitions.

The core never delivers notifications itself; it hands a Notification to
whatever Notifier the host wires in (email, push, realtime channel).
Notifications are published only after the unit of work commits, and a
failing notifier never undoes a committed transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """A committed state transition addressed to one user."""
    recipient_id: str
    topic: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: Optional[datetime] = None


class Notifier(Protocol):
    """Protocol for notification delivery backends."""

    def publish(self, notification: Notification) -> None:
        """Deliver or enqueue a notification."""
        ...


class InMemoryNotifier:
    """Collects notifications in memory. Used by tests and the CLI."""

    def __init__(self) -> None:
        self._sent: list[Notification] = []

    def publish(self, notification: Notification) -> None:
        self._sent.append(notification)

    @property
    def sent(self) -> list[Notification]:
        return list(self._sent)

    def for_user(self, user_id: str) -> list[Notification]:
        return [n for n in self._sent if n.recipient_id == user_id]

    def topics(self) -> list[str]:
        return [n.topic for n in self._sent]


def publish_all(notifier: Optional[Notifier], notifications: list[Notification]) -> None:
    """Publish after commit; delivery failures are logged, not raised."""
    if notifier is None:
        return
    for notification in notifications:
        try:
            notifier.publish(notification)
        except Exception:
            logger.exception(
                "Notifier failed for %s on %s", notification.topic, notification.entity_id,
            )
