"""Append-only status history shared by every lifecycle entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class StatusChange:
    """A single state transition, recorded in the entity's history.

    History entries are only ever appended. Replaying the history of an
    entity from its initial state reproduces its current status.
    """
    from_status: Optional[str]
    to_status: str
    actor_id: str
    at: datetime
    note: str = ""


def record_change(
    history: list[StatusChange],
    from_status: Optional[str],
    to_status: str,
    actor_id: str,
    at: datetime,
    note: str = "",
) -> StatusChange:
    """Append a status change to ``history`` and return it."""
    change = StatusChange(
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        at=at,
        note=note,
    )
    history.append(change)
    return change
