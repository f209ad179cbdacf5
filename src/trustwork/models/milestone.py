"""Milestone models — ordered, percentage-weighted partitions of a gig.

Milestone lifecycle:
    PENDING → SUBMITTED → APPROVED → PAID
    SUBMITTED → REJECTED → PENDING            (client notes required)
    SUBMITTED → REVISION_REQUESTED → PENDING  (bounded by max revisions)

REJECTED and REVISION_REQUESTED are recorded in the milestone's history
and resolve straight back to PENDING so the same index is resubmitted.
A disputed milestone returns to PENDING on refund or becomes PAID on a
release or payee-positive split.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from trustwork.models.history import StatusChange


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"
    PAID = "paid"


@dataclass(frozen=True)
class Deliverable:
    """Submission payload: files, links and free-text notes."""
    files: tuple[str, ...] = ()
    links: tuple[str, ...] = ()
    notes: str = ""


@dataclass(frozen=True)
class MilestoneSpec:
    """Client-specified milestone at hire time."""
    title: str
    percentage: Decimal
    description: str = ""
    due_date: Optional[datetime] = None


@dataclass
class Milestone:
    """A single milestone of an accepted gig."""
    milestone_id: str
    posting_id: str
    index: int
    title: str
    percentage: Decimal
    amount: Decimal
    description: str = ""
    due_date: Optional[datetime] = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    deliverable: Optional[Deliverable] = None
    submitted_at: Optional[datetime] = None
    client_notes: str = ""
    revision_count: int = 0
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0
