"""Posting models — jobs and gigs published by employers.

Posting lifecycle:
    OPEN → IN_PROGRESS → COMPLETED
    OPEN ⇄ FLAGGED (admin moderation)
    OPEN / FLAGGED / IN_PROGRESS → CANCELLED

A gig is a posting with escrowed milestones; a job is application-only.
The "current accepted application" of a posting is never stored here;
it is looked up from the applications collection.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from trustwork.models.history import StatusChange


class PostingKind(str, enum.Enum):
    """Unified posting type."""
    JOB = "job"
    GIG = "gig"


class PostingStatus(str, enum.Enum):
    """Lifecycle status of a posting."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FLAGGED = "flagged"


@dataclass(frozen=True)
class SkillTestRequirement:
    """Template-based skill-test gate on a posting.

    ``legacy_skill_test_id`` is kept only as a pointer to the older
    per-assignment test id; the template id, difficulty and passing score
    are authoritative.
    """
    template_id: str
    difficulty: str
    passing_score: int
    legacy_skill_test_id: Optional[str] = None


@dataclass(frozen=True)
class MilestonePlanItem:
    """A planned milestone: a title and its share of the total fee."""
    title: str
    percentage: Decimal
    description: str = ""
    due_date: Optional[datetime] = None


@dataclass
class Posting:
    """A job or gig published by an employer."""
    posting_id: str
    owner_id: str
    kind: PostingKind
    title: str
    description: str = ""
    category: str = ""
    location: str = ""
    remote: bool = False
    required_skills: list[str] = field(default_factory=list)
    currency: str = "ZAR"
    budget_min: Decimal = Decimal("0")
    budget_max: Decimal = Decimal("0")
    status: PostingStatus = PostingStatus.OPEN
    skill_test: Optional[SkillTestRequirement] = None
    milestone_plan: list[MilestonePlanItem] = field(default_factory=list)
    agreed_total: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    flag_reason: str = ""
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def requires_test(self) -> bool:
        return self.skill_test is not None

    @property
    def is_gig(self) -> bool:
        return self.kind == PostingKind.GIG
