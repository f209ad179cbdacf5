"""Application models — an applicant's bid for a posting.

Application lifecycle:
    PENDING → SHORTLISTED | REJECTED | WITHDRAWN
    SHORTLISTED → ACCEPTED | REJECTED | WITHDRAWN
    ACCEPTED, REJECTED, WITHDRAWN are terminal.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from trustwork.models.history import StatusChange


class ApplicationStatus(str, enum.Enum):
    """Per-applicant status of an application."""
    PENDING = "pending"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


APPLICATION_TRANSITIONS: Dict[ApplicationStatus, frozenset] = {
    ApplicationStatus.PENDING: frozenset({
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    }),
    ApplicationStatus.SHORTLISTED: frozenset({
        ApplicationStatus.ACCEPTED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    }),
    ApplicationStatus.ACCEPTED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.WITHDRAWN: frozenset(),
}

ACTIVE_APPLICATION_STATUSES = frozenset({
    ApplicationStatus.PENDING,
    ApplicationStatus.SHORTLISTED,
})


@dataclass
class Application:
    """An applicant's application to a posting."""
    application_id: str
    posting_id: str
    applicant_id: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    proposed_rate: Optional[Decimal] = None
    timeline: str = ""
    cover_letter: str = ""
    attachments: list[str] = field(default_factory=list)
    skill_test_attempt_id: Optional[str] = None
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    rejection_reason: str = ""
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_APPLICATION_STATUSES
