"""Dispute models — contested milestones and their verdicts.

Dispute lifecycle:
    OPEN → AWAITING_RESPONSE → UNDER_REVIEW → RESOLVED

AWAITING_RESPONSE starts at creation with a response deadline. If the
respondent has not answered by the deadline the dispute advances to
UNDER_REVIEW with ``no_response`` set. RESOLVED is immutable.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from trustwork.errors import PreconditionError
from trustwork.models.history import StatusChange


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    AWAITING_RESPONSE = "awaiting_response"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


DISPUTE_TRANSITIONS: Dict[DisputeStatus, frozenset] = {
    DisputeStatus.OPEN: frozenset({DisputeStatus.AWAITING_RESPONSE}),
    DisputeStatus.AWAITING_RESPONSE: frozenset({DisputeStatus.UNDER_REVIEW}),
    DisputeStatus.UNDER_REVIEW: frozenset({DisputeStatus.RESOLVED}),
    DisputeStatus.RESOLVED: frozenset(),
}


class DisputeReason(str, enum.Enum):
    QUALITY_ISSUE = "quality_issue"
    NON_DELIVERY = "non_delivery"
    SCOPE_CHANGE = "scope_change"
    PAYMENT_ISSUE = "payment_issue"
    COMMUNICATION_BREAKDOWN = "communication_breakdown"
    DEADLINE_MISSED = "deadline_missed"
    UNAUTHORIZED_USE = "unauthorized_use"
    OTHER = "other"


class VerdictKind(str, enum.Enum):
    RELEASE_TO_PAYEE = "release_to_payee"
    REFUND_TO_PAYER = "refund_to_payer"
    SPLIT = "split"


@dataclass(frozen=True)
class Verdict:
    """Admin decision. ``payee_amount`` is the gross share awarded to the
    payee and is only meaningful for SPLIT."""
    kind: VerdictKind
    payee_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class Evidence:
    """An evidence item submitted by either party."""
    submitted_by: str
    kind: str
    url: str = ""
    note: str = ""
    submitted_at: Optional[datetime] = None


@dataclass
class Dispute:
    """A dispute over a single milestone of a gig."""
    dispute_id: str
    posting_id: str
    milestone_id: str
    escrow_id: str
    initiator_id: str
    respondent_id: str
    reason: DisputeReason
    title: str = ""
    description: str = ""
    status: DisputeStatus = DisputeStatus.OPEN
    evidence: list[Evidence] = field(default_factory=list)
    response: str = ""
    responded_at: Optional[datetime] = None
    response_deadline: Optional[datetime] = None
    no_response: bool = False
    verdict: Optional[Verdict] = None
    resolution_notes: str = ""
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    def transition_to(self, new_status: DisputeStatus) -> None:
        """Transition to a new status, validating the transition is legal."""
        allowed = DISPUTE_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise PreconditionError(
                "invalid_transition",
                f"Invalid dispute transition: {self.status.value} → {new_status.value}",
            )
        self.status = new_status

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED
