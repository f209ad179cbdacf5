"""Milestone engine — sequential, percentage-partitioned gig delivery.

Rules:
- On hire the gig total is partitioned into N milestones with positive
  percentages summing to exactly 100. Amounts are rounded down to the
  money quantum and the rounding remainder lands on the last milestone,
  so amounts sum to exactly the total.
- Only the lowest-indexed PENDING milestone is submittable, and only
  once every earlier milestone is PAID.
- The client approves, rejects (notes required) or requests a revision
  of a SUBMITTED milestone. Reject and revision both return the
  milestone to PENDING at the same index.
- Revision requests are bounded by ``max_revisions``; repeating a
  request before the next submission is a no-op.
- Approval requires a HELD escrow with no settlement in flight.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Iterable, Optional, Sequence
from uuid import uuid4

from trustwork.errors import InvariantError, PreconditionError
from trustwork.identity.authz import require_owner_or_admin, require_self
from trustwork.market.postings import validate_plan_percentages
from trustwork.models.escrow import EscrowPayment, EscrowState
from trustwork.models.history import record_change
from trustwork.models.identity import Caller
from trustwork.models.milestone import (
    Deliverable,
    Milestone,
    MilestoneSpec,
    MilestoneStatus,
)
from trustwork.models.posting import Posting
from trustwork.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

MILESTONE_TRANSITIONS: Dict[MilestoneStatus, frozenset] = {
    MilestoneStatus.PENDING: frozenset({MilestoneStatus.SUBMITTED}),
    MilestoneStatus.SUBMITTED: frozenset({
        MilestoneStatus.APPROVED,
        MilestoneStatus.REJECTED,
        MilestoneStatus.REVISION_REQUESTED,
    }),
    MilestoneStatus.REJECTED: frozenset({MilestoneStatus.PENDING}),
    MilestoneStatus.REVISION_REQUESTED: frozenset({MilestoneStatus.PENDING}),
    MilestoneStatus.APPROVED: frozenset({MilestoneStatus.PAID}),
    MilestoneStatus.PAID: frozenset(),
}

DEFAULT_MILESTONE_TITLE = "Full delivery"


class MilestoneEngine:
    """Validates and applies milestone transitions for one gig.

    Usage:
        engine = MilestoneEngine(resolver)
        milestones = engine.partition(posting, Decimal("1000"), specs, now=now)
        engine.submit(caller, milestones, milestones[0], deliverable, payee_id)
        engine.approve(caller, posting, milestones[0], escrow)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def resolve_specs(
        self,
        posting: Posting,
        specs: Optional[Sequence[MilestoneSpec]] = None,
    ) -> list[MilestoneSpec]:
        """Client list at hire, else the posting's plan, else one milestone."""
        if specs:
            return list(specs)
        if posting.milestone_plan:
            return [
                MilestoneSpec(
                    title=item.title,
                    percentage=item.percentage,
                    description=item.description,
                    due_date=item.due_date,
                )
                for item in posting.milestone_plan
            ]
        return [MilestoneSpec(title=DEFAULT_MILESTONE_TITLE, percentage=HUNDRED)]

    def partition(
        self,
        posting: Posting,
        total: Decimal,
        specs: Sequence[MilestoneSpec],
        now: Optional[datetime] = None,
        actor_id: str = "",
    ) -> list[Milestone]:
        """Split ``total`` across ``specs`` in order."""
        if total <= 0:
            raise PreconditionError("invalid_milestone_plan", "Gig total must be positive")
        validate_plan_percentages(spec.percentage for spec in specs)
        now = now or datetime.now(timezone.utc)
        quantum = self._resolver.money_quantum()

        amounts = [
            (total * Decimal(spec.percentage) / HUNDRED).quantize(quantum, rounding=ROUND_DOWN)
            for spec in specs[:-1]
        ]
        amounts.append(total - sum(amounts, Decimal("0")))
        if amounts[-1] <= 0:
            raise PreconditionError(
                "invalid_milestone_plan", "Rounding left no amount for the final milestone",
            )

        milestones = []
        for index, (spec, amount) in enumerate(zip(specs, amounts), start=1):
            milestone = Milestone(
                milestone_id=f"ms_{uuid4().hex[:12]}",
                posting_id=posting.posting_id,
                index=index,
                title=spec.title,
                percentage=Decimal(spec.percentage),
                amount=amount,
                description=spec.description,
                due_date=spec.due_date,
            )
            record_change(
                milestone.history, None, milestone.status.value, actor_id or posting.owner_id,
                now, "created on hire",
            )
            milestones.append(milestone)
        check_partition(milestones, total)
        logger.info(
            "Partitioned %s into %d milestones totalling %s",
            posting.posting_id, len(milestones), total,
        )
        return milestones

    def next_submittable(self, milestones: Iterable[Milestone]) -> Optional[Milestone]:
        """Lowest-indexed PENDING milestone whose predecessors are all PAID."""
        for milestone in sorted(milestones, key=lambda m: m.index):
            if milestone.status == MilestoneStatus.PAID:
                continue
            if milestone.status == MilestoneStatus.PENDING:
                return milestone
            return None
        return None

    def submit(
        self,
        caller: Caller,
        milestones: Iterable[Milestone],
        milestone: Milestone,
        deliverable: Deliverable,
        payee_id: str,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Freelancer submits the next milestone's deliverable."""
        require_self(caller, payee_id)
        if milestone.status != MilestoneStatus.PENDING:
            raise PreconditionError(
                "invalid_transition",
                f"Milestone {milestone.index} is {milestone.status.value}; cannot submit",
            )
        target = self.next_submittable(milestones)
        if target is None or target.milestone_id != milestone.milestone_id:
            raise PreconditionError(
                "milestone_not_next",
                f"Milestone {milestone.index} is not the next submittable milestone",
            )
        if not (deliverable.files or deliverable.links or deliverable.notes.strip()):
            raise PreconditionError("invalid_submission", "A deliverable needs files, links or notes")
        now = now or datetime.now(timezone.utc)
        self._transition(milestone, MilestoneStatus.SUBMITTED, caller.user_id, now, "submitted")
        milestone.deliverable = deliverable
        milestone.submitted_at = now
        return milestone

    def approve(
        self,
        caller: Caller,
        posting: Posting,
        milestone: Milestone,
        escrow: Optional[EscrowPayment],
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Client approves a submitted milestone with a funded escrow."""
        require_owner_or_admin(caller, posting.owner_id)
        self._check(milestone, MilestoneStatus.APPROVED)
        if escrow is None or escrow.state != EscrowState.HELD or escrow.pending_intent is not None:
            raise PreconditionError(
                "escrow_not_funded",
                f"Milestone {milestone.index} has no held escrow to release",
            )
        now = now or datetime.now(timezone.utc)
        self._transition(milestone, MilestoneStatus.APPROVED, caller.user_id, now, notes or "approved")
        milestone.client_notes = notes
        milestone.approved_at = now
        return milestone

    def reject(
        self,
        caller: Caller,
        posting: Posting,
        milestone: Milestone,
        notes: str,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Client rejects a submission. Notes are mandatory."""
        require_owner_or_admin(caller, posting.owner_id)
        if not notes.strip():
            raise PreconditionError("notes_required", "Rejecting a milestone requires notes")
        now = now or datetime.now(timezone.utc)
        self._transition(milestone, MilestoneStatus.REJECTED, caller.user_id, now, notes)
        self._transition(milestone, MilestoneStatus.PENDING, caller.user_id, now, "resubmission required")
        milestone.client_notes = notes
        return milestone

    def request_revision(
        self,
        caller: Caller,
        posting: Posting,
        milestone: Milestone,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> bool:
        """Send a submission back for revision.

        Returns False when the request repeats one already pending (no
        new submission since), True when a revision was recorded.
        """
        require_owner_or_admin(caller, posting.owner_id)
        if milestone.status == MilestoneStatus.PENDING and _last_was_revision(milestone):
            return False
        self._check(milestone, MilestoneStatus.REVISION_REQUESTED)
        limit = self._resolver.max_revisions()
        if milestone.revision_count >= limit:
            raise PreconditionError(
                "revision_limit_reached",
                f"Milestone {milestone.index} already had {limit} revisions",
            )
        now = now or datetime.now(timezone.utc)
        self._transition(
            milestone, MilestoneStatus.REVISION_REQUESTED, caller.user_id, now, notes or "revision",
        )
        self._transition(milestone, MilestoneStatus.PENDING, caller.user_id, now, "revision pending")
        milestone.revision_count += 1
        milestone.client_notes = notes
        return True

    def mark_paid(self, milestone: Milestone, actor_id: str, now: Optional[datetime] = None) -> Milestone:
        """APPROVED → PAID after a completed release."""
        now = now or datetime.now(timezone.utc)
        self._transition(milestone, MilestoneStatus.PAID, actor_id, now, "escrow released")
        milestone.paid_at = now
        return milestone

    def settle_from_escrow(
        self,
        milestone: Milestone,
        paid: bool,
        actor_id: str,
        now: Optional[datetime] = None,
        note: str = "",
    ) -> Milestone:
        """Apply a settlement outside the approve path.

        Used for dispute verdicts and payee refunds: PAID when the payee
        received money, otherwise back to PENDING for fresh funding.
        """
        if milestone.status == MilestoneStatus.PAID:
            raise PreconditionError("invalid_transition", "Milestone is already paid")
        now = now or datetime.now(timezone.utc)
        previous = milestone.status
        if paid:
            milestone.status = MilestoneStatus.PAID
            milestone.paid_at = now
            note = note or "settled to payee"
        else:
            milestone.status = MilestoneStatus.PENDING
            milestone.approved_at = None
            note = note or "refunded to payer"
        record_change(milestone.history, previous.value, milestone.status.value, actor_id, now, note)
        logger.info(
            "Milestone %s: %s → %s (%s)",
            milestone.milestone_id, previous.value, milestone.status.value, note,
        )
        return milestone

    @staticmethod
    def all_paid(milestones: Iterable[Milestone]) -> bool:
        items = list(milestones)
        return bool(items) and all(m.status == MilestoneStatus.PAID for m in items)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _check(milestone: Milestone, target: MilestoneStatus) -> None:
        allowed = MILESTONE_TRANSITIONS.get(milestone.status, frozenset())
        if target not in allowed:
            raise PreconditionError(
                "invalid_transition",
                f"Invalid milestone transition: {milestone.status.value} → {target.value}",
            )

    def _transition(
        self,
        milestone: Milestone,
        target: MilestoneStatus,
        actor_id: str,
        now: datetime,
        note: str = "",
    ) -> None:
        self._check(milestone, target)
        previous = milestone.status
        milestone.status = target
        record_change(milestone.history, previous.value, target.value, actor_id, now, note)
        logger.info(
            "Milestone %s (#%d): %s → %s",
            milestone.milestone_id, milestone.index, previous.value, target.value,
        )


def check_partition(milestones: Sequence[Milestone], total: Decimal) -> None:
    """Raise InvariantError unless percentages sum to 100 and amounts to total."""
    pct = sum((m.percentage for m in milestones), Decimal("0"))
    if pct != HUNDRED:
        logger.error("Milestone percentages sum to %s", pct)
        raise InvariantError("percentage_sum", f"Milestone percentages sum to {pct}")
    amount = sum((m.amount for m in milestones), Decimal("0"))
    if amount != total:
        logger.error("Milestone amounts sum to %s, expected %s", amount, total)
        raise InvariantError("money_imbalance", f"Milestone amounts sum to {amount}, expected {total}")
    indexes = [m.index for m in milestones]
    if indexes != sorted(set(indexes)):
        raise InvariantError("milestone_order", "Milestone indexes must strictly increase")


def _last_was_revision(milestone: Milestone) -> bool:
    for change in reversed(milestone.history):
        if change.to_status == MilestoneStatus.PENDING.value:
            continue
        return change.to_status == MilestoneStatus.REVISION_REQUESTED.value
    return False
