"""Dispute resolver — freezes escrow, gathers evidence, records verdicts.

Rules:
- Only the payer (posting owner) or payee of a milestone opens a
  dispute; the other party is the respondent.
- At most one unresolved dispute per milestone.
- Opening a dispute moves the milestone's held escrow to DISPUTED, which
  freezes release and refund until the verdict is executed.
- The response window starts at creation. A response moves the dispute
  to UNDER_REVIEW; an overdue window does the same with ``no_response``.
- Only admins resolve, and only from UNDER_REVIEW. The verdict is
  immutable once recorded; the service then executes it on the escrow.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional
from uuid import uuid4

from trustwork.compensation.escrow import EscrowLedger
from trustwork.errors import AuthorizationError, PreconditionError
from trustwork.identity.authz import require_admin, require_party
from trustwork.models.dispute import (
    Dispute,
    DisputeReason,
    DisputeStatus,
    Evidence,
    Verdict,
    VerdictKind,
)
from trustwork.models.escrow import EscrowPayment
from trustwork.models.history import record_change
from trustwork.models.identity import Caller, SYSTEM_ACTOR
from trustwork.models.milestone import Milestone, MilestoneStatus
from trustwork.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


class DisputeResolver:
    """Dispute lifecycle over model objects.

    Usage:
        resolver = DisputeResolver(policy, ledger)
        dispute = resolver.open(caller, milestone, escrow, existing, DisputeReason.QUALITY_ISSUE)
        resolver.respond(respondent, dispute, "Delivered as agreed")
        resolver.resolve(admin, dispute, Verdict(VerdictKind.SPLIT, Decimal("200")), escrow)
    """

    def __init__(self, resolver: PolicyResolver, ledger: EscrowLedger) -> None:
        self._resolver = resolver
        self._ledger = ledger

    def open(
        self,
        caller: Caller,
        milestone: Milestone,
        escrow: EscrowPayment,
        existing: Iterable[Dispute],
        reason: DisputeReason,
        title: str = "",
        description: str = "",
        evidence: Optional[list[Evidence]] = None,
        dispute_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Open a dispute and freeze the milestone's escrow."""
        require_party(caller, (escrow.payer_id, escrow.payee_id), allow_admin=False)
        try:
            reason = DisputeReason(reason)
        except ValueError:
            raise PreconditionError("invalid_dispute", f"Unknown dispute reason: {reason}") from None
        if escrow.milestone_id != milestone.milestone_id:
            raise PreconditionError("invalid_dispute", "Escrow does not belong to this milestone")
        if milestone.status == MilestoneStatus.PAID:
            raise PreconditionError("invalid_transition", "A paid milestone cannot be disputed")
        for other in existing:
            if other.milestone_id == milestone.milestone_id and not other.is_resolved:
                raise PreconditionError(
                    "dispute_exists",
                    f"Dispute {other.dispute_id} is already open on this milestone",
                )
        now = now or datetime.now(timezone.utc)
        respondent = escrow.payee_id if caller.user_id == escrow.payer_id else escrow.payer_id

        self._ledger.mark_disputed(escrow, caller.user_id, now)

        dispute = Dispute(
            dispute_id=dispute_id or f"dsp_{uuid4().hex[:12]}",
            posting_id=milestone.posting_id,
            milestone_id=milestone.milestone_id,
            escrow_id=escrow.escrow_id,
            initiator_id=caller.user_id,
            respondent_id=respondent,
            reason=reason,
            title=title,
            description=description,
            evidence=[_stamp(e, caller.user_id, now) for e in evidence or []],
            created_at=now,
        )
        record_change(dispute.history, None, dispute.status.value, caller.user_id, now, dispute.reason.value)
        self._transition(dispute, DisputeStatus.AWAITING_RESPONSE, SYSTEM_ACTOR, now, "response window opened")
        dispute.response_deadline = now + self._resolver.dispute_response_window()
        logger.info(
            "Dispute %s opened by %s on milestone %s (%s)",
            dispute.dispute_id, caller.user_id, milestone.milestone_id, dispute.reason.value,
        )
        return dispute

    def add_evidence(
        self,
        caller: Caller,
        dispute: Dispute,
        kind: str,
        url: str = "",
        note: str = "",
        now: Optional[datetime] = None,
    ) -> Evidence:
        require_party(caller, (dispute.initiator_id, dispute.respondent_id))
        if dispute.is_resolved:
            raise PreconditionError("dispute_resolved", "Dispute is already resolved")
        if not (url or note):
            raise PreconditionError("invalid_evidence", "Evidence needs a url or a note")
        now = now or datetime.now(timezone.utc)
        item = Evidence(submitted_by=caller.user_id, kind=kind, url=url, note=note, submitted_at=now)
        dispute.evidence.append(item)
        return item

    def respond(
        self,
        caller: Caller,
        dispute: Dispute,
        text: str,
        evidence: Optional[list[Evidence]] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Respondent's answer; moves the dispute to UNDER_REVIEW."""
        if caller.user_id != dispute.respondent_id:
            raise AuthorizationError("not_owner", "Only the respondent may respond")
        now = now or datetime.now(timezone.utc)
        if dispute.status != DisputeStatus.AWAITING_RESPONSE:
            raise PreconditionError(
                "response_closed", f"Dispute is {dispute.status.value}; responses are closed",
            )
        if dispute.response_deadline is not None and now > dispute.response_deadline:
            raise PreconditionError("response_closed", "The response deadline has passed")
        if not text.strip():
            raise PreconditionError("invalid_response", "A response needs text")
        dispute.response = text
        dispute.responded_at = now
        dispute.evidence.extend(_stamp(e, caller.user_id, now) for e in evidence or [])
        self._transition(dispute, DisputeStatus.UNDER_REVIEW, caller.user_id, now, "respondent answered")
        return dispute

    def advance_overdue(self, dispute: Dispute, now: Optional[datetime] = None) -> bool:
        """Move an unanswered dispute past its deadline to UNDER_REVIEW."""
        now = now or datetime.now(timezone.utc)
        if dispute.status != DisputeStatus.AWAITING_RESPONSE:
            return False
        if dispute.response_deadline is None or now <= dispute.response_deadline:
            return False
        dispute.no_response = True
        self._transition(dispute, DisputeStatus.UNDER_REVIEW, SYSTEM_ACTOR, now, "no_response")
        logger.info("Dispute %s advanced without a response", dispute.dispute_id)
        return True

    def resolve(
        self,
        caller: Caller,
        dispute: Dispute,
        verdict: Verdict,
        escrow: EscrowPayment,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Record the admin verdict. Execution on the escrow follows."""
        require_admin(caller)
        now = now or datetime.now(timezone.utc)
        validate_verdict(verdict, escrow.gross, self._resolver.money_quantum())
        self.advance_overdue(dispute, now)
        if dispute.status != DisputeStatus.UNDER_REVIEW:
            raise PreconditionError(
                "invalid_transition",
                f"Dispute is {dispute.status.value}; only disputes under review can be resolved",
            )
        dispute.verdict = verdict
        dispute.resolution_notes = notes
        dispute.resolved_by = caller.user_id
        dispute.resolved_at = now
        self._transition(dispute, DisputeStatus.RESOLVED, caller.user_id, now, verdict.kind.value)
        logger.info("Dispute %s resolved: %s", dispute.dispute_id, verdict.kind.value)
        return dispute

    @staticmethod
    def _transition(
        dispute: Dispute,
        target: DisputeStatus,
        actor_id: str,
        now: datetime,
        note: str = "",
    ) -> None:
        previous = dispute.status
        dispute.transition_to(target)
        record_change(dispute.history, previous.value, target.value, actor_id, now, note)


def validate_verdict(verdict: Verdict, gross: Decimal, quantum: Decimal = Decimal("0.01")) -> None:
    """Reject a verdict the ledger could not execute, before it is recorded."""
    if verdict.kind == VerdictKind.SPLIT:
        amount = None if verdict.payee_amount is None else Decimal(verdict.payee_amount)
        if amount is None or not Decimal("0") < amount < gross:
            raise PreconditionError(
                "invalid_verdict",
                f"A split needs a payee amount strictly between 0 and {gross}",
            )
        if amount != amount.quantize(quantum):
            raise PreconditionError(
                "invalid_verdict", f"Split amount must be in units of {quantum}",
            )
    elif verdict.payee_amount is not None:
        raise PreconditionError("invalid_verdict", "Only split verdicts carry an amount")


def _stamp(item: Evidence, submitted_by: str, now: datetime) -> Evidence:
    return Evidence(
        submitted_by=submitted_by,
        kind=item.kind,
        url=item.url,
        note=item.note,
        submitted_at=item.submitted_at or now,
    )
