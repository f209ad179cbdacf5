"""Posting manager — create, update, close, moderate and search postings.

Rules:
- Only employers (or admins) create postings; only the owner or an admin
  mutates one.
- Content may only be edited while the posting is OPEN or FLAGGED.
- A gig needs a positive budget_max; it is the default gig total.
- A milestone plan, when given, has positive percentages summing to 100.
- Jobs are completed explicitly by their owner; gigs complete when their
  last milestone settles.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import uuid4

from trustwork.errors import PreconditionError
from trustwork.identity.authz import require_admin, require_owner_or_admin, require_role
from trustwork.market.posting_state_machine import PostingStateMachine
from trustwork.models.history import record_change
from trustwork.models.identity import Caller, Role
from trustwork.models.posting import (
    MilestonePlanItem,
    Posting,
    PostingKind,
    PostingStatus,
    SkillTestRequirement,
)
from trustwork.models.skill_test import Difficulty
from trustwork.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")

# Fields an owner may edit after creation.
EDITABLE_FIELDS = frozenset({
    "title",
    "description",
    "category",
    "location",
    "remote",
    "required_skills",
    "budget_min",
    "budget_max",
    "skill_test",
    "milestone_plan",
})


class PostingManager:
    """Owner-side operations on postings.

    Usage:
        manager = PostingManager(resolver)
        posting = manager.create(caller, PostingKind.GIG, "Logo design",
                                 budget_max=Decimal("1000"))
        manager.close(caller, posting)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    @property
    def money_quantum(self) -> Decimal:
        return self._resolver.money_quantum()

    def create(
        self,
        caller: Caller,
        kind: PostingKind,
        title: str,
        description: str = "",
        category: str = "",
        location: str = "",
        remote: bool = False,
        required_skills: Optional[list[str]] = None,
        budget_min: Decimal = Decimal("0"),
        budget_max: Decimal = Decimal("0"),
        skill_test: Optional[SkillTestRequirement] = None,
        milestone_plan: Optional[list[MilestonePlanItem]] = None,
        posting_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Posting:
        """Create a new posting in OPEN status."""
        require_role(caller, Role.EMPLOYER, Role.ADMIN)
        now = now or datetime.now(timezone.utc)
        if not title.strip():
            raise PreconditionError("invalid_posting", "Posting title is required")

        posting = Posting(
            posting_id=posting_id or f"post_{uuid4().hex[:12]}",
            owner_id=caller.user_id,
            kind=kind,
            title=title,
            description=description,
            category=category,
            location=location,
            remote=remote,
            required_skills=list(required_skills or []),
            currency=self._resolver.currency(),
            budget_min=Decimal(budget_min),
            budget_max=Decimal(budget_max),
            skill_test=skill_test,
            milestone_plan=list(milestone_plan or []),
            created_at=now,
            updated_at=now,
        )
        self._validate_content(posting)
        record_change(posting.history, None, posting.status.value, caller.user_id, now, "created")
        logger.info("Posting %s created by %s (%s)", posting.posting_id, caller.user_id, kind.value)
        return posting

    def update(
        self,
        caller: Caller,
        posting: Posting,
        changes: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Posting:
        """Apply content edits. Status is never edited here."""
        require_owner_or_admin(caller, posting.owner_id)
        if posting.status not in (PostingStatus.OPEN, PostingStatus.FLAGGED):
            raise PreconditionError(
                "posting_closed",
                f"Posting {posting.posting_id} is {posting.status.value}; edits are closed",
            )
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise PreconditionError(
                "invalid_posting", f"Fields not editable: {', '.join(sorted(unknown))}",
            )

        for name, value in changes.items():
            if name in ("budget_min", "budget_max"):
                value = Decimal(value)
            elif name in ("required_skills", "milestone_plan"):
                value = list(value or [])
            setattr(posting, name, value)
        self._validate_content(posting)
        posting.updated_at = now or datetime.now(timezone.utc)
        return posting

    def close(
        self,
        caller: Caller,
        posting: Posting,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Posting:
        """Cancel the posting. Callers guard in-flight escrow separately."""
        require_owner_or_admin(caller, posting.owner_id)
        now = now or datetime.now(timezone.utc)
        self.transition(posting, PostingStatus.CANCELLED, caller.user_id, now, reason or "closed")
        posting.cancelled_at = now
        return posting

    def complete_job(
        self,
        caller: Caller,
        posting: Posting,
        now: Optional[datetime] = None,
    ) -> Posting:
        """Mark an in-progress job as completed. Gigs complete via milestones."""
        require_owner_or_admin(caller, posting.owner_id)
        if posting.kind != PostingKind.JOB:
            raise PreconditionError(
                "invalid_transition", "Gigs complete when their final milestone settles",
            )
        return self.mark_completed(posting, caller.user_id, now)

    def flag(
        self,
        caller: Caller,
        posting: Posting,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Posting:
        """Admin moderation: hide an open posting."""
        require_admin(caller)
        now = now or datetime.now(timezone.utc)
        self.transition(posting, PostingStatus.FLAGGED, caller.user_id, now, reason)
        posting.flag_reason = reason
        return posting

    def unflag(
        self,
        caller: Caller,
        posting: Posting,
        now: Optional[datetime] = None,
    ) -> Posting:
        require_admin(caller)
        now = now or datetime.now(timezone.utc)
        self.transition(posting, PostingStatus.OPEN, caller.user_id, now, "unflagged")
        posting.flag_reason = ""
        return posting

    # ------------------------------------------------------------------
    # Side-effect transitions driven by other engines
    # ------------------------------------------------------------------

    def mark_in_progress(
        self, posting: Posting, actor_id: str, now: Optional[datetime] = None,
    ) -> Posting:
        now = now or datetime.now(timezone.utc)
        self.transition(posting, PostingStatus.IN_PROGRESS, actor_id, now, "application accepted")
        posting.started_at = now
        return posting

    def mark_completed(
        self, posting: Posting, actor_id: str, now: Optional[datetime] = None,
    ) -> Posting:
        now = now or datetime.now(timezone.utc)
        self.transition(posting, PostingStatus.COMPLETED, actor_id, now, "completed")
        posting.completed_at = now
        return posting

    @staticmethod
    def transition(
        posting: Posting,
        target: PostingStatus,
        actor_id: str,
        now: datetime,
        note: str = "",
    ) -> None:
        """Apply a transition and append it to the posting's history."""
        previous = posting.status
        errors = PostingStateMachine.apply_transition(posting, target)
        if errors:
            code = "posting_closed" if PostingStateMachine.is_terminal(previous) else "invalid_transition"
            raise PreconditionError(code, "; ".join(errors))
        record_change(posting.history, previous.value, target.value, actor_id, now, note)
        posting.updated_at = now
        logger.info(
            "Posting %s: %s → %s by %s", posting.posting_id, previous.value, target.value, actor_id,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _validate_content(self, posting: Posting) -> None:
        if posting.budget_min < 0 or posting.budget_max < 0:
            raise PreconditionError("invalid_posting", "Budgets must be non-negative")
        if posting.budget_max and posting.budget_min > posting.budget_max:
            raise PreconditionError("invalid_posting", "budget_min exceeds budget_max")
        if posting.kind == PostingKind.GIG and posting.budget_max <= 0:
            raise PreconditionError("invalid_posting", "A gig needs a positive budget_max")
        quantum = self.money_quantum
        validate_money_units(posting.budget_min, quantum, "invalid_posting", "budget_min")
        validate_money_units(posting.budget_max, quantum, "invalid_posting", "budget_max")
        if posting.skill_test is not None:
            req = posting.skill_test
            if req.difficulty not in {d.value for d in Difficulty}:
                raise PreconditionError(
                    "invalid_posting", f"Unknown test difficulty: {req.difficulty}",
                )
            if not 0 < req.passing_score <= 100:
                raise PreconditionError("invalid_posting", "passing_score must be in 1..100")
        if posting.milestone_plan:
            validate_plan_percentages(p.percentage for p in posting.milestone_plan)


def validate_money_units(amount: Decimal, quantum: Decimal, code: str, name: str) -> None:
    """Money amounts must be whole multiples of the currency unit."""
    value = Decimal(amount)
    if value != value.quantize(quantum):
        raise PreconditionError(code, f"{name} must be in units of {quantum}, got {value}")


def validate_plan_percentages(percentages: Iterable[Decimal]) -> None:
    """Percentages must be positive and sum to exactly 100."""
    values = [Decimal(p) for p in percentages]
    if not values:
        raise PreconditionError("invalid_milestone_plan", "At least one milestone is required")
    if any(p <= 0 for p in values):
        raise PreconditionError("invalid_milestone_plan", "Milestone percentages must be positive")
    if sum(values, Decimal("0")) != HUNDRED:
        raise PreconditionError(
            "invalid_milestone_plan",
            f"Milestone percentages sum to {sum(values, Decimal('0'))}, expected 100",
        )


def filter_postings(
    postings: Iterable[Posting],
    skills: Optional[list[str]] = None,
    location: Optional[str] = None,
    budget_min: Optional[Decimal] = None,
    budget_max: Optional[Decimal] = None,
    status: Optional[PostingStatus] = None,
    kind: Optional[PostingKind] = None,
    remote: Optional[bool] = None,
    owner_id: Optional[str] = None,
    limit: int = 50,
) -> list[Posting]:
    """Search postings with optional filters.

    ``skills`` matches postings requiring any of the given skills
    (case-insensitive). The budget filters select postings whose budget
    range overlaps the requested range. Flagged postings are hidden
    unless explicitly requested by status.
    """
    wanted_skills = {s.lower() for s in skills or []}
    results: list[Posting] = []
    for posting in postings:
        if status is not None:
            if posting.status != status:
                continue
        elif posting.status == PostingStatus.FLAGGED:
            continue
        if kind is not None and posting.kind != kind:
            continue
        if owner_id is not None and posting.owner_id != owner_id:
            continue
        if remote is not None and posting.remote != remote:
            continue
        if location and location.lower() not in posting.location.lower():
            continue
        if wanted_skills and not wanted_skills & {s.lower() for s in posting.required_skills}:
            continue
        if budget_min is not None and posting.budget_max and posting.budget_max < budget_min:
            continue
        if budget_max is not None and posting.budget_min > budget_max:
            continue
        results.append(posting)
        if len(results) >= limit:
            break
    return results
