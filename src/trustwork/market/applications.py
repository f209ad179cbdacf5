"""Application manager — eligibility gates and employer decisions.

Rules:
- Only job seekers apply; nobody applies to their own posting.
- An applicant has at most one non-terminal application per posting.
- A test-gated posting requires a passed attempt by the same applicant
  for the same posting at submit time.
- Only the posting owner shortlists, accepts or rejects; only the
  applicant withdraws.
- Accepting moves the posting to IN_PROGRESS and rejects every other
  non-terminal application on it, in the same unit of work.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional
from uuid import uuid4

from trustwork.errors import AuthorizationError, PreconditionError
from trustwork.identity.authz import require_owner_or_admin, require_role, require_self
from trustwork.market.posting_state_machine import PostingStateMachine
from trustwork.market.postings import PostingManager, validate_money_units
from trustwork.models.application import (
    APPLICATION_TRANSITIONS,
    Application,
    ApplicationStatus,
)
from trustwork.models.history import record_change
from trustwork.models.identity import Caller, Role
from trustwork.models.posting import Posting, PostingStatus
from trustwork.models.skill_test import AttemptStatus, SkillTestAttempt

logger = logging.getLogger(__name__)


class ApplicationManager:
    """Validates and applies application lifecycle operations.

    Pure state machine over model objects: the caller supplies the
    posting and its applications and persists whatever is returned.
    """

    def __init__(self, postings: PostingManager) -> None:
        self._postings = postings

    def submit(
        self,
        caller: Caller,
        posting: Posting,
        existing: Iterable[Application],
        qualifying_attempt: Optional[SkillTestAttempt] = None,
        proposed_rate: Optional[Decimal] = None,
        timeline: str = "",
        cover_letter: str = "",
        attachments: Optional[list[str]] = None,
        application_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Application:
        """Create a PENDING application after checking every gate."""
        require_role(caller, Role.JOB_SEEKER)
        if posting.owner_id == caller.user_id:
            raise AuthorizationError("forbidden_role", "Cannot apply to your own posting")
        if not PostingStateMachine.accepts_applications(posting.status):
            raise PreconditionError(
                "posting_closed", f"Posting {posting.posting_id} is {posting.status.value}",
            )
        for app in existing:
            if app.applicant_id == caller.user_id and app.is_active:
                raise PreconditionError(
                    "duplicate_application",
                    f"Active application {app.application_id} already exists",
                )
        if posting.requires_test and not _is_qualifying(qualifying_attempt, caller.user_id, posting):
            raise PreconditionError(
                "requires_test_not_passed",
                "This posting requires a passed skill test",
            )
        if proposed_rate is not None:
            if Decimal(proposed_rate) <= 0:
                raise PreconditionError("invalid_application", "proposed_rate must be positive")
            validate_money_units(
                proposed_rate, self._postings.money_quantum, "invalid_application", "proposed_rate",
            )

        now = now or datetime.now(timezone.utc)
        app = Application(
            application_id=application_id or f"app_{uuid4().hex[:12]}",
            posting_id=posting.posting_id,
            applicant_id=caller.user_id,
            proposed_rate=Decimal(proposed_rate) if proposed_rate is not None else None,
            timeline=timeline,
            cover_letter=cover_letter,
            attachments=list(attachments or []),
            skill_test_attempt_id=(
                qualifying_attempt.attempt_id if posting.requires_test and qualifying_attempt else None
            ),
            created_at=now,
        )
        record_change(app.history, None, app.status.value, caller.user_id, now, "submitted")
        logger.info(
            "Application %s submitted by %s on %s",
            app.application_id, caller.user_id, posting.posting_id,
        )
        return app

    def shortlist(
        self,
        caller: Caller,
        posting: Posting,
        app: Application,
        now: Optional[datetime] = None,
    ) -> Application:
        self._require_posting_owner(caller, posting)
        self._transition(app, ApplicationStatus.SHORTLISTED, caller.user_id, now)
        return app

    def reject(
        self,
        caller: Caller,
        posting: Posting,
        app: Application,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Application:
        self._require_posting_owner(caller, posting)
        self._transition(app, ApplicationStatus.REJECTED, caller.user_id, now, reason)
        app.rejection_reason = reason
        return app

    def withdraw(
        self,
        caller: Caller,
        app: Application,
        now: Optional[datetime] = None,
    ) -> Application:
        require_self(caller, app.applicant_id)
        self._transition(app, ApplicationStatus.WITHDRAWN, caller.user_id, now, "withdrawn")
        return app

    def accept(
        self,
        caller: Caller,
        posting: Posting,
        app: Application,
        others: Iterable[Application],
        now: Optional[datetime] = None,
    ) -> list[Application]:
        """Accept ``app``; returns the other applications auto-rejected.

        Mutates the posting (→ IN_PROGRESS) and every affected
        application. Nothing is mutated if a precondition fails.
        """
        self._require_posting_owner(caller, posting)
        now = now or datetime.now(timezone.utc)
        self._check_transition(app, ApplicationStatus.ACCEPTED)
        if posting.status != PostingStatus.OPEN:
            raise PreconditionError(
                "invalid_transition",
                f"Posting {posting.posting_id} is {posting.status.value}; cannot accept",
            )

        self._postings.mark_in_progress(posting, caller.user_id, now)
        self._transition(app, ApplicationStatus.ACCEPTED, caller.user_id, now, "accepted")

        rejected: list[Application] = []
        for other in others:
            if other.application_id == app.application_id or not other.is_active:
                continue
            self._transition(
                other, ApplicationStatus.REJECTED, caller.user_id, now, "position filled",
            )
            other.rejection_reason = "position filled"
            rejected.append(other)
        logger.info(
            "Application %s accepted on %s; %d others rejected",
            app.application_id, posting.posting_id, len(rejected),
        )
        return rejected

    @staticmethod
    def stats(applications: Iterable[Application]) -> dict[str, int]:
        """Count applications per status (all statuses present, zero-filled)."""
        counts = {status.value: 0 for status in ApplicationStatus}
        total = 0
        for app in applications:
            counts[app.status.value] += 1
            total += 1
        counts["total"] = total
        return counts

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _require_posting_owner(caller: Caller, posting: Posting) -> None:
        require_role(caller, Role.EMPLOYER, Role.ADMIN)
        require_owner_or_admin(caller, posting.owner_id)

    @staticmethod
    def _check_transition(app: Application, target: ApplicationStatus) -> None:
        allowed = APPLICATION_TRANSITIONS.get(app.status, frozenset())
        if target not in allowed:
            raise PreconditionError(
                "invalid_transition",
                f"Invalid application transition: {app.status.value} → {target.value}",
            )

    def _transition(
        self,
        app: Application,
        target: ApplicationStatus,
        actor_id: str,
        now: Optional[datetime],
        note: str = "",
    ) -> None:
        self._check_transition(app, target)
        now = now or datetime.now(timezone.utc)
        previous = app.status
        app.status = target
        if target != ApplicationStatus.WITHDRAWN:
            app.reviewed_at = now
            app.reviewed_by = actor_id
        record_change(app.history, previous.value, target.value, actor_id, now, note)


def _is_qualifying(
    attempt: Optional[SkillTestAttempt], applicant_id: str, posting: Posting,
) -> bool:
    return (
        attempt is not None
        and attempt.applicant_id == applicant_id
        and attempt.posting_id == posting.posting_id
        and attempt.status == AttemptStatus.COMPLETED
        and attempt.passed
    )
