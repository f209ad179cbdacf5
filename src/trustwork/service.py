"""Service layer — the public operations of the gig lifecycle core.

The service is the single entry point a host application calls. It owns
everything the engines deliberately leave out: loading records from the
store, per-aggregate locking, committing each operation as one unit of
work, the audit trail, notifications and gateway calls.

Every public operation returns a ServiceResult. Errors raised by the
engines are converted here and nowhere else.

Locking:
    posting:<id>            the posting with its applications, milestones,
                            escrow records, disputes and reviews
    attempt:<user>:<id>     one applicant's attempts on one posting
    user:<id>               a user's rating aggregate

Money flow for one milestone:
    fund_milestone → payment webhook (held) → approve_milestone → payouts
    → release (milestone PAID). Disputes freeze the escrow until an admin
    verdict is executed.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from trustwork import __version__
from trustwork.compensation.escrow import EscrowLedger
from trustwork.compensation.gateway import (
    EVENT_PAYMENT,
    STATUS_HELD,
    PaymentGateway,
    SandboxGateway,
    WebhookEvent,
)
from trustwork.compensation.retry import call_with_retry
from trustwork.errors import (
    ConflictError,
    ExternalError,
    InvariantError,
    NotFoundError,
    PreconditionError,
    TrustWorkError,
)
from trustwork.identity.authz import (
    require_admin,
    require_owner_or_admin,
    require_party,
)
from trustwork.invariants import check_all
from trustwork.legal.disputes import DisputeResolver
from trustwork.market.applications import ApplicationManager
from trustwork.market.postings import PostingManager, filter_postings
from trustwork.models.application import Application, ApplicationStatus
from trustwork.models.dispute import (
    Dispute,
    DisputeReason,
    DisputeStatus,
    Evidence,
    Verdict,
    VerdictKind,
)
from trustwork.models.escrow import (
    LIVE_STATES,
    Party,
    EscrowPayment,
    EscrowState,
    IntentKind,
    IntentStatus,
    PaymentMethod,
    WebhookReceipt,
)
from trustwork.models.identity import SYSTEM_ACTOR, Caller
from trustwork.models.milestone import (
    Deliverable,
    Milestone,
    MilestoneSpec,
    MilestoneStatus,
)
from trustwork.models.posting import (
    MilestonePlanItem,
    Posting,
    PostingKind,
    PostingStatus,
    SkillTestRequirement,
)
from trustwork.models.review import RatingAggregate, Review
from trustwork.models.skill_test import AttemptStatus, Difficulty, SkillTestAttempt
from trustwork.persistence.codec import encode
from trustwork.persistence.event_log import EventKind, EventLog, EventRecord
from trustwork.persistence.state_store import (
    AGGREGATES,
    APPLICATIONS,
    ATTEMPTS,
    DISPUTES,
    ESCROWS,
    MILESTONES,
    POSTINGS,
    REVIEWS,
    WEBHOOK_RECEIPTS,
    StateStore,
    UnitOfWork,
)
from trustwork.policy.resolver import PolicyResolver
from trustwork.review.ratings import RatingAggregator
from trustwork.skills.assessment import SkillTestEngine
from trustwork.skills.question_bank import QuestionBank
from trustwork.workflow.milestones import MilestoneEngine
from trustwork.workflow.notifications import Notification, Notifier, publish_all

logger = logging.getLogger(__name__)

_SETTLED_EVENTS = {
    EscrowState.RELEASED: EventKind.ESCROW_RELEASED,
    EscrowState.REFUNDED: EventKind.ESCROW_REFUNDED,
    EscrowState.SPLIT: EventKind.ESCROW_SPLIT,
}

_VERDICT_INTENTS = {
    VerdictKind.RELEASE_TO_PAYEE: IntentKind.RELEASE,
    VerdictKind.REFUND_TO_PAYER: IntentKind.REFUND,
    VerdictKind.SPLIT: IntentKind.SPLIT,
}


@dataclass
class ServiceResult:
    """Result of a service operation.

    ``code`` is the stable error code of a failed operation.
    """
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    code: Optional[str] = None


class TrustWorkService:
    """Gig lifecycle facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = TrustWorkService(resolver, gateway=SandboxGateway())
        result = service.create_posting(employer, PostingKind.GIG, "Landing page",
                                        budget_max=Decimal("1000"))
        posting_id = result.data["posting_id"]
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        gateway: Optional[PaymentGateway] = None,
        state_store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._resolver = resolver
        self._postings = PostingManager(resolver)
        self._applications = ApplicationManager(self._postings)
        self._skill_tests = SkillTestEngine(
            resolver, QuestionBank.from_data(resolver.skill_test_templates_data()),
        )
        self._milestones = MilestoneEngine(resolver)
        self._ledger = EscrowLedger(resolver)
        self._disputes = DisputeResolver(resolver, self._ledger)
        self._ratings = RatingAggregator(resolver)

        if gateway is None:
            base_url = resolver.gateway_params().get("session_base_url")
            gateway = SandboxGateway(base_url) if base_url else SandboxGateway()
        self._gateway = gateway
        self._sleep = sleep

        # Persistence layer (in-memory store if not provided)
        self._store = state_store or StateStore()
        self._event_log = event_log
        self._notifier = notifier

        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_lock = threading.Lock()
        self._event_counter = event_log.count if event_log is not None else 0
        self._persistence_degraded = False

    # ------------------------------------------------------------------
    # Postings
    # ------------------------------------------------------------------

    def create_posting(
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
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Publish a job or gig in OPEN status."""
        now = now or datetime.now(timezone.utc)
        try:
            self._check_template(skill_test)
            posting = self._postings.create(
                caller, PostingKind(kind), title,
                description=description,
                category=category,
                location=location,
                remote=remote,
                required_skills=required_skills,
                budget_min=budget_min,
                budget_max=budget_max,
                skill_test=skill_test,
                milestone_plan=milestone_plan,
                now=now,
            )
            with self._locked(_posting_key(posting.posting_id)):
                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                warning = self._commit(
                    uow, EventKind.POSTING_CREATED, caller.user_id,
                    {"posting_id": posting.posting_id, "kind": posting.kind.value},
                    now,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "posting_id": posting.posting_id,
            "status": posting.status.value,
            "version": posting.version,
        }, warning)

    def update_posting(
        self,
        caller: Caller,
        posting_id: str,
        changes: dict[str, Any],
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Edit the content of an OPEN or FLAGGED posting."""
        now = now or datetime.now(timezone.utc)
        try:
            if "skill_test" in changes:
                self._check_template(changes["skill_test"])
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                _check_version(posting, expected_version)
                self._postings.update(caller, posting, changes, now)
                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                warning = self._commit(
                    uow, EventKind.POSTING_UPDATED, caller.user_id,
                    {"posting_id": posting_id, "fields": ",".join(sorted(changes))},
                    now,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({"posting_id": posting_id, "version": posting.version}, warning)

    def close_posting(
        self,
        caller: Caller,
        posting_id: str,
        reason: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Cancel a posting and reject its active applications.

        Refused while any escrow of the posting is still live.
        """
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                _check_version(posting, expected_version)
                live = self._store.find(
                    ESCROWS, lambda e: e.posting_id == posting_id and e.state in LIVE_STATES,
                )
                if live:
                    raise PreconditionError(
                        "escrow_busy",
                        f"Posting {posting_id} has {len(live)} live escrow record(s)",
                    )
                self._postings.close(caller, posting, reason, now)
                rejected = []
                for app in self._applications_of(posting_id):
                    if app.is_active:
                        self._applications.reject(caller, posting, app, "posting closed", now)
                        rejected.append(app)

                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                uow.stage_all(APPLICATIONS, rejected)
                warning = self._commit(
                    uow, EventKind.POSTING_TRANSITION, caller.user_id,
                    {"posting_id": posting_id, "to": posting.status.value, "reason": reason},
                    now,
                    [
                        Notification(a.applicant_id, "application.rejected", a.application_id,
                                     {"reason": "posting closed"}, now)
                        for a in rejected
                    ],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "posting_id": posting_id,
            "status": posting.status.value,
            "rejected_applications": [a.application_id for a in rejected],
        }, warning)

    def complete_job(
        self,
        caller: Caller,
        posting_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Owner marks an in-progress job as completed."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                _check_version(posting, expected_version)
                self._postings.complete_job(caller, posting, now)
                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                warning = self._commit(
                    uow, EventKind.POSTING_TRANSITION, caller.user_id,
                    {"posting_id": posting_id, "to": posting.status.value},
                    now,
                    self._completion_notices(posting, now),
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({"posting_id": posting_id, "status": posting.status.value}, warning)

    def flag_posting(
        self,
        caller: Caller,
        posting_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin moderation: hide an open posting from search."""
        return self._moderate_posting(caller, posting_id, reason, now, flag=True)

    def unflag_posting(
        self,
        caller: Caller,
        posting_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._moderate_posting(caller, posting_id, "", now, flag=False)

    def get_posting(self, posting_id: str) -> Optional[Posting]:
        return self._store.get(POSTINGS, posting_id)

    def list_postings(
        self,
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
        """Search postings, newest first."""
        postings = sorted(
            self._store.find(POSTINGS),
            key=lambda p: p.created_at or _no_time(),
            reverse=True,
        )
        return filter_postings(
            postings,
            skills=skills,
            location=location,
            budget_min=budget_min,
            budget_max=budget_max,
            status=status,
            kind=kind,
            remote=remote,
            owner_id=owner_id,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Skill tests
    # ------------------------------------------------------------------

    def can_attempt(
        self,
        caller: Caller,
        posting_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Whether the caller may start a test attempt on the posting now."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_attempt_key(caller.user_id, posting_id)):
                posting = self._store.get(POSTINGS, posting_id)
                attempts = self._attempts_of(caller.user_id, posting_id)
                warning = self._expire_attempts(attempts, now)
                eligibility = self._skill_tests.can_attempt(posting, attempts, now)
        except TrustWorkError as e:
            return self._failure(e)
        last = eligibility.last_attempt
        return self._success({
            "allowed": eligibility.allowed,
            "reason": eligibility.reason,
            "last_attempt_id": last.attempt_id if last else None,
            "next_attempt_at": _iso(eligibility.next_attempt_at),
        }, warning)

    def start_attempt(
        self,
        caller: Caller,
        posting_id: str,
        difficulty: Optional[Difficulty] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Start a timed attempt. The answer key is never returned."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_attempt_key(caller.user_id, posting_id)):
                posting = self._store.get(POSTINGS, posting_id)
                attempts = self._attempts_of(caller.user_id, posting_id)
                self._expire_attempts(attempts, now)
                attempt = self._skill_tests.start_attempt(
                    caller, posting, attempts, difficulty=difficulty, now=now,
                )
                uow = self._store.begin()
                uow.stage(ATTEMPTS, attempt)
                warning = self._commit(
                    uow, EventKind.ATTEMPT_STARTED, caller.user_id,
                    {
                        "attempt_id": attempt.attempt_id,
                        "posting_id": posting_id,
                        "difficulty": attempt.difficulty.value,
                    },
                    now,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "attempt_id": attempt.attempt_id,
            "difficulty": attempt.difficulty.value,
            "time_limit_seconds": attempt.time_limit_seconds,
            "deadline_at": _iso(attempt.deadline_at),
            "questions": [
                {"question_id": q.question_id, "text": q.text, "options": dict(q.options)}
                for q in attempt.questions
            ],
        }, warning)

    def submit_attempt(
        self,
        caller: Caller,
        attempt_id: str,
        answers: Mapping[str, Optional[str]],
        time_taken_seconds: int,
        tab_switches: int = 0,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Grade and seal an attempt."""
        now = now or datetime.now(timezone.utc)
        try:
            stored = self._store.require(ATTEMPTS, attempt_id)
            with self._locked(_attempt_key(stored.applicant_id, stored.posting_id)):
                attempt = self._store.require(ATTEMPTS, attempt_id)
                _check_version(attempt, expected_version)
                result = self._skill_tests.submit_attempt(
                    caller, attempt, answers, time_taken_seconds, tab_switches, now,
                )
                uow = self._store.begin()
                uow.stage(ATTEMPTS, attempt)
                warning = self._commit(
                    uow, EventKind.ATTEMPT_SUBMITTED, caller.user_id,
                    {
                        "attempt_id": attempt_id,
                        "posting_id": attempt.posting_id,
                        "status": attempt.status.value,
                        "score": attempt.score,
                    },
                    now,
                    [Notification(caller.user_id, "skill_test.completed", attempt_id,
                                  {"score": result.score, "passed": result.passed}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "attempt_id": attempt_id,
            "status": result.status.value,
            "score": result.score,
            "passed": result.passed,
            "correct": result.correct,
            "total": result.total,
            "cheat_reason": result.cheat_reason.value if result.cheat_reason else None,
        }, warning)

    def get_attempt_review(self, caller: Caller, attempt_id: str) -> ServiceResult:
        """Question-by-question review of a sealed attempt."""
        try:
            attempt = self._store.require(ATTEMPTS, attempt_id)
            posting = self._store.require(POSTINGS, attempt.posting_id)
            review = self._skill_tests.get_review(caller, attempt, posting.owner_id)
        except TrustWorkError as e:
            return self._failure(e)
        return self._success(encode(review))

    def list_attempts_for_posting(self, caller: Caller, posting_id: str) -> ServiceResult:
        """Attempts the caller may see: all for the owner, own ones otherwise."""
        try:
            posting = self._store.require(POSTINGS, posting_id)
            attempts = self._store.find(ATTEMPTS, lambda a: a.posting_id == posting_id)
            visible = SkillTestEngine.visible_attempts(caller, posting, attempts)
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "posting_id": posting_id,
            "attempts": [
                {
                    "attempt_id": a.attempt_id,
                    "applicant_id": a.applicant_id,
                    "status": a.status.value,
                    "score": a.score,
                    "passed": a.passed,
                    "started_at": _iso(a.started_at),
                    "completed_at": _iso(a.completed_at),
                }
                for a in visible
            ],
        })

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def apply(
        self,
        caller: Caller,
        posting_id: str,
        proposed_rate: Optional[Decimal] = None,
        timeline: str = "",
        cover_letter: str = "",
        attachments: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Submit an application, gated on a passed test where required."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                qualifying = self._qualifying_attempt(caller.user_id, posting_id)
                app = self._applications.submit(
                    caller, posting, self._applications_of(posting_id),
                    qualifying_attempt=qualifying,
                    proposed_rate=proposed_rate,
                    timeline=timeline,
                    cover_letter=cover_letter,
                    attachments=attachments,
                    now=now,
                )
                uow = self._store.begin()
                uow.stage(APPLICATIONS, app)
                warning = self._commit(
                    uow, EventKind.APPLICATION_SUBMITTED, caller.user_id,
                    {"application_id": app.application_id, "posting_id": posting_id},
                    now,
                    [Notification(posting.owner_id, "application.received", app.application_id,
                                  {"posting_id": posting_id, "applicant_id": caller.user_id}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "application_id": app.application_id,
            "status": app.status.value,
            "version": app.version,
        }, warning)

    def shortlist_application(
        self,
        caller: Caller,
        application_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._decide_application(
            caller, application_id, ApplicationStatus.SHORTLISTED, "", expected_version, now,
        )

    def reject_application(
        self,
        caller: Caller,
        application_id: str,
        reason: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._decide_application(
            caller, application_id, ApplicationStatus.REJECTED, reason, expected_version, now,
        )

    def withdraw_application(
        self,
        caller: Caller,
        application_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._decide_application(
            caller, application_id, ApplicationStatus.WITHDRAWN, "", expected_version, now,
        )

    def accept_application(
        self,
        caller: Caller,
        application_id: str,
        milestones: Optional[Sequence[MilestoneSpec]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Hire an applicant.

        Moves the posting to IN_PROGRESS, rejects every other active
        application and, for a gig, partitions the agreed total into
        milestones. The gig total is the applicant's proposed rate, or the
        posting's budget_max when no rate was proposed.
        """
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(APPLICATIONS, application_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                applications = self._applications_of(posting_id)
                app = _pick(applications, "application_id", application_id, "application")
                _check_version(app, expected_version)
                rejected = self._applications.accept(caller, posting, app, applications, now)

                created: list[Milestone] = []
                if posting.is_gig:
                    total = app.proposed_rate if app.proposed_rate is not None else posting.budget_max
                    specs = self._milestones.resolve_specs(posting, milestones)
                    created = self._milestones.partition(posting, total, specs, now, caller.user_id)
                    posting.agreed_total = total

                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                uow.stage(APPLICATIONS, app)
                uow.stage_all(APPLICATIONS, rejected)
                uow.stage_all(MILESTONES, created)
                notices = [Notification(app.applicant_id, "application.accepted", application_id,
                                        {"posting_id": posting_id}, now)]
                notices.extend(
                    Notification(o.applicant_id, "application.rejected", o.application_id,
                                 {"reason": o.rejection_reason}, now)
                    for o in rejected
                )
                warning = self._commit(
                    uow, EventKind.APPLICATION_ACCEPTED, caller.user_id,
                    {
                        "application_id": application_id,
                        "posting_id": posting_id,
                        "rejected": len(rejected),
                        "milestones": len(created),
                        "agreed_total": str(posting.agreed_total) if posting.agreed_total else None,
                    },
                    now,
                    notices,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "application_id": application_id,
            "posting_id": posting_id,
            "posting_status": posting.status.value,
            "rejected_applications": [o.application_id for o in rejected],
            "milestone_ids": [m.milestone_id for m in created],
            "agreed_total": str(posting.agreed_total) if posting.agreed_total else None,
        }, warning)

    def list_applications(self, caller: Caller, posting_id: str) -> ServiceResult:
        """All applications for the owner or an admin; own ones otherwise."""
        try:
            posting = self._store.require(POSTINGS, posting_id)
            applications = self._applications_of(posting_id)
            if not (caller.is_admin or caller.user_id == posting.owner_id):
                applications = [a for a in applications if a.applicant_id == caller.user_id]
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "posting_id": posting_id,
            "applications": [
                {
                    "application_id": a.application_id,
                    "applicant_id": a.applicant_id,
                    "status": a.status.value,
                    "proposed_rate": str(a.proposed_rate) if a.proposed_rate is not None else None,
                    "version": a.version,
                }
                for a in sorted(applications, key=lambda a: a.created_at or _no_time())
            ],
        })

    def application_stats(self, caller: Caller, posting_id: Optional[str] = None) -> ServiceResult:
        """Counts per status: one posting's (owner/admin), or the caller's own."""
        try:
            if posting_id is not None:
                posting = self._store.require(POSTINGS, posting_id)
                require_owner_or_admin(caller, posting.owner_id)
                applications = self._applications_of(posting_id)
            else:
                applications = self._store.find(
                    APPLICATIONS, lambda a: a.applicant_id == caller.user_id,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success(ApplicationManager.stats(applications))

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def submit_milestone(
        self,
        caller: Caller,
        milestone_id: str,
        deliverable: Deliverable,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Freelancer submits the deliverable for the next milestone."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._require_active_gig(posting_id)
                milestones = self._milestones_of(posting_id)
                milestone = _pick(milestones, "milestone_id", milestone_id, "milestone")
                _check_version(milestone, expected_version)
                payee_id = self._payee_of(posting_id)
                self._milestones.submit(caller, milestones, milestone, deliverable, payee_id or "", now)
                warning = self._commit_milestone(
                    milestone, caller.user_id, now,
                    Notification(posting.owner_id, "milestone.submitted", milestone_id,
                                 {"index": milestone.index}, now),
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success(_milestone_data(milestone), warning)

    def approve_milestone(
        self,
        caller: Caller,
        milestone_id: str,
        notes: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Client approves a submitted milestone and its escrow is released.

        Approval commits first. If the payouts then fail the milestone
        stays APPROVED with its escrow HELD, and ``release_escrow``
        retries; the result is still a success carrying a warning.
        """
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._require_active_gig(posting_id)
                milestone = self._store.require(MILESTONES, milestone_id)
                _check_version(milestone, expected_version)
                escrow = self._live_escrow(milestone_id)
                self._milestones.approve(caller, posting, milestone, escrow, notes, now)
                payee_id = escrow.payee_id if escrow else ""
                warning = self._commit_milestone(
                    milestone, caller.user_id, now,
                    Notification(payee_id, "milestone.approved", milestone_id,
                                 {"index": milestone.index}, now),
                )
                settlement = self._settle(
                    posting, milestone, escrow, IntentKind.RELEASE, caller.user_id, now,
                    reason="milestone approved",
                )
        except TrustWorkError as e:
            return self._failure(e)
        data = _milestone_data(milestone)
        data.update(settlement)
        return self._success(data, warning)

    def reject_milestone(
        self,
        caller: Caller,
        milestone_id: str,
        notes: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Client rejects a submission; the milestone returns to PENDING."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._require_active_gig(posting_id)
                milestone = self._store.require(MILESTONES, milestone_id)
                _check_version(milestone, expected_version)
                self._milestones.reject(caller, posting, milestone, notes, now)
                warning = self._commit_milestone(
                    milestone, caller.user_id, now,
                    Notification(self._payee_of(posting_id) or "", "milestone.rejected",
                                 milestone_id, {"notes": notes}, now),
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success(_milestone_data(milestone), warning)

    def request_revision(
        self,
        caller: Caller,
        milestone_id: str,
        notes: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Send a submission back for revision. Repeats are no-ops."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._require_active_gig(posting_id)
                milestone = self._store.require(MILESTONES, milestone_id)
                _check_version(milestone, expected_version)
                changed = self._milestones.request_revision(caller, posting, milestone, notes, now)
                warning = None
                if changed:
                    warning = self._commit_milestone(
                        milestone, caller.user_id, now,
                        Notification(self._payee_of(posting_id) or "", "milestone.revision_requested",
                                     milestone_id, {"notes": notes}, now),
                    )
        except TrustWorkError as e:
            return self._failure(e)
        data = _milestone_data(milestone)
        data["changed"] = changed
        return self._success(data, warning)

    def list_milestones(self, posting_id: str) -> list[Milestone]:
        return self._milestones_of(posting_id)

    def milestone_stats(self, posting_id: str) -> ServiceResult:
        """Progress of a gig: counts per status, share paid, amount released."""
        try:
            self._store.require(POSTINGS, posting_id)
        except TrustWorkError as e:
            return self._failure(e)
        milestones = self._milestones_of(posting_id)
        counts = {status.value: 0 for status in MilestoneStatus}
        for milestone in milestones:
            counts[milestone.status.value] += 1
        paid = [m for m in milestones if m.status == MilestoneStatus.PAID]
        total = len(milestones)
        percentage = (
            (Decimal(len(paid)) * 100 / total).quantize(Decimal("0.01")) if total else Decimal("0.00")
        )
        return self._success({
            "posting_id": posting_id,
            "total": total,
            "by_status": counts,
            "percentage_complete": str(percentage),
            "total_amount": str(sum((m.amount for m in milestones), Decimal("0"))),
            "released_amount": str(sum((m.amount for m in paid), Decimal("0"))),
        })

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def fund_milestone(
        self,
        caller: Caller,
        milestone_id: str,
        method: PaymentMethod = PaymentMethod.PAYFAST,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Create an escrow record and open a gateway payment session.

        The escrow stays INITIATED until a signed payment webhook arrives.
        """
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._require_active_gig(posting_id)
                require_party(caller, (posting.owner_id,), allow_admin=False)
                milestone = self._store.require(MILESTONES, milestone_id)
                if milestone.status == MilestoneStatus.PAID:
                    raise PreconditionError("invalid_transition", "Milestone is already paid")
                if self._live_escrow(milestone_id) is not None:
                    raise PreconditionError(
                        "escrow_busy", f"Milestone {milestone.index} already has live escrow",
                    )
                payee_id = self._payee_of(posting_id)
                if payee_id is None:
                    raise InvariantError("missing_payee", f"Gig {posting_id} has no accepted application")

                record = self._ledger.create(milestone, posting.owner_id, payee_id, method, now=now)
                session = call_with_retry(
                    lambda: self._gateway.create_payment_session(
                        record.gross, record.currency,
                        {"escrow_id": record.escrow_id, "milestone_id": milestone_id},
                    ),
                    self._resolver.retry_policy(),
                    f"payment session for {record.escrow_id}",
                    sleep=self._sleep,
                )
                self._ledger.attach_session(record, session.external_ref, session.session_url)
                logger.info(
                    "Escrow %s opened for milestone %s: %s %s via %s",
                    record.escrow_id, milestone_id, record.gross, record.currency, record.method.value,
                )
                uow = self._store.begin()
                uow.stage(ESCROWS, record)
                warning = self._commit(
                    uow, EventKind.ESCROW_CREATED, caller.user_id,
                    {
                        "escrow_id": record.escrow_id,
                        "milestone_id": milestone_id,
                        "posting_id": posting_id,
                        "gross": str(record.gross),
                        "external_ref": record.external_ref,
                    },
                    now,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "escrow_id": record.escrow_id,
            "state": record.state.value,
            "external_ref": record.external_ref,
            "session_url": record.session_url,
            "gross": str(record.gross),
            "fee": str(record.fee),
            "net": str(record.net),
        }, warning)

    def handle_webhook(
        self,
        payload: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Apply a signed gateway notification exactly once.

        A replay of an already processed (external_ref, event_type) pair
        succeeds with ``duplicate=True`` and changes nothing.
        """
        now = now or datetime.now(timezone.utc)
        try:
            event = WebhookEvent.from_payload(payload, self._resolver.webhook_secret())
            if self._store.get(WEBHOOK_RECEIPTS, event.receipt_key) is not None:
                return self._duplicate_webhook(event)
            record = self._escrow_for_event(event)
            with self._locked(_posting_key(record.posting_id)):
                if self._store.get(WEBHOOK_RECEIPTS, event.receipt_key) is not None:
                    return self._duplicate_webhook(event)
                record = self._store.require(ESCROWS, record.escrow_id)
                uow = self._store.begin()
                if event.event_type == EVENT_PAYMENT:
                    kind, notices = self._apply_payment_event(record, event, now)
                else:
                    kind, notices = self._apply_payout_event(record, event, uow, now)
                uow.stage(ESCROWS, record)
                uow.stage(WEBHOOK_RECEIPTS, WebhookReceipt(
                    receipt_key=event.receipt_key,
                    external_ref=event.external_ref,
                    event_type=event.event_type,
                    status=event.status,
                    escrow_id=record.escrow_id,
                    received_at=now,
                ))
                warning = self._commit(
                    uow, kind, SYSTEM_ACTOR,
                    {
                        "escrow_id": record.escrow_id,
                        "external_ref": event.external_ref,
                        "event_type": event.event_type,
                        "status": event.status,
                        "state": record.state.value,
                    },
                    now,
                    notices,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "duplicate": False,
            "escrow_id": record.escrow_id,
            "state": record.state.value,
        }, warning)

    def release_escrow(
        self,
        caller: Caller,
        escrow_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Retry the release of an approved milestone's held escrow."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(ESCROWS, escrow_id).posting_id
            with self._locked(_posting_key(posting_id)):
                escrow = self._store.require(ESCROWS, escrow_id)
                require_party(caller, (escrow.payer_id,))
                milestone = self._store.require(MILESTONES, escrow.milestone_id)
                if milestone.status != MilestoneStatus.APPROVED:
                    raise PreconditionError(
                        "invalid_transition",
                        f"Milestone {milestone.index} is {milestone.status.value}; approve it first",
                    )
                posting = self._store.require(POSTINGS, posting_id)
                settlement = self._settle(
                    posting, milestone, escrow, IntentKind.RELEASE, caller.user_id, now,
                    reason="release retried",
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._settlement_result(escrow_id, settlement)

    def refund_escrow(
        self,
        caller: Caller,
        escrow_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Return held money to the payer.

        Only the payee (giving the money back) or an admin may refund a
        held escrow; a payer who wants money back opens a dispute.
        """
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(ESCROWS, escrow_id).posting_id
            with self._locked(_posting_key(posting_id)):
                escrow = self._store.require(ESCROWS, escrow_id)
                require_party(caller, (escrow.payee_id,))
                milestone = self._store.require(MILESTONES, escrow.milestone_id)
                posting = self._store.require(POSTINGS, posting_id)
                settlement = self._settle(
                    posting, milestone, escrow, IntentKind.REFUND, caller.user_id, now,
                    reason=reason or "refunded",
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._settlement_result(escrow_id, settlement)

    def get_escrow(self, escrow_id: str) -> Optional[EscrowPayment]:
        return self._store.get(ESCROWS, escrow_id)

    def escrows_for_milestone(self, milestone_id: str) -> list[EscrowPayment]:
        return sorted(
            self._store.find(ESCROWS, lambda e: e.milestone_id == milestone_id),
            key=lambda e: e.created_at or _no_time(),
        )

    def payment_stats(self, caller: Caller, user_id: str) -> ServiceResult:
        """Money totals for one user, as payer and as payee.

        ``total_paid`` is what left the user's escrows for good (refunds
        excluded); ``pending_payouts`` is the net still owed to them.
        """
        try:
            require_owner_or_admin(caller, user_id)
        except TrustWorkError as e:
            return self._failure(e)
        zero = Decimal("0")
        totals = {
            "total_paid": zero,
            "total_received": zero,
            "pending_payments": zero,
            "held_in_escrow": zero,
            "pending_payouts": zero,
        }
        escrows = self._store.find(ESCROWS, lambda e: user_id in (e.payer_id, e.payee_id))
        for escrow in escrows:
            if escrow.payer_id == user_id:
                if escrow.state == EscrowState.INITIATED:
                    totals["pending_payments"] += escrow.gross
                elif escrow.state in (EscrowState.HELD, EscrowState.DISPUTED):
                    totals["held_in_escrow"] += escrow.gross
                elif escrow.state in (EscrowState.RELEASED, EscrowState.SPLIT):
                    refunded = sum(
                        (m.amount for m in escrow.movements if m.party == Party.PAYER), zero,
                    )
                    totals["total_paid"] += escrow.gross - refunded
            if escrow.payee_id == user_id:
                if escrow.state in (EscrowState.HELD, EscrowState.DISPUTED):
                    totals["pending_payouts"] += escrow.net
                totals["total_received"] += sum(
                    (m.amount for m in escrow.movements
                     if m.party == Party.PAYEE and m.party_id == user_id),
                    zero,
                )
        data: dict[str, Any] = {name: str(amount) for name, amount in totals.items()}
        data["user_id"] = user_id
        data["escrow_count"] = len(escrows)
        return self._success(data)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        caller: Caller,
        milestone_id: str,
        reason: DisputeReason,
        title: str = "",
        description: str = "",
        evidence: Optional[list[Evidence]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Either party disputes a funded milestone, freezing its escrow."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(MILESTONES, milestone_id).posting_id
            with self._locked(_posting_key(posting_id)):
                milestone = self._store.require(MILESTONES, milestone_id)
                escrow = self._live_escrow(milestone_id)
                if escrow is None:
                    raise PreconditionError(
                        "escrow_not_funded", f"Milestone {milestone.index} has no funded escrow",
                    )
                existing = self._store.find(DISPUTES, lambda d: d.milestone_id == milestone_id)
                dispute = self._disputes.open(
                    caller, milestone, escrow, existing, reason,
                    title=title, description=description, evidence=evidence, now=now,
                )
                uow = self._store.begin()
                uow.stage(DISPUTES, dispute)
                uow.stage(ESCROWS, escrow)
                warning = self._commit(
                    uow, EventKind.DISPUTE_OPENED, caller.user_id,
                    {
                        "dispute_id": dispute.dispute_id,
                        "milestone_id": milestone_id,
                        "escrow_id": escrow.escrow_id,
                        "reason": dispute.reason.value,
                    },
                    now,
                    [Notification(dispute.respondent_id, "dispute.opened", dispute.dispute_id,
                                  {"deadline": _iso(dispute.response_deadline)}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "dispute_id": dispute.dispute_id,
            "status": dispute.status.value,
            "escrow_state": escrow.state.value,
            "response_deadline": _iso(dispute.response_deadline),
        }, warning)

    def add_dispute_evidence(
        self,
        caller: Caller,
        dispute_id: str,
        kind: str,
        url: str = "",
        note: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(DISPUTES, dispute_id).posting_id
            with self._locked(_posting_key(posting_id)):
                dispute = self._store.require(DISPUTES, dispute_id)
                self._disputes.add_evidence(caller, dispute, kind, url, note, now)
                uow = self._store.begin()
                uow.stage(DISPUTES, dispute)
                warning = self._commit(
                    uow, EventKind.DISPUTE_EVIDENCE_ADDED, caller.user_id,
                    {"dispute_id": dispute_id, "kind": kind},
                    now,
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({"dispute_id": dispute_id, "evidence_count": len(dispute.evidence)}, warning)

    def respond_to_dispute(
        self,
        caller: Caller,
        dispute_id: str,
        text: str,
        evidence: Optional[list[Evidence]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Respondent answers within the window; the dispute goes to review."""
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(DISPUTES, dispute_id).posting_id
            with self._locked(_posting_key(posting_id)):
                dispute = self._store.require(DISPUTES, dispute_id)
                _check_version(dispute, expected_version)
                self._disputes.respond(caller, dispute, text, evidence, now)
                uow = self._store.begin()
                uow.stage(DISPUTES, dispute)
                warning = self._commit(
                    uow, EventKind.DISPUTE_RESPONDED, caller.user_id,
                    {"dispute_id": dispute_id},
                    now,
                    [Notification(dispute.initiator_id, "dispute.responded", dispute_id, {}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({"dispute_id": dispute_id, "status": dispute.status.value}, warning)

    def resolve_dispute(
        self,
        caller: Caller,
        dispute_id: str,
        verdict: Verdict,
        notes: str = "",
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin records a verdict, then it is executed on the escrow.

        The verdict is committed before any payout. If the payouts fail
        the escrow stays DISPUTED and ``execute_verdict`` retries.
        """
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(DISPUTES, dispute_id).posting_id
            with self._locked(_posting_key(posting_id)):
                dispute = self._store.require(DISPUTES, dispute_id)
                _check_version(dispute, expected_version)
                escrow = self._store.require(ESCROWS, dispute.escrow_id)
                self._disputes.resolve(caller, dispute, verdict, escrow, notes, now)
                uow = self._store.begin()
                uow.stage(DISPUTES, dispute)
                warning = self._commit(
                    uow, EventKind.DISPUTE_RESOLVED, caller.user_id,
                    {
                        "dispute_id": dispute_id,
                        "escrow_id": escrow.escrow_id,
                        "verdict": verdict.kind.value,
                        "payee_amount": str(verdict.payee_amount) if verdict.payee_amount else None,
                    },
                    now,
                    [
                        Notification(party, "dispute.resolved", dispute_id,
                                     {"verdict": verdict.kind.value}, now)
                        for party in (dispute.initiator_id, dispute.respondent_id)
                    ],
                )
                settlement = self._execute_verdict(dispute, escrow, caller.user_id, now)
        except TrustWorkError as e:
            return self._failure(e)
        data = {"dispute_id": dispute_id, "status": dispute.status.value}
        data.update(settlement)
        return self._success(data, warning)

    def execute_verdict(
        self,
        caller: Caller,
        dispute_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Retry the escrow settlement of a resolved dispute."""
        now = now or datetime.now(timezone.utc)
        try:
            require_admin(caller)
            posting_id = self._store.require(DISPUTES, dispute_id).posting_id
            with self._locked(_posting_key(posting_id)):
                dispute = self._store.require(DISPUTES, dispute_id)
                if not dispute.is_resolved:
                    raise PreconditionError("invalid_transition", "Dispute has no verdict yet")
                escrow = self._store.require(ESCROWS, dispute.escrow_id)
                if escrow.state != EscrowState.DISPUTED:
                    raise PreconditionError(
                        "invalid_transition", f"Verdict already executed: escrow is {escrow.state.value}",
                    )
                settlement = self._execute_verdict(dispute, escrow, caller.user_id, now)
        except TrustWorkError as e:
            return self._failure(e)
        return self._settlement_result(dispute.escrow_id, settlement)

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        return self._store.get(DISPUTES, dispute_id)

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def create_review(
        self,
        caller: Caller,
        posting_id: str,
        subject_id: str,
        ratings: Mapping[str, Optional[int]],
        text: str = "",
        would_recommend: bool = False,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Review the other party of a completed posting.

        The review and the subject's aggregate commit together.
        """
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_posting_key(posting_id), _user_key(subject_id)):
                posting = self._store.require(POSTINGS, posting_id)
                existing = self._store.find(REVIEWS, lambda r: r.posting_id == posting_id)
                review = self._ratings.create_review(
                    caller, posting, self._payee_of(posting_id), existing, subject_id, ratings,
                    text=text, would_recommend=would_recommend, now=now,
                )
                aggregate = self._aggregate_of(subject_id)
                self._ratings.apply(aggregate, review, now)
                uow = self._store.begin()
                uow.stage(REVIEWS, review)
                uow.stage(AGGREGATES, aggregate)
                warning = self._commit(
                    uow, EventKind.REVIEW_CREATED, caller.user_id,
                    {
                        "review_id": review.review_id,
                        "posting_id": posting_id,
                        "subject_id": subject_id,
                        "overall_rating": str(review.overall_rating),
                    },
                    now,
                    [Notification(subject_id, "review.received", review.review_id,
                                  {"overall_rating": str(review.overall_rating)}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "review_id": review.review_id,
            "overall_rating": str(review.overall_rating),
            "subject_total_reviews": aggregate.total_reviews,
        }, warning)

    def flag_review(
        self,
        caller: Caller,
        review_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin moderation: hide a review and drop it from the aggregate."""
        now = now or datetime.now(timezone.utc)
        try:
            subject_id = self._store.require(REVIEWS, review_id).subject_id
            with self._locked(_user_key(subject_id)):
                review = self._store.require(REVIEWS, review_id)
                already = review.is_flagged
                aggregate = self._aggregate_of(subject_id)
                self._ratings.flag(caller, review, aggregate, reason, now)
                warning = None
                if not already:
                    uow = self._store.begin()
                    uow.stage(REVIEWS, review)
                    uow.stage(AGGREGATES, aggregate)
                    warning = self._commit(
                        uow, EventKind.REVIEW_FLAGGED, caller.user_id,
                        {"review_id": review_id, "subject_id": subject_id, "reason": reason},
                        now,
                    )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "review_id": review_id,
            "is_flagged": True,
            "changed": not already,
            "subject_total_reviews": aggregate.total_reviews,
        }, warning)

    def get_rating_aggregate(self, user_id: str) -> ServiceResult:
        aggregate = self._aggregate_of(user_id)
        return self._success({
            "user_id": user_id,
            "total_reviews": aggregate.total_reviews,
            "overall_mean": str(aggregate.overall_mean.quantize(Decimal("0.01"))),
            "dimension_means": {
                name: str(mean.quantize(Decimal("0.01")))
                for name, mean in aggregate.dimension_means().items()
            },
            "recommend_count": aggregate.recommend_count,
        })

    def pending_reviews(self, caller: Caller, now: Optional[datetime] = None) -> ServiceResult:
        """Completed postings the caller may still review, oldest deadline first."""
        now = now or datetime.now(timezone.utc)
        window = self._resolver.review_window()
        owed = []
        for posting in self._store.find(POSTINGS, lambda p: p.status == PostingStatus.COMPLETED):
            payee_id = self._payee_of(posting.posting_id)
            if caller.user_id == posting.owner_id:
                subject_id = payee_id
            elif payee_id is not None and caller.user_id == payee_id:
                subject_id = posting.owner_id
            else:
                continue
            if subject_id is None:
                continue
            deadline = (posting.completed_at or now) + window
            if now > deadline:
                continue
            written = self._store.find(
                REVIEWS,
                lambda r: r.posting_id == posting.posting_id and r.author_id == caller.user_id,
            )
            if written:
                continue
            owed.append({
                "posting_id": posting.posting_id,
                "title": posting.title,
                "subject_id": subject_id,
                "deadline": deadline,
            })
        owed.sort(key=lambda item: item["deadline"])
        for item in owed:
            item["deadline"] = item["deadline"].isoformat()
        return self._success({"user_id": caller.user_id, "pending": owed})

    def rebuild_rating_aggregate(self, caller: Caller, user_id: str) -> ServiceResult:
        """Recompute a cached aggregate from the primary review records."""
        try:
            require_admin(caller)
            with self._locked(_user_key(user_id)):
                current = self._aggregate_of(user_id)
                rebuilt = RatingAggregator.recompute(
                    user_id, self._store.find(REVIEWS, lambda r: r.subject_id == user_id),
                )
                changed = _aggregate_totals(rebuilt) != _aggregate_totals(current)
                warning = None
                if changed:
                    rebuilt.version = current.version
                    uow = self._store.begin()
                    uow.stage(AGGREGATES, rebuilt)
                    warning = uow.commit()
                    if warning:
                        self._persistence_degraded = True
        except TrustWorkError as e:
            return self._failure(e)
        if changed:
            logger.warning("Rating aggregate for %s was stale and has been rebuilt", user_id)
        return self._success({"user_id": user_id, "changed": changed}, warning)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> ServiceResult:
        """Time-driven housekeeping.

        Abandons attempts past their deadline, advances disputes whose
        response window has lapsed, and fails gateway intents older than
        the configured TTL.
        """
        now = now or datetime.now(timezone.utc)
        counts = {"attempts_abandoned": 0, "disputes_advanced": 0, "intents_swept": 0}
        errors: list[str] = []

        stale_pairs = {
            (a.applicant_id, a.posting_id)
            for a in self._store.find(ATTEMPTS, lambda a: a.status == AttemptStatus.IN_PROGRESS)
        }
        for applicant_id, posting_id in sorted(stale_pairs):
            try:
                with self._locked(_attempt_key(applicant_id, posting_id)):
                    attempts = self._attempts_of(applicant_id, posting_id)
                    before = sum(1 for a in attempts if a.status == AttemptStatus.ABANDONED)
                    self._expire_attempts(attempts, now)
                    after = sum(1 for a in attempts if a.status == AttemptStatus.ABANDONED)
                    counts["attempts_abandoned"] += after - before
            except TrustWorkError as e:
                errors.append(f"attempts {applicant_id}/{posting_id}: {e.message}")

        waiting = self._store.find(
            DISPUTES, lambda d: d.status == DisputeStatus.AWAITING_RESPONSE,
        )
        for stub in waiting:
            try:
                with self._locked(_posting_key(stub.posting_id)):
                    dispute = self._store.require(DISPUTES, stub.dispute_id)
                    if self._disputes.advance_overdue(dispute, now):
                        uow = self._store.begin()
                        uow.stage(DISPUTES, dispute)
                        self._commit(
                            uow, EventKind.DISPUTE_ADVANCED, SYSTEM_ACTOR,
                            {"dispute_id": dispute.dispute_id, "no_response": True},
                            now,
                        )
                        counts["disputes_advanced"] += 1
            except TrustWorkError as e:
                errors.append(f"dispute {stub.dispute_id}: {e.message}")

        in_flight = self._store.find(
            ESCROWS,
            lambda e: e.state == EscrowState.INITIATED or e.pending_intent is not None,
        )
        for stub in in_flight:
            try:
                with self._locked(_posting_key(stub.posting_id)):
                    record = self._store.require(ESCROWS, stub.escrow_id)
                    swept = self._ledger.sweep_stale(record, now)
                    if swept is not None:
                        kind = (
                            EventKind.ESCROW_VOIDED if record.state == EscrowState.VOID
                            else EventKind.SETTLEMENT_FAILED
                        )
                        uow = self._store.begin()
                        uow.stage(ESCROWS, record)
                        self._commit(
                            uow, kind, SYSTEM_ACTOR,
                            {"escrow_id": record.escrow_id, "swept": swept},
                            now,
                        )
                        counts["intents_swept"] += 1
            except TrustWorkError as e:
                errors.append(f"escrow {stub.escrow_id}: {e.message}")

        logger.info(
            "Sweep at %s: %d attempts abandoned, %d disputes advanced, %d intents swept",
            now.isoformat(), counts["attempts_abandoned"], counts["disputes_advanced"],
            counts["intents_swept"],
        )
        return ServiceResult(success=not errors, errors=errors, data=counts)

    def check_invariants(self) -> ServiceResult:
        """Evaluate every cross-record invariant against the store."""
        violations = check_all(
            postings=self._store.find(POSTINGS),
            applications=self._store.find(APPLICATIONS),
            attempts=self._store.find(ATTEMPTS),
            milestones=self._store.find(MILESTONES),
            escrows=self._store.find(ESCROWS),
            reviews=self._store.find(REVIEWS),
            aggregates=self._store.find(AGGREGATES),
        )
        for violation in violations:
            logger.error("Invariant violation: %s", violation)
        return ServiceResult(
            success=not violations,
            errors=violations,
            code="invariant_violation" if violations else None,
        )

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        return {
            "version": __version__,
            "postings": {
                "total": self._store.count(POSTINGS),
                "by_status": _count_by(self._store.find(POSTINGS), "status"),
            },
            "applications": _count_by(self._store.find(APPLICATIONS), "status"),
            "attempts": _count_by(self._store.find(ATTEMPTS), "status"),
            "milestones": _count_by(self._store.find(MILESTONES), "status"),
            "escrow": _count_by(self._store.find(ESCROWS), "state"),
            "disputes": _count_by(self._store.find(DISPUTES), "status"),
            "reviews": self._store.count(REVIEWS),
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal: settlement
    # ------------------------------------------------------------------

    def _settle(
        self,
        posting: Posting,
        milestone: Milestone,
        escrow: Optional[EscrowPayment],
        kind: IntentKind,
        actor_id: str,
        now: datetime,
        payee_amount: Optional[Decimal] = None,
        via_dispute: bool = False,
        reason: str = "",
    ) -> dict[str, Any]:
        """Drive one settlement through the gateway.

        The intent is committed before the first payout so that a crash
        mid-settlement leaves a record the sweep can fail.
        """
        if escrow is None:
            raise PreconditionError("escrow_not_funded", f"Milestone {milestone.index} has no escrow")
        intent = self._ledger.begin_settlement(
            escrow, kind, payee_amount=payee_amount, via_dispute=via_dispute, reason=reason, now=now,
        )
        uow = self._store.begin()
        uow.stage(ESCROWS, escrow)
        self._commit(
            uow, EventKind.SETTLEMENT_REQUESTED, actor_id,
            {"escrow_id": escrow.escrow_id, "intent_id": intent.intent_id, "kind": kind.value},
            now,
        )

        try:
            for movement in self._ledger.payout_movements(intent):
                payout = call_with_retry(
                    lambda m=movement: self._gateway.initiate_payout(
                        escrow.external_ref or escrow.escrow_id, m.amount, m.party_id,
                    ),
                    self._resolver.retry_policy(),
                    f"{kind.value} payout for {escrow.escrow_id}",
                    sleep=self._sleep,
                )
                self._ledger.record_payout(escrow, movement, payout.payout_id, payout.status)
        except ExternalError as e:
            issued = [p.payout_id for p in intent.payouts]
            if issued:
                logger.error(
                    "Escrow %s: %s failed after payouts %s were issued",
                    escrow.escrow_id, kind.value, ", ".join(issued),
                )
            self._ledger.fail_settlement(escrow, e.message, now)
            uow = self._store.begin()
            uow.stage(ESCROWS, escrow)
            self._commit(
                uow, EventKind.SETTLEMENT_FAILED, actor_id,
                {"escrow_id": escrow.escrow_id, "intent_id": intent.intent_id, "error": e.code},
                now,
            )
            return {
                "settlement": IntentStatus.FAILED.value,
                "escrow_state": escrow.state.value,
                "settlement_error": e.message,
            }

        uow = self._store.begin()
        event_kind, notices = self._apply_outcome(posting, milestone, escrow, uow, actor_id, now)
        uow.stage(ESCROWS, escrow)
        self._commit(
            uow, event_kind, actor_id,
            {
                "escrow_id": escrow.escrow_id,
                "intent_id": intent.intent_id,
                "state": escrow.state.value,
            },
            now,
            notices,
        )
        outcome = intent.status if escrow.pending_intent is None else IntentStatus.PENDING
        result: dict[str, Any] = {
            "settlement": outcome.value,
            "escrow_state": escrow.state.value,
        }
        if outcome == IntentStatus.FAILED:
            result["settlement_error"] = escrow.failure_reason
        return result

    def _apply_outcome(
        self,
        posting: Posting,
        milestone: Milestone,
        escrow: EscrowPayment,
        uow: UnitOfWork,
        actor_id: str,
        now: datetime,
    ) -> tuple[EventKind, list[Notification]]:
        """Finish, fail or keep waiting on the escrow's pending intent."""
        outcome = self._ledger.settlement_outcome(escrow)
        if outcome == IntentStatus.PENDING:
            return EventKind.SETTLEMENT_REQUESTED, []
        if outcome == IntentStatus.FAILED:
            self._ledger.fail_settlement(escrow, "payout failed", now)
            return EventKind.SETTLEMENT_FAILED, [
                Notification(escrow.payer_id, "escrow.settlement_failed", escrow.escrow_id, {}, now),
            ]

        self._ledger.complete_settlement(escrow, actor_id, now)
        if escrow.state == EscrowState.RELEASED and milestone.status == MilestoneStatus.APPROVED:
            self._milestones.mark_paid(milestone, actor_id, now)
        elif escrow.state in (EscrowState.RELEASED, EscrowState.SPLIT):
            self._milestones.settle_from_escrow(
                milestone, True, actor_id, now, f"escrow {escrow.state.value}",
            )
        elif milestone.status != MilestoneStatus.PENDING:
            self._milestones.settle_from_escrow(milestone, False, actor_id, now, "escrow refunded")
        uow.stage(MILESTONES, milestone)

        notices = [
            Notification(party, f"escrow.{escrow.state.value}", escrow.escrow_id,
                         {"milestone_id": milestone.milestone_id}, now)
            for party in (escrow.payer_id, escrow.payee_id)
        ]
        if milestone.status == MilestoneStatus.PAID:
            siblings = [
                milestone if m.milestone_id == milestone.milestone_id else m
                for m in self._milestones_of(posting.posting_id)
            ]
            if posting.status == PostingStatus.IN_PROGRESS and MilestoneEngine.all_paid(siblings):
                self._postings.mark_completed(posting, actor_id, now)
                uow.stage(POSTINGS, posting)
                notices.extend(self._completion_notices(posting, now))
        return _SETTLED_EVENTS[escrow.state], notices

    def _execute_verdict(
        self,
        dispute: Dispute,
        escrow: EscrowPayment,
        actor_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        if dispute.verdict is None:
            raise InvariantError("missing_verdict", f"Dispute {dispute.dispute_id} has no verdict to execute")
        posting = self._store.require(POSTINGS, dispute.posting_id)
        milestone = self._store.require(MILESTONES, dispute.milestone_id)
        return self._settle(
            posting, milestone, escrow, _VERDICT_INTENTS[dispute.verdict.kind], actor_id, now,
            payee_amount=dispute.verdict.payee_amount,
            via_dispute=True,
            reason=f"dispute {dispute.dispute_id}: {dispute.verdict.kind.value}",
        )

    # ------------------------------------------------------------------
    # Internal: webhooks
    # ------------------------------------------------------------------

    def _escrow_for_event(self, event: WebhookEvent) -> EscrowPayment:
        if event.event_type == EVENT_PAYMENT:
            matches = self._store.find(ESCROWS, lambda e: e.external_ref == event.external_ref)
        else:
            matches = self._store.find(
                ESCROWS,
                lambda e: e.pending_intent is not None
                and any(p.payout_id == event.external_ref for p in e.pending_intent.payouts),
            )
        if not matches:
            raise PreconditionError(
                "unknown_external_ref", f"No escrow for {event.event_type} {event.external_ref}",
            )
        return matches[0]

    def _apply_payment_event(
        self,
        record: EscrowPayment,
        event: WebhookEvent,
        now: datetime,
    ) -> tuple[EventKind, list[Notification]]:
        if event.status == STATUS_HELD:
            if self._ledger.confirm_held(record, now):
                return EventKind.ESCROW_HELD, [
                    Notification(party, "escrow.held", record.escrow_id,
                                 {"milestone_id": record.milestone_id}, now)
                    for party in (record.payer_id, record.payee_id)
                ]
        elif self._ledger.void(record, "payment failed", now):
            return EventKind.ESCROW_VOIDED, [
                Notification(record.payer_id, "escrow.payment_failed", record.escrow_id, {}, now),
            ]
        logger.warning(
            "Escrow %s is %s; payment webhook %s ignored",
            record.escrow_id, record.state.value, event.status,
        )
        return EventKind.WEBHOOK_RECEIVED, []

    def _apply_payout_event(
        self,
        record: EscrowPayment,
        event: WebhookEvent,
        uow: UnitOfWork,
        now: datetime,
    ) -> tuple[EventKind, list[Notification]]:
        if not self._ledger.apply_payout_status(record, event.external_ref, event.status):
            return EventKind.WEBHOOK_RECEIVED, []
        posting = self._store.require(POSTINGS, record.posting_id)
        milestone = self._store.require(MILESTONES, record.milestone_id)
        kind, notices = self._apply_outcome(posting, milestone, record, uow, SYSTEM_ACTOR, now)
        if kind == EventKind.SETTLEMENT_REQUESTED:
            kind = EventKind.WEBHOOK_RECEIVED
        return kind, notices

    def _duplicate_webhook(self, event: WebhookEvent) -> ServiceResult:
        logger.info("Duplicate webhook %s ignored", event.receipt_key)
        receipt = self._store.get(WEBHOOK_RECEIPTS, event.receipt_key)
        return self._success({
            "duplicate": True,
            "escrow_id": receipt.escrow_id if receipt else None,
        })

    # ------------------------------------------------------------------
    # Internal: loading
    # ------------------------------------------------------------------

    def _applications_of(self, posting_id: str) -> list[Application]:
        return self._store.find(APPLICATIONS, lambda a: a.posting_id == posting_id)

    def _attempts_of(self, applicant_id: str, posting_id: str) -> list[SkillTestAttempt]:
        return self._store.find(
            ATTEMPTS, lambda a: a.applicant_id == applicant_id and a.posting_id == posting_id,
        )

    def _milestones_of(self, posting_id: str) -> list[Milestone]:
        return sorted(
            self._store.find(MILESTONES, lambda m: m.posting_id == posting_id),
            key=lambda m: m.index,
        )

    def _payee_of(self, posting_id: str) -> Optional[str]:
        """Applicant of the posting's accepted application, if any."""
        for app in self._applications_of(posting_id):
            if app.status == ApplicationStatus.ACCEPTED:
                return app.applicant_id
        return None

    def _live_escrow(self, milestone_id: str) -> Optional[EscrowPayment]:
        live = self._store.find(
            ESCROWS, lambda e: e.milestone_id == milestone_id and e.state in LIVE_STATES,
        )
        if len(live) > 1:
            raise InvariantError(
                "escrow_duplicate", f"Milestone {milestone_id} has {len(live)} live escrow records",
            )
        return live[0] if live else None

    def _qualifying_attempt(self, applicant_id: str, posting_id: str) -> Optional[SkillTestAttempt]:
        passed = [
            a for a in self._attempts_of(applicant_id, posting_id)
            if a.status == AttemptStatus.COMPLETED and a.passed
        ]
        return max(passed, key=lambda a: a.completed_at) if passed else None

    def _aggregate_of(self, user_id: str) -> RatingAggregate:
        return self._store.get(AGGREGATES, user_id) or RatingAggregate(user_id=user_id)

    def _require_active_gig(self, posting_id: str) -> Posting:
        posting = self._store.require(POSTINGS, posting_id)
        if not posting.is_gig:
            raise PreconditionError("invalid_transition", f"Posting {posting_id} is not a gig")
        if posting.status != PostingStatus.IN_PROGRESS:
            raise PreconditionError(
                "posting_closed", f"Gig {posting_id} is {posting.status.value}",
            )
        return posting

    def _check_template(self, requirement: Optional[SkillTestRequirement]) -> None:
        if requirement is not None and not self._skill_tests.bank.has(requirement.template_id):
            raise PreconditionError(
                "invalid_posting", f"Unknown skill test template: {requirement.template_id}",
            )

    # ------------------------------------------------------------------
    # Internal: shared operation bodies
    # ------------------------------------------------------------------

    def _moderate_posting(
        self,
        caller: Caller,
        posting_id: str,
        reason: str,
        now: Optional[datetime],
        flag: bool,
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                if flag:
                    self._postings.flag(caller, posting, reason, now)
                else:
                    self._postings.unflag(caller, posting, now)
                uow = self._store.begin()
                uow.stage(POSTINGS, posting)
                warning = self._commit(
                    uow, EventKind.POSTING_TRANSITION, caller.user_id,
                    {"posting_id": posting_id, "to": posting.status.value, "reason": reason},
                    now,
                    [Notification(posting.owner_id, f"posting.{posting.status.value}", posting_id,
                                  {"reason": reason}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({"posting_id": posting_id, "status": posting.status.value}, warning)

    def _decide_application(
        self,
        caller: Caller,
        application_id: str,
        target: ApplicationStatus,
        reason: str,
        expected_version: Optional[int],
        now: Optional[datetime],
    ) -> ServiceResult:
        now = now or datetime.now(timezone.utc)
        try:
            posting_id = self._store.require(APPLICATIONS, application_id).posting_id
            with self._locked(_posting_key(posting_id)):
                posting = self._store.require(POSTINGS, posting_id)
                app = self._store.require(APPLICATIONS, application_id)
                _check_version(app, expected_version)
                if target == ApplicationStatus.SHORTLISTED:
                    self._applications.shortlist(caller, posting, app, now)
                    recipient = app.applicant_id
                elif target == ApplicationStatus.REJECTED:
                    self._applications.reject(caller, posting, app, reason, now)
                    recipient = app.applicant_id
                else:
                    self._applications.withdraw(caller, app, now)
                    recipient = posting.owner_id
                uow = self._store.begin()
                uow.stage(APPLICATIONS, app)
                warning = self._commit(
                    uow, EventKind.APPLICATION_TRANSITION, caller.user_id,
                    {"application_id": application_id, "posting_id": posting_id, "to": target.value},
                    now,
                    [Notification(recipient, f"application.{target.value}", application_id,
                                  {"reason": reason}, now)],
                )
        except TrustWorkError as e:
            return self._failure(e)
        return self._success({
            "application_id": application_id,
            "status": app.status.value,
            "version": app.version,
        }, warning)

    def _expire_attempts(self, attempts: list[SkillTestAttempt], now: datetime) -> Optional[str]:
        expired = self._skill_tests.expire_stale_attempts(attempts, now)
        if not expired:
            return None
        uow = self._store.begin()
        uow.stage_all(ATTEMPTS, expired)
        return self._commit(
            uow, EventKind.ATTEMPT_ABANDONED, SYSTEM_ACTOR,
            {"attempt_ids": ",".join(a.attempt_id for a in expired)},
            now,
        )

    def _commit_milestone(
        self,
        milestone: Milestone,
        actor_id: str,
        now: datetime,
        notice: Notification,
    ) -> Optional[str]:
        uow = self._store.begin()
        uow.stage(MILESTONES, milestone)
        return self._commit(
            uow, EventKind.MILESTONE_TRANSITION, actor_id,
            {
                "milestone_id": milestone.milestone_id,
                "posting_id": milestone.posting_id,
                "to": milestone.status.value,
            },
            now,
            [notice],
        )

    def _completion_notices(self, posting: Posting, now: datetime) -> list[Notification]:
        parties = [posting.owner_id]
        payee_id = self._payee_of(posting.posting_id)
        if payee_id is not None:
            parties.append(payee_id)
        return [
            Notification(party, "posting.completed", posting.posting_id, {}, now)
            for party in parties
        ]

    def _settlement_result(self, escrow_id: str, settlement: dict[str, Any]) -> ServiceResult:
        data = {"escrow_id": escrow_id}
        data.update(settlement)
        if settlement["settlement"] == IntentStatus.FAILED.value:
            return ServiceResult(
                success=False,
                errors=[settlement.get("settlement_error") or "settlement failed"],
                data=data,
                code="gateway_error",
            )
        return self._success(data)

    # ------------------------------------------------------------------
    # Internal: commit, audit, locking, results
    # ------------------------------------------------------------------

    def _commit(
        self,
        uow: UnitOfWork,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
        notifications: Sequence[Notification] = (),
    ) -> Optional[str]:
        """Commit a unit of work with its audit event, then notify.

        The audit append runs inside the store commit: if it fails,
        nothing is written. A failed state-file write after the commit is
        reported as a warning and marks persistence as degraded.
        """
        def audit() -> None:
            self._append_event(event_kind, actor_id, payload, now)

        warning = uow.commit(on_commit=audit)
        if warning:
            self._persistence_degraded = True
        publish_all(self._notifier, [n for n in notifications if n.recipient_id])
        return warning

    def _append_event(
        self,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> None:
        if self._event_log is None:
            return
        with self._event_lock:
            self._event_counter += 1
            event_id = f"EVT-{self._event_counter:08d}"
        try:
            self._event_log.append(EventRecord.create(event_id, event_kind, actor_id, payload, now))
        except (OSError, ValueError) as e:
            logger.error("Audit append failed for %s: %s", event_kind.value, e)
            raise ExternalError("audit_failure", f"Audit-trail failure: {e}") from e

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def _locked(self, *keys: str) -> Iterator[None]:
        """Hold the locks for ``keys``, always acquired in sorted order."""
        locks = [self._lock_for(key) for key in sorted(set(keys))]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    @staticmethod
    def _success(data: dict[str, Any], warning: Optional[str] = None) -> ServiceResult:
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _failure(error: TrustWorkError) -> ServiceResult:
        if isinstance(error, InvariantError):
            logger.error("Invariant violated (%s): %s", error.code, error.message)
        elif not isinstance(error, (NotFoundError, ConflictError)):
            logger.info("Operation refused (%s): %s", error.code, error.message)
        return ServiceResult(
            success=False,
            errors=[error.message],
            data={"kind": error.kind.value},
            code=error.code,
        )


def _posting_key(posting_id: str) -> str:
    return f"posting:{posting_id}"


def _attempt_key(applicant_id: str, posting_id: str) -> str:
    return f"attempt:{applicant_id}:{posting_id}"


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _check_version(record: Any, expected_version: Optional[int]) -> None:
    if expected_version is not None and record.version != expected_version:
        raise ConflictError(
            f"Record was modified (observed v{expected_version}, current v{record.version})"
        )


def _pick(records: list[Any], attr: str, record_id: str, entity: str) -> Any:
    for record in records:
        if getattr(record, attr) == record_id:
            return record
    raise NotFoundError(entity, record_id)


def _milestone_data(milestone: Milestone) -> dict[str, Any]:
    return {
        "milestone_id": milestone.milestone_id,
        "index": milestone.index,
        "status": milestone.status.value,
        "amount": str(milestone.amount),
        "revision_count": milestone.revision_count,
        "version": milestone.version,
    }


def _aggregate_totals(aggregate: RatingAggregate) -> tuple:
    return (
        aggregate.total_reviews,
        aggregate.overall_sum,
        dict(aggregate.dimension_sums),
        dict(aggregate.dimension_counts),
        aggregate.recommend_count,
    )


def _count_by(records: list[Any], attr: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in records:
        value = getattr(record, attr).value
        counts[value] = counts.get(value, 0) + 1
    return counts


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _no_time() -> datetime:
    """Sort key for records without a timestamp."""
    return datetime.min.replace(tzinfo=timezone.utc)
