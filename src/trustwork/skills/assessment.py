"""Skill test engine — eligibility, timed attempts, anti-cheat and grading.

Rules:
- One IN_PROGRESS attempt per (applicant, posting) at a time.
- After a failed terminal attempt the applicant waits out the cooldown
  (default 7 days) measured from the attempt's completed_at. A passed
  last attempt never blocks.
- Questions are snapshotted into the attempt at start.
- Grading is against the snapshot: score is the rounded percentage of
  correct answers; unanswered questions count as wrong.
- tab_switches at or above the threshold, or time over the limit, seals
  the attempt as FAILED_CHEAT with passed=False regardless of score.
  Timeouts are logged separately from tab-switch cheating.
- Attempts never submitted are finalised as ABANDONED once the deadline
  plus the grace window has passed.

The engine is pure: it mutates the attempt objects handed to it and the
caller persists them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional
from uuid import uuid4

from trustwork.errors import AuthorizationError, InvariantError, PreconditionError
from trustwork.identity.authz import can_view_attempt, require_role, require_self
from trustwork.models.history import record_change
from trustwork.models.identity import Caller, Role, SYSTEM_ACTOR
from trustwork.models.posting import Posting
from trustwork.models.skill_test import (
    ANSWER_OPTIONS,
    Answer,
    AttemptStatus,
    CheatReason,
    Difficulty,
    SkillTestAttempt,
)
from trustwork.policy.resolver import PolicyResolver
from trustwork.skills.question_bank import QuestionBank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptEligibility:
    """Outcome of ``can_attempt``."""
    allowed: bool
    reason: Optional[str] = None
    last_attempt: Optional[SkillTestAttempt] = None
    next_attempt_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubmitResult:
    """Grading summary returned to the applicant."""
    attempt_id: str
    status: AttemptStatus
    score: int
    passed: bool
    correct: int
    total: int
    cheat_reason: Optional[CheatReason] = None


@dataclass(frozen=True)
class ReviewItem:
    question_id: str
    text: str
    options: dict[str, str]
    selected: Optional[str]
    correct_answer: str
    is_correct: bool
    explanation: str = ""


@dataclass(frozen=True)
class AttemptReview:
    """Post-hoc view of a sealed attempt."""
    attempt_id: str
    status: AttemptStatus
    score: int
    passed: bool
    items: list[ReviewItem] = field(default_factory=list)


class SkillTestEngine:
    """Runs skill test attempts against a question bank.

    Usage:
        engine = SkillTestEngine(resolver, bank)
        eligibility = engine.can_attempt(posting, attempts, now=now)
        attempt = engine.start_attempt(caller, posting, attempts, now=now)
        result = engine.submit_attempt(caller, attempt, answers, 900, 0, now=now)
    """

    def __init__(self, resolver: PolicyResolver, bank: QuestionBank) -> None:
        self._resolver = resolver
        self._bank = bank

    @property
    def bank(self) -> QuestionBank:
        return self._bank

    def can_attempt(
        self,
        posting: Optional[Posting],
        attempts: Iterable[SkillTestAttempt],
        now: Optional[datetime] = None,
    ) -> AttemptEligibility:
        """Decide whether the applicant may start a new attempt.

        ``attempts`` are this applicant's attempts for this posting.
        Stale IN_PROGRESS attempts should be expired first; an attempt
        still IN_PROGRESS here blocks a new start.
        """
        if posting is None:
            return AttemptEligibility(allowed=False, reason="missing_posting")
        if posting.skill_test is None:
            return AttemptEligibility(allowed=False, reason="not_required")
        now = now or datetime.now(timezone.utc)

        history = list(attempts)
        active = [a for a in history if a.status == AttemptStatus.IN_PROGRESS]
        if active:
            return AttemptEligibility(
                allowed=False, reason="in_progress", last_attempt=active[0],
            )

        terminal = [a for a in history if a.is_terminal and a.completed_at is not None]
        if not terminal:
            return AttemptEligibility(allowed=True)
        last = max(terminal, key=lambda a: a.completed_at)
        if last.passed:
            return AttemptEligibility(allowed=True, last_attempt=last)

        available_at = last.completed_at + self._resolver.attempt_cooldown()
        if now > available_at:
            return AttemptEligibility(allowed=True, last_attempt=last)
        return AttemptEligibility(
            allowed=False,
            reason="cooldown",
            last_attempt=last,
            next_attempt_at=available_at,
        )

    def start_attempt(
        self,
        caller: Caller,
        posting: Optional[Posting],
        attempts: Iterable[SkillTestAttempt],
        difficulty: Optional[Difficulty] = None,
        attempt_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SkillTestAttempt:
        """Start a timed attempt with a snapshotted question set."""
        require_role(caller, Role.JOB_SEEKER)
        now = now or datetime.now(timezone.utc)
        eligibility = self.can_attempt(posting, attempts, now=now)
        if not eligibility.allowed:
            message = f"Cannot start attempt: {eligibility.reason}"
            if eligibility.next_attempt_at is not None:
                message += f" (next attempt after {eligibility.next_attempt_at.isoformat()})"
            raise PreconditionError(eligibility.reason or "invalid_transition", message)
        if posting is None or posting.skill_test is None:
            raise InvariantError("missing_skill_test", "Eligible attempt without a skill-test posting")
        if posting.owner_id == caller.user_id:
            raise AuthorizationError("forbidden_role", "Owners cannot take their own test")

        requirement = posting.skill_test
        required = Difficulty(requirement.difficulty)
        if difficulty is not None and Difficulty(difficulty) != required:
            raise PreconditionError(
                "difficulty_mismatch",
                f"Posting requires a {required.value} test, not {Difficulty(difficulty).value}",
            )

        attempt_id = attempt_id or f"att_{uuid4().hex[:12]}"
        questions = self._bank.draw(
            requirement.template_id,
            required,
            self._resolver.question_count(required.value),
            attempt_id,
        )
        limit = self._resolver.time_limit_seconds(required.value)
        attempt = SkillTestAttempt(
            attempt_id=attempt_id,
            applicant_id=caller.user_id,
            posting_id=posting.posting_id,
            template_id=requirement.template_id,
            difficulty=required,
            passing_score=requirement.passing_score,
            time_limit_seconds=limit,
            questions=questions,
            started_at=now,
            deadline_at=now + timedelta(seconds=limit),
        )
        record_change(attempt.history, None, attempt.status.value, caller.user_id, now, "started")
        logger.info(
            "Attempt %s started by %s on %s (%s, %d questions)",
            attempt_id, caller.user_id, posting.posting_id, required.value, len(questions),
        )
        return attempt

    def submit_attempt(
        self,
        caller: Caller,
        attempt: SkillTestAttempt,
        answers: Mapping[str, Optional[str]],
        time_taken_seconds: int,
        tab_switches: int,
        now: Optional[datetime] = None,
    ) -> SubmitResult:
        """Grade and seal an attempt.

        Args:
            answers: question_id → selected option (A-D); missing or None
                entries count as unanswered.
            time_taken_seconds: Client-reported elapsed time.
            tab_switches: Client-reported count of focus losses.
        """
        require_self(caller, attempt.applicant_id)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise PreconditionError(
                "attempt_closed", f"Attempt {attempt.attempt_id} is {attempt.status.value}",
            )
        if time_taken_seconds < 0 or tab_switches < 0:
            raise PreconditionError("invalid_submission", "Time and tab switches must be non-negative")
        now = now or datetime.now(timezone.utc)

        graded: list[Answer] = []
        for question in attempt.questions:
            selected = answers.get(question.question_id)
            if selected is not None:
                selected = selected.strip().upper()
                if selected not in ANSWER_OPTIONS:
                    raise PreconditionError(
                        "invalid_submission",
                        f"Answer for {question.question_id} must be one of A-D",
                    )
            graded.append(Answer(
                question_id=question.question_id,
                selected=selected,
                is_correct=selected == question.correct_answer,
            ))

        correct = sum(1 for a in graded if a.is_correct)
        total = len(attempt.questions)
        score = _percentage(correct, total)

        attempt.answers = graded
        attempt.correct_count = correct
        attempt.score = score
        attempt.tab_switches = tab_switches
        attempt.time_taken_seconds = time_taken_seconds
        attempt.completed_at = now

        cheat_reason = self._detect_cheat(attempt, time_taken_seconds, tab_switches, now)
        previous = attempt.status
        if cheat_reason is not None:
            attempt.status = AttemptStatus.FAILED_CHEAT
            attempt.passed = False
            attempt.cheat_reason = cheat_reason
        else:
            attempt.status = AttemptStatus.COMPLETED
            attempt.passed = score >= attempt.passing_score
        record_change(
            attempt.history, previous.value, attempt.status.value, caller.user_id, now,
            cheat_reason.value if cheat_reason else f"score {score}",
        )
        logger.info(
            "Attempt %s sealed as %s (score %d, passed %s)",
            attempt.attempt_id, attempt.status.value, score, attempt.passed,
        )
        return SubmitResult(
            attempt_id=attempt.attempt_id,
            status=attempt.status,
            score=score,
            passed=attempt.passed,
            correct=correct,
            total=total,
            cheat_reason=cheat_reason,
        )

    def expire_stale_attempts(
        self,
        attempts: Iterable[SkillTestAttempt],
        now: Optional[datetime] = None,
    ) -> list[SkillTestAttempt]:
        """Finalise IN_PROGRESS attempts whose deadline and grace have passed."""
        now = now or datetime.now(timezone.utc)
        grace = self._resolver.submit_grace()
        expired: list[SkillTestAttempt] = []
        for attempt in attempts:
            if attempt.status != AttemptStatus.IN_PROGRESS or attempt.deadline_at is None:
                continue
            if now <= attempt.deadline_at + grace:
                continue
            attempt.status = AttemptStatus.ABANDONED
            attempt.passed = False
            attempt.completed_at = attempt.deadline_at
            record_change(
                attempt.history, AttemptStatus.IN_PROGRESS.value, attempt.status.value,
                SYSTEM_ACTOR, now, "deadline passed without submit",
            )
            logger.info("Attempt %s abandoned after deadline", attempt.attempt_id)
            expired.append(attempt)
        return expired

    def get_review(
        self,
        caller: Caller,
        attempt: SkillTestAttempt,
        posting_owner_id: str,
    ) -> AttemptReview:
        """Question-by-question review of a sealed attempt."""
        if not can_view_attempt(caller, attempt.applicant_id, posting_owner_id):
            raise AuthorizationError("not_owner", "Attempt is not visible to this caller")
        if attempt.status == AttemptStatus.IN_PROGRESS:
            raise PreconditionError("in_progress", "Attempt has not been submitted")

        selected = {a.question_id: a for a in attempt.answers}
        items = []
        for question in attempt.questions:
            answer = selected.get(question.question_id)
            items.append(ReviewItem(
                question_id=question.question_id,
                text=question.text,
                options=dict(question.options),
                selected=answer.selected if answer else None,
                correct_answer=question.correct_answer,
                is_correct=bool(answer and answer.is_correct),
                explanation=question.explanation,
            ))
        return AttemptReview(
            attempt_id=attempt.attempt_id,
            status=attempt.status,
            score=attempt.score,
            passed=attempt.passed,
            items=items,
        )

    @staticmethod
    def visible_attempts(
        caller: Caller,
        posting: Posting,
        attempts: Iterable[SkillTestAttempt],
    ) -> list[SkillTestAttempt]:
        """Attempts on a posting visible to the caller, oldest first.

        The posting owner and admins see every attempt; an applicant sees
        only their own.
        """
        visible = [
            a for a in attempts
            if a.posting_id == posting.posting_id
            and can_view_attempt(caller, a.applicant_id, posting.owner_id)
        ]
        return sorted(visible, key=lambda a: (a.started_at or datetime.min.replace(tzinfo=timezone.utc)))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _detect_cheat(
        self,
        attempt: SkillTestAttempt,
        time_taken_seconds: int,
        tab_switches: int,
        now: datetime,
    ) -> Optional[CheatReason]:
        if tab_switches >= self._resolver.cheat_tab_switch_threshold():
            logger.warning(
                "Attempt %s failed for cheating: %d tab switches",
                attempt.attempt_id, tab_switches,
            )
            return CheatReason.TAB_SWITCHES

        over_reported = time_taken_seconds > attempt.time_limit_seconds
        over_server = (
            attempt.deadline_at is not None
            and now > attempt.deadline_at + self._resolver.submit_grace()
        )
        if over_reported or over_server:
            logger.warning(
                "Attempt %s timed out: reported %ds, limit %ds, server deadline exceeded: %s",
                attempt.attempt_id, time_taken_seconds, attempt.time_limit_seconds, over_server,
            )
            return CheatReason.TIME_LIMIT_EXCEEDED
        return None


def _percentage(correct: int, total: int) -> int:
    if total == 0:
        return 0
    value = Decimal(correct) * Decimal(100) / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
