"""Executable checks of the core's quantified invariants.

Each check takes primary records and returns a list of violations
(empty = OK). ``check_all`` runs every check; the service and the CLI
use it after loading the store.
"""

from __future__ import annotations

from collections import Counter
from decimal import Decimal
from typing import Iterable

from trustwork.models.application import Application, ApplicationStatus
from trustwork.models.escrow import EscrowPayment, EscrowState, SETTLED_STATES
from trustwork.models.milestone import Milestone
from trustwork.models.posting import Posting, PostingStatus
from trustwork.models.review import RatingAggregate, Review
from trustwork.models.skill_test import AttemptStatus, SkillTestAttempt

ZERO = Decimal("0")


def single_accepted_application(applications: Iterable[Application]) -> list[str]:
    counts = Counter(
        a.posting_id for a in applications if a.status == ApplicationStatus.ACCEPTED
    )
    return [
        f"posting {pid}: {n} accepted applications"
        for pid, n in sorted(counts.items()) if n > 1
    ]


def milestone_partitions(
    postings: Iterable[Posting], milestones: Iterable[Milestone],
) -> list[str]:
    by_posting: dict[str, list[Milestone]] = {}
    for m in milestones:
        by_posting.setdefault(m.posting_id, []).append(m)
    errors = []
    totals = {p.posting_id: p.agreed_total for p in postings}
    for pid, items in sorted(by_posting.items()):
        pct = sum((m.percentage for m in items), ZERO)
        amount = sum((m.amount for m in items), ZERO)
        if pct != Decimal("100"):
            errors.append(f"gig {pid}: milestone percentages sum to {pct}")
        total = totals.get(pid)
        if total is None:
            errors.append(f"gig {pid}: milestones without an agreed total")
        elif amount != total:
            errors.append(f"gig {pid}: milestone amounts {amount} != total {total}")
        indexes = sorted(m.index for m in items)
        if indexes != list(range(1, len(items) + 1)):
            errors.append(f"gig {pid}: milestone indexes {indexes} are not 1..{len(items)}")
    return errors


def escrow_conservation(escrows: Iterable[EscrowPayment]) -> list[str]:
    errors = []
    for e in escrows:
        if e.fee + e.net != e.gross:
            errors.append(f"escrow {e.escrow_id}: fee {e.fee} + net {e.net} != gross {e.gross}")
        moved = e.moved_total()
        if e.state in SETTLED_STATES and moved != e.gross:
            errors.append(f"escrow {e.escrow_id}: movements {moved} != gross {e.gross}")
        if e.state not in SETTLED_STATES and e.movements:
            errors.append(f"escrow {e.escrow_id}: {e.state.value} escrow has movements")
        if e.state == EscrowState.VOID and e.pending_intent is not None:
            errors.append(f"escrow {e.escrow_id}: void escrow has a pending intent")
    return errors


def completed_attempts_answered(attempts: Iterable[SkillTestAttempt]) -> list[str]:
    return [
        f"attempt {a.attempt_id}: {len(a.answers)} answers for {len(a.questions)} questions"
        for a in attempts
        if a.status == AttemptStatus.COMPLETED and len(a.answers) != len(a.questions)
    ]


def single_active_attempt(attempts: Iterable[SkillTestAttempt]) -> list[str]:
    counts = Counter(
        (a.applicant_id, a.posting_id)
        for a in attempts if a.status == AttemptStatus.IN_PROGRESS
    )
    return [
        f"applicant {applicant} on {posting}: {n} attempts in progress"
        for (applicant, posting), n in sorted(counts.items()) if n > 1
    ]


def reviews_gated(postings: Iterable[Posting], reviews: Iterable[Review]) -> list[str]:
    by_id = {p.posting_id: p for p in postings}
    reviews = list(reviews)
    errors = []
    seen = Counter((r.posting_id, r.author_id) for r in reviews)
    for (pid, author), n in sorted(seen.items()):
        if n > 1:
            errors.append(f"posting {pid}: {n} reviews by {author}")
    for r in reviews:
        posting = by_id.get(r.posting_id)
        if posting is None or posting.status != PostingStatus.COMPLETED:
            errors.append(f"review {r.review_id}: posting {r.posting_id} is not completed")
        elif (
            posting.completed_at is not None
            and r.created_at is not None
            and r.created_at < posting.completed_at
        ):
            errors.append(f"review {r.review_id}: written before the posting completed")
    return errors


def aggregates_exact(
    aggregates: Iterable[RatingAggregate], reviews: Iterable[Review],
) -> list[str]:
    reviews = list(reviews)
    errors = []
    for agg in aggregates:
        counted = [r for r in reviews if r.subject_id == agg.user_id and not r.is_flagged]
        expected = (
            sum((r.overall_rating for r in counted), ZERO) / Decimal(len(counted))
            if counted else ZERO
        )
        if agg.total_reviews != len(counted):
            errors.append(f"aggregate {agg.user_id}: {agg.total_reviews} reviews, expected {len(counted)}")
        if agg.overall_mean != expected:
            errors.append(f"aggregate {agg.user_id}: mean {agg.overall_mean} != {expected}")
        recommends = sum(1 for r in counted if r.would_recommend)
        if agg.recommend_count != recommends:
            errors.append(f"aggregate {agg.user_id}: recommend_count {agg.recommend_count} != {recommends}")
    return errors


def check_all(
    postings: list[Posting],
    applications: list[Application],
    attempts: list[SkillTestAttempt],
    milestones: list[Milestone],
    escrows: list[EscrowPayment],
    reviews: list[Review],
    aggregates: list[RatingAggregate],
) -> list[str]:
    return (
        single_accepted_application(applications)
        + milestone_partitions(postings, milestones)
        + escrow_conservation(escrows)
        + completed_attempts_answered(attempts)
        + single_active_attempt(attempts)
        + reviews_gated(postings, reviews)
        + aggregates_exact(aggregates, reviews)
    )
