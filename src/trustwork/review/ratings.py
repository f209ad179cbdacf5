"""Review & rating aggregator.

Rules:
- Reviews are allowed only on a COMPLETED posting, only by its two
  parties (the owner and the accepted applicant), only about the other
  party, once per (posting, author), and within the review window after
  completion.
- The employer rates technical_skills, communication, work_quality and
  professionalism; the job seeker rates work_environment, management,
  compensation and career_growth. Ratings are integers 1..5.
- overall_rating is the mean of the non-null dimension ratings, rounded
  half-up to one decimal.
- The subject's aggregate is updated in the same unit of work as the
  insert. Flagging a review removes it from every aggregate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional
from uuid import uuid4

from trustwork.errors import AuthorizationError, InvariantError, PreconditionError
from trustwork.identity.authz import require_admin
from trustwork.models.identity import Caller, Role
from trustwork.models.posting import Posting, PostingStatus
from trustwork.models.review import (
    DIMENSIONS_BY_ROLE,
    MAX_RATING,
    MIN_RATING,
    RatingAggregate,
    Review,
)
from trustwork.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

ONE_DECIMAL = Decimal("0.1")


class RatingAggregator:
    """Creates reviews and keeps rating aggregates exact.

    Usage:
        aggregator = RatingAggregator(resolver)
        review = aggregator.create_review(caller, posting, payee_id, existing,
                                          subject_id, {"communication": 5})
        aggregator.apply(aggregate, review)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def create_review(
        self,
        caller: Caller,
        posting: Posting,
        payee_id: Optional[str],
        existing: Iterable[Review],
        subject_id: str,
        ratings: Mapping[str, Optional[int]],
        text: str = "",
        would_recommend: bool = False,
        review_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Review:
        """Validate and build a review. The caller persists it with the aggregate."""
        now = now or datetime.now(timezone.utc)
        if posting.status != PostingStatus.COMPLETED:
            raise PreconditionError(
                "gig_not_completed", f"Posting {posting.posting_id} is {posting.status.value}",
            )
        if caller.user_id == posting.owner_id:
            author_role, counterparty = Role.EMPLOYER, payee_id
        elif payee_id is not None and caller.user_id == payee_id:
            author_role, counterparty = Role.JOB_SEEKER, posting.owner_id
        else:
            raise AuthorizationError("not_owner", "Only the parties of a posting may review it")
        if subject_id != counterparty:
            raise PreconditionError("not_counterparty", "A review must be about the other party")
        for review in existing:
            if review.posting_id == posting.posting_id and review.author_id == caller.user_id:
                raise PreconditionError(
                    "duplicate_review", f"Review {review.review_id} already exists",
                )
        if posting.completed_at is not None and now - posting.completed_at > self._resolver.review_window():
            raise PreconditionError("review_window_closed", "The review window has closed")
        if len(text) > self._resolver.review_text_max_length():
            raise PreconditionError(
                "invalid_review",
                f"Review text exceeds {self._resolver.review_text_max_length()} characters",
            )

        clean = validate_ratings(author_role, ratings)
        review = Review(
            review_id=review_id or f"rev_{uuid4().hex[:12]}",
            posting_id=posting.posting_id,
            author_id=caller.user_id,
            subject_id=subject_id,
            author_role=author_role,
            ratings=clean,
            overall_rating=overall_rating(clean.values()),
            text=text,
            would_recommend=would_recommend,
            created_at=now,
        )
        logger.info(
            "Review %s by %s about %s (overall %s)",
            review.review_id, review.author_id, review.subject_id, review.overall_rating,
        )
        return review

    @staticmethod
    def apply(aggregate: RatingAggregate, review: Review, now: Optional[datetime] = None) -> RatingAggregate:
        """Add a non-flagged review to its subject's aggregate."""
        if review.subject_id != aggregate.user_id:
            raise InvariantError("aggregate_mismatch", "Review subject does not own this aggregate")
        if review.is_flagged:
            return aggregate
        aggregate.total_reviews += 1
        aggregate.overall_sum += review.overall_rating
        for name, value in review.ratings.items():
            if value is None:
                continue
            aggregate.dimension_sums[name] = aggregate.dimension_sums.get(name, 0) + value
            aggregate.dimension_counts[name] = aggregate.dimension_counts.get(name, 0) + 1
        if review.would_recommend:
            aggregate.recommend_count += 1
        aggregate.updated_at = now or datetime.now(timezone.utc)
        return aggregate

    @staticmethod
    def remove(aggregate: RatingAggregate, review: Review, now: Optional[datetime] = None) -> RatingAggregate:
        """Take a previously counted review back out of the aggregate."""
        if aggregate.total_reviews < 1:
            raise InvariantError("aggregate_underflow", "Aggregate has no reviews to remove")
        aggregate.total_reviews -= 1
        aggregate.overall_sum -= review.overall_rating
        for name, value in review.ratings.items():
            if value is None:
                continue
            aggregate.dimension_sums[name] -= value
            aggregate.dimension_counts[name] -= 1
            if aggregate.dimension_counts[name] == 0:
                del aggregate.dimension_sums[name]
                del aggregate.dimension_counts[name]
        if review.would_recommend:
            aggregate.recommend_count -= 1
        aggregate.updated_at = now or datetime.now(timezone.utc)
        return aggregate

    def flag(
        self,
        caller: Caller,
        review: Review,
        aggregate: RatingAggregate,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Review:
        """Admin moderation. Flagging is one-way and idempotent."""
        require_admin(caller)
        if review.is_flagged:
            return review
        now = now or datetime.now(timezone.utc)
        review.is_flagged = True
        review.flag_reason = reason
        review.flagged_by = caller.user_id
        review.flagged_at = now
        self.remove(aggregate, review, now)
        logger.info("Review %s flagged by %s: %s", review.review_id, caller.user_id, reason)
        return review

    @classmethod
    def recompute(cls, user_id: str, reviews: Iterable[Review]) -> RatingAggregate:
        """Rebuild an aggregate from primary review records."""
        aggregate = RatingAggregate(user_id=user_id)
        latest: Optional[datetime] = None
        for review in reviews:
            if review.subject_id != user_id or review.is_flagged:
                continue
            cls.apply(aggregate, review, review.created_at)
            if review.created_at is not None and (latest is None or review.created_at > latest):
                latest = review.created_at
        aggregate.updated_at = latest
        return aggregate


def validate_ratings(role: Role, ratings: Mapping[str, Optional[int]]) -> dict[str, Optional[int]]:
    """Check dimension names and values for the author's role."""
    dimensions = DIMENSIONS_BY_ROLE[role]
    unknown = set(ratings) - set(dimensions)
    if unknown:
        raise PreconditionError(
            "invalid_rating",
            f"Dimensions not rated by {role.value}: {', '.join(sorted(unknown))}",
        )
    clean: dict[str, Optional[int]] = {}
    for name in dimensions:
        value = ratings.get(name)
        if value is not None:
            if isinstance(value, bool) or not isinstance(value, int) or not MIN_RATING <= value <= MAX_RATING:
                raise PreconditionError(
                    "invalid_rating", f"{name} must be an integer {MIN_RATING}..{MAX_RATING}",
                )
        clean[name] = value
    if all(v is None for v in clean.values()):
        raise PreconditionError("invalid_rating", "At least one dimension must be rated")
    return clean


def overall_rating(values: Iterable[Optional[int]]) -> Decimal:
    rated = [Decimal(v) for v in values if v is not None]
    mean = sum(rated, Decimal("0")) / Decimal(len(rated))
    return mean.quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)
