"""Review models — bilateral ratings and per-user aggregates.

Each author role writes its own dimension set. The review is a tagged
variant on ``author_role``; the aggregator treats dimensions by name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from trustwork.models.identity import Role


EMPLOYER_REVIEW_DIMENSIONS = (
    "technical_skills",
    "communication",
    "work_quality",
    "professionalism",
)

JOB_SEEKER_REVIEW_DIMENSIONS = (
    "work_environment",
    "management",
    "compensation",
    "career_growth",
)

DIMENSIONS_BY_ROLE: dict[Role, tuple[str, ...]] = {
    Role.EMPLOYER: EMPLOYER_REVIEW_DIMENSIONS,
    Role.JOB_SEEKER: JOB_SEEKER_REVIEW_DIMENSIONS,
}

MIN_RATING = 1
MAX_RATING = 5


@dataclass
class Review:
    """A review written by one party of a completed gig about the other.

    Immutable after creation except for the moderation fields.
    """
    review_id: str
    posting_id: str
    author_id: str
    subject_id: str
    author_role: Role
    ratings: dict[str, Optional[int]]
    overall_rating: Decimal
    text: str = ""
    would_recommend: bool = False
    created_at: Optional[datetime] = None
    is_flagged: bool = False
    flag_reason: str = ""
    flagged_by: Optional[str] = None
    flagged_at: Optional[datetime] = None
    version: int = 0


@dataclass
class RatingAggregate:
    """Rolling summary of the non-flagged reviews of one user.

    Sums are kept exactly so that every mean is recomputable without
    drift; the means are derived properties.
    """
    user_id: str
    total_reviews: int = 0
    overall_sum: Decimal = Decimal("0")
    dimension_sums: dict[str, int] = field(default_factory=dict)
    dimension_counts: dict[str, int] = field(default_factory=dict)
    recommend_count: int = 0
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def overall_mean(self) -> Decimal:
        if self.total_reviews == 0:
            return Decimal("0")
        return self.overall_sum / Decimal(self.total_reviews)

    def dimension_means(self) -> dict[str, Decimal]:
        return {
            name: Decimal(total) / Decimal(self.dimension_counts[name])
            for name, total in sorted(self.dimension_sums.items())
            if self.dimension_counts.get(name)
        }
