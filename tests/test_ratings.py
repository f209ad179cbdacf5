"""Tests for reviews and rating aggregates — proves eligibility and exact sums."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from trustwork.errors import AuthorizationError, InvariantError, PreconditionError
from trustwork.models.identity import Caller, Role
from trustwork.models.posting import Posting, PostingKind, PostingStatus
from trustwork.models.review import RatingAggregate
from trustwork.policy.resolver import PolicyResolver
from trustwork.review.ratings import RatingAggregator, overall_rating, validate_ratings


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

CLIENT = Caller("emp_1", Role.EMPLOYER)
FREELANCER = Caller("js_1", Role.JOB_SEEKER)
STRANGER = Caller("js_9", Role.JOB_SEEKER)
ADMIN = Caller("admin_1", Role.ADMIN)

CLIENT_RATINGS = {"technical_skills": 5, "communication": 5, "work_quality": 5, "professionalism": 5}
FREELANCER_RATINGS = {"work_environment": 5, "management": 4, "compensation": 5, "career_growth": 4}


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def aggregator() -> RatingAggregator:
    return RatingAggregator(PolicyResolver.from_config_dir(CONFIG_DIR))


@pytest.fixture
def posting() -> Posting:
    return Posting(
        "post_1", "emp_1", PostingKind.GIG, "Shop build",
        status=PostingStatus.COMPLETED, completed_at=_now(),
    )


class TestOverall:
    def test_mean_rounded_half_up(self) -> None:
        assert overall_rating([5, 4, 5, 4]) == Decimal("4.5")
        assert overall_rating([4, 4, 5, None]) == Decimal("4.3")
        assert overall_rating([1, 2, 2, 2]) == Decimal("1.8")

    def test_unknown_dimension(self) -> None:
        with pytest.raises(PreconditionError) as exc:
            validate_ratings(Role.EMPLOYER, {"management": 4})
        assert exc.value.code == "invalid_rating"

    @pytest.mark.parametrize("value", [0, 6, 3.5, True])
    def test_value_bounds(self, value) -> None:
        with pytest.raises(PreconditionError):
            validate_ratings(Role.JOB_SEEKER, {"management": value})

    def test_all_none_refused(self) -> None:
        with pytest.raises(PreconditionError):
            validate_ratings(Role.EMPLOYER, {"communication": None})


class TestCreateReview:
    def test_both_parties_review(self, aggregator, posting) -> None:
        by_client = aggregator.create_review(
            CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, "Superb", True, now=_now(),
        )
        by_freelancer = aggregator.create_review(
            FREELANCER, posting, "js_1", [by_client], "emp_1", FREELANCER_RATINGS, now=_now(),
        )
        assert by_client.overall_rating == Decimal("5.0")
        assert by_client.author_role == Role.EMPLOYER
        assert by_freelancer.overall_rating == Decimal("4.5")
        assert by_freelancer.author_role == Role.JOB_SEEKER

    def test_unrated_dimensions_stored_as_none(self, aggregator, posting) -> None:
        review = aggregator.create_review(
            CLIENT, posting, "js_1", [], "js_1", {"communication": 4}, now=_now(),
        )
        assert review.ratings["technical_skills"] is None
        assert review.overall_rating == Decimal("4.0")

    def test_posting_must_be_completed(self, aggregator, posting) -> None:
        posting.status = PostingStatus.IN_PROGRESS
        with pytest.raises(PreconditionError) as exc:
            aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS)
        assert exc.value.code == "gig_not_completed"

    def test_outsider_refused(self, aggregator, posting) -> None:
        with pytest.raises(AuthorizationError):
            aggregator.create_review(STRANGER, posting, "js_1", [], "emp_1", FREELANCER_RATINGS)

    def test_must_review_counterparty(self, aggregator, posting) -> None:
        with pytest.raises(PreconditionError) as exc:
            aggregator.create_review(CLIENT, posting, "js_1", [], "emp_1", CLIENT_RATINGS)
        assert exc.value.code == "not_counterparty"

    def test_one_review_per_author(self, aggregator, posting) -> None:
        first = aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, now=_now())
        with pytest.raises(PreconditionError) as exc:
            aggregator.create_review(CLIENT, posting, "js_1", [first], "js_1", CLIENT_RATINGS, now=_now())
        assert exc.value.code == "duplicate_review"

    def test_window_closes(self, aggregator, posting) -> None:
        with pytest.raises(PreconditionError) as exc:
            aggregator.create_review(
                CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS,
                now=_now() + timedelta(days=31),
            )
        assert exc.value.code == "review_window_closed"

    def test_text_length(self, aggregator, posting) -> None:
        with pytest.raises(PreconditionError) as exc:
            aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, "x" * 501, now=_now())
        assert exc.value.code == "invalid_review"


class TestAggregate:
    def test_apply_and_flag(self, aggregator, posting) -> None:
        aggregate = RatingAggregate(user_id="js_1")
        review = aggregator.create_review(
            CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, would_recommend=True, now=_now(),
        )
        aggregator.apply(aggregate, review, _now())
        assert aggregate.total_reviews == 1
        assert aggregate.overall_mean == Decimal("5.0")
        assert aggregate.dimension_means()["communication"] == Decimal("5")
        assert aggregate.recommend_count == 1

        aggregator.flag(ADMIN, review, aggregate, "abusive", _now())
        assert review.is_flagged
        assert aggregate.total_reviews == 0
        assert aggregate.dimension_sums == {}
        aggregator.flag(ADMIN, review, aggregate, "abusive again", _now())
        assert review.flag_reason == "abusive"

    def test_only_admin_flags(self, aggregator, posting) -> None:
        review = aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, now=_now())
        with pytest.raises(AuthorizationError):
            aggregator.flag(FREELANCER, review, RatingAggregate("js_1"), "unfair")

    def test_wrong_subject(self, aggregator, posting) -> None:
        review = aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, now=_now())
        with pytest.raises(InvariantError):
            aggregator.apply(RatingAggregate("emp_1"), review)

    def test_recompute_matches_incremental(self, aggregator, posting) -> None:
        other = Posting(
            "post_2", "emp_2", PostingKind.GIG, "Logo",
            status=PostingStatus.COMPLETED, completed_at=_now(),
        )
        reviews = [
            aggregator.create_review(CLIENT, posting, "js_1", [], "js_1", CLIENT_RATINGS, now=_now()),
            aggregator.create_review(
                Caller("emp_2", Role.EMPLOYER), other, "js_1", [], "js_1",
                {"communication": 3, "work_quality": 4}, now=_now() + timedelta(hours=1),
            ),
        ]
        incremental = RatingAggregate("js_1")
        for review in reviews:
            aggregator.apply(incremental, review)
        rebuilt = RatingAggregator.recompute("js_1", reviews)
        assert rebuilt.total_reviews == incremental.total_reviews == 2
        assert rebuilt.overall_sum == incremental.overall_sum == Decimal("8.5")
        assert rebuilt.dimension_sums == incremental.dimension_sums
        assert rebuilt.updated_at == _now() + timedelta(hours=1)
