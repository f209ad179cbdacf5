"""Tests for postings — proves lifecycle, ownership and search rules hold."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from trustwork.errors import AuthorizationError, PreconditionError
from trustwork.market.posting_state_machine import PostingStateMachine
from trustwork.market.postings import (
    PostingManager,
    filter_postings,
    validate_plan_percentages,
)
from trustwork.models.identity import Caller, Role
from trustwork.models.posting import (
    MilestonePlanItem,
    Posting,
    PostingKind,
    PostingStatus,
    SkillTestRequirement,
)
from trustwork.policy.resolver import PolicyResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

EMPLOYER = Caller("emp_1", Role.EMPLOYER)
OTHER_EMPLOYER = Caller("emp_2", Role.EMPLOYER)
SEEKER = Caller("js_1", Role.JOB_SEEKER)
ADMIN = Caller("admin_1", Role.ADMIN)


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def manager() -> PostingManager:
    return PostingManager(PolicyResolver.from_config_dir(CONFIG_DIR))


def _gig(manager: PostingManager, **kwargs) -> Posting:
    defaults = dict(budget_min=Decimal("500"), budget_max=Decimal("1000"), now=_now())
    defaults.update(kwargs)
    return manager.create(EMPLOYER, PostingKind.GIG, "Landing page", **defaults)


class TestStateMachine:
    def test_open_to_in_progress(self) -> None:
        posting = Posting("p1", "emp_1", PostingKind.GIG, "t")
        assert PostingStateMachine.apply_transition(posting, PostingStatus.IN_PROGRESS) == []
        assert posting.status == PostingStatus.IN_PROGRESS

    def test_completed_is_terminal(self) -> None:
        posting = Posting("p1", "emp_1", PostingKind.JOB, "t", status=PostingStatus.COMPLETED)
        errors = PostingStateMachine.apply_transition(posting, PostingStatus.OPEN)
        assert errors
        assert posting.status == PostingStatus.COMPLETED

    def test_flagged_cannot_start_work(self) -> None:
        posting = Posting("p1", "emp_1", PostingKind.GIG, "t", status=PostingStatus.FLAGGED)
        assert PostingStateMachine.validate_transition(posting, PostingStatus.IN_PROGRESS)

    def test_only_open_accepts_applications(self) -> None:
        assert PostingStateMachine.accepts_applications(PostingStatus.OPEN)
        for status in (PostingStatus.FLAGGED, PostingStatus.IN_PROGRESS, PostingStatus.CANCELLED):
            assert not PostingStateMachine.accepts_applications(status)

    def test_valid_transitions_from_in_progress(self) -> None:
        assert PostingStateMachine.valid_transitions(PostingStatus.IN_PROGRESS) == {
            PostingStatus.COMPLETED, PostingStatus.CANCELLED,
        }


class TestCreate:
    def test_create_gig(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        assert posting.status == PostingStatus.OPEN
        assert posting.owner_id == "emp_1"
        assert posting.currency == "ZAR"
        assert posting.posting_id.startswith("post_")
        assert posting.history[0].to_status == "open"

    def test_job_seeker_cannot_post(self, manager: PostingManager) -> None:
        with pytest.raises(AuthorizationError) as exc:
            manager.create(SEEKER, PostingKind.JOB, "Dev")
        assert exc.value.code == "forbidden_role"

    def test_blank_title_rejected(self, manager: PostingManager) -> None:
        with pytest.raises(PreconditionError) as exc:
            manager.create(EMPLOYER, PostingKind.JOB, "   ")
        assert exc.value.code == "invalid_posting"

    def test_gig_needs_budget(self, manager: PostingManager) -> None:
        with pytest.raises(PreconditionError):
            manager.create(EMPLOYER, PostingKind.GIG, "Logo")

    def test_budget_min_above_max(self, manager: PostingManager) -> None:
        with pytest.raises(PreconditionError):
            _gig(manager, budget_min=Decimal("2000"))

    def test_budget_off_the_currency_unit(self, manager: PostingManager) -> None:
        with pytest.raises(PreconditionError) as exc:
            _gig(manager, budget_max=Decimal("1000.005"))
        assert exc.value.code == "invalid_posting"

    def test_skill_test_difficulty_validated(self, manager: PostingManager) -> None:
        with pytest.raises(PreconditionError):
            _gig(manager, skill_test=SkillTestRequirement("tmpl-web-development", "expert", 70))

    def test_plan_must_sum_to_hundred(self, manager: PostingManager) -> None:
        plan = [
            MilestonePlanItem("Design", Decimal("40")),
            MilestonePlanItem("Build", Decimal("50")),
        ]
        with pytest.raises(PreconditionError) as exc:
            _gig(manager, milestone_plan=plan)
        assert exc.value.code == "invalid_milestone_plan"


class TestUpdateAndClose:
    def test_owner_updates_title(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        later = _now() + timedelta(hours=1)
        manager.update(EMPLOYER, posting, {"title": "New title"}, now=later)
        assert posting.title == "New title"
        assert posting.updated_at == later

    def test_other_employer_cannot_update(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        with pytest.raises(AuthorizationError):
            manager.update(OTHER_EMPLOYER, posting, {"title": "x"})

    def test_status_not_editable(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        with pytest.raises(PreconditionError):
            manager.update(EMPLOYER, posting, {"status": PostingStatus.COMPLETED})

    def test_edit_closed_after_start(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        manager.mark_in_progress(posting, "emp_1", _now())
        with pytest.raises(PreconditionError) as exc:
            manager.update(EMPLOYER, posting, {"title": "x"})
        assert exc.value.code == "posting_closed"

    def test_close_cancels(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        manager.close(EMPLOYER, posting, "filled elsewhere", _now())
        assert posting.status == PostingStatus.CANCELLED
        assert posting.cancelled_at == _now()

    def test_close_twice_reports_posting_closed(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        manager.close(EMPLOYER, posting)
        with pytest.raises(PreconditionError) as exc:
            manager.close(EMPLOYER, posting)
        assert exc.value.code == "posting_closed"

    def test_complete_job_only_for_jobs(self, manager: PostingManager) -> None:
        gig = _gig(manager)
        manager.mark_in_progress(gig, "emp_1", _now())
        with pytest.raises(PreconditionError):
            manager.complete_job(EMPLOYER, gig)

        job = manager.create(EMPLOYER, PostingKind.JOB, "Backend dev", now=_now())
        manager.mark_in_progress(job, "emp_1", _now())
        manager.complete_job(EMPLOYER, job, _now())
        assert job.status == PostingStatus.COMPLETED


class TestModeration:
    def test_admin_flags_and_unflags(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        manager.flag(ADMIN, posting, "spam")
        assert posting.status == PostingStatus.FLAGGED
        assert posting.flag_reason == "spam"
        manager.unflag(ADMIN, posting)
        assert posting.status == PostingStatus.OPEN
        assert posting.flag_reason == ""

    def test_owner_cannot_flag(self, manager: PostingManager) -> None:
        posting = _gig(manager)
        with pytest.raises(AuthorizationError):
            manager.flag(EMPLOYER, posting, "spam")


class TestPlanPercentages:
    def test_valid_plan(self) -> None:
        validate_plan_percentages([Decimal("30"), Decimal("30"), Decimal("40")])

    def test_zero_percentage_rejected(self) -> None:
        with pytest.raises(PreconditionError):
            validate_plan_percentages([Decimal("0"), Decimal("100")])

    def test_empty_plan_rejected(self) -> None:
        with pytest.raises(PreconditionError):
            validate_plan_percentages([])


class TestSearch:
    def _postings(self, manager: PostingManager) -> list[Posting]:
        a = manager.create(
            EMPLOYER, PostingKind.GIG, "React app", location="Cape Town",
            required_skills=["React", "TypeScript"], budget_min=Decimal("1000"),
            budget_max=Decimal("3000"), now=_now(),
        )
        b = manager.create(
            EMPLOYER, PostingKind.JOB, "Python backend", location="Johannesburg", remote=True,
            required_skills=["python"], budget_min=Decimal("20000"), budget_max=Decimal("30000"),
            now=_now(),
        )
        c = manager.create(
            OTHER_EMPLOYER, PostingKind.GIG, "Logo", location="Durban",
            budget_min=Decimal("100"), budget_max=Decimal("300"), now=_now(),
        )
        manager.flag(ADMIN, c, "duplicate")
        return [a, b, c]

    def test_skills_case_insensitive(self, manager: PostingManager) -> None:
        found = filter_postings(self._postings(manager), skills=["react"])
        assert [p.title for p in found] == ["React app"]

    def test_flagged_hidden_by_default(self, manager: PostingManager) -> None:
        found = filter_postings(self._postings(manager))
        assert "Logo" not in [p.title for p in found]

    def test_flagged_visible_when_requested(self, manager: PostingManager) -> None:
        found = filter_postings(self._postings(manager), status=PostingStatus.FLAGGED)
        assert [p.title for p in found] == ["Logo"]

    def test_budget_overlap(self, manager: PostingManager) -> None:
        found = filter_postings(self._postings(manager), budget_min=Decimal("2500"), budget_max=Decimal("5000"))
        assert [p.title for p in found] == ["React app"]

    def test_location_and_remote(self, manager: PostingManager) -> None:
        postings = self._postings(manager)
        assert [p.title for p in filter_postings(postings, location="cape")] == ["React app"]
        assert [p.title for p in filter_postings(postings, remote=True)] == ["Python backend"]

    def test_limit(self, manager: PostingManager) -> None:
        assert len(filter_postings(self._postings(manager), limit=1)) == 1
