"""End-to-end lifecycle tests for the service layer.

These drive a gig from posting through skill test, hire, funding,
delivery, settlement and reviews, with the sandbox gateway standing in
for the payment processor and signed webhooks for its callbacks.
"""

import threading

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from trustwork.compensation.gateway import (
    EVENT_PAYMENT,
    EVENT_PAYOUT,
    STATUS_COMPLETED,
    STATUS_HELD,
    SandboxGateway,
    build_signed_payload,
)
from trustwork.errors import InvariantError
from trustwork.models.dispute import DisputeReason, Verdict, VerdictKind
from trustwork.models.identity import Caller, Role
from trustwork.models.milestone import Deliverable
from trustwork.models.posting import MilestonePlanItem, PostingKind, SkillTestRequirement
from trustwork.persistence.event_log import EventKind, EventLog
from trustwork.policy.resolver import PolicyResolver
from trustwork.service import TrustWorkService
from trustwork.workflow.notifications import InMemoryNotifier


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
SECRET = "whsec_test"
TEMPLATE = "tmpl-web-development"

EMPLOYER = Caller("emp_1", Role.EMPLOYER)
SEEKER = Caller("js_1", Role.JOB_SEEKER)
SEEKER_2 = Caller("js_2", Role.JOB_SEEKER)
ADMIN = Caller("admin_1", Role.ADMIN)

CLIENT_RATINGS = {"technical_skills": 5, "communication": 5, "work_quality": 5, "professionalism": 5}
FREELANCER_RATINGS = {"work_environment": 5, "management": 4, "compensation": 5, "career_growth": 4}


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch) -> None:
    monkeypatch.setenv("TRUSTWORK_WEBHOOK_SECRET", SECRET)


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def gateway() -> SandboxGateway:
    return SandboxGateway()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def service(resolver, gateway, notifier) -> TrustWorkService:
    return TrustWorkService(
        resolver, gateway=gateway, event_log=EventLog(), notifier=notifier, sleep=lambda s: None,
    )


@pytest.fixture
def answer_key(resolver: PolicyResolver) -> dict[str, str]:
    return {
        q["question_id"]: q["correct_answer"]
        for template in resolver.skill_test_templates_data()["templates"]
        for q in template["questions"]
    }


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _gig(service: TrustWorkService, skill_test=None, plan=None) -> str:
    result = service.create_posting(
        EMPLOYER, PostingKind.GIG, "Storefront build",
        description="Build a small storefront",
        required_skills=["python", "react"],
        budget_min=Decimal("500"), budget_max=Decimal("1000"),
        skill_test=skill_test, milestone_plan=plan, now=_now(),
    )
    assert result.success, result.errors
    return result.data["posting_id"]


def _hire(service: TrustWorkService, posting_id: str, seeker: Caller = SEEKER) -> list[str]:
    applied = service.apply(seeker, posting_id, proposed_rate=Decimal("1000"), now=_now())
    assert applied.success, applied.errors
    app_id = applied.data["application_id"]
    assert service.shortlist_application(EMPLOYER, app_id, now=_now()).success
    accepted = service.accept_application(EMPLOYER, app_id, now=_now())
    assert accepted.success, accepted.errors
    return accepted.data["milestone_ids"]


def _fund(service: TrustWorkService, milestone_id: str) -> str:
    funded = service.fund_milestone(EMPLOYER, milestone_id, now=_now())
    assert funded.success, funded.errors
    payload = build_signed_payload(EVENT_PAYMENT, funded.data["external_ref"], STATUS_HELD, SECRET)
    held = service.handle_webhook(payload, now=_now())
    assert held.success, held.errors
    assert held.data["state"] == "held"
    return funded.data["escrow_id"]


def _deliver(service: TrustWorkService, milestone_id: str) -> None:
    result = service.submit_milestone(
        SEEKER, milestone_id, Deliverable(files=("site.zip",), notes="done"), now=_now(),
    )
    assert result.success, result.errors


def _answers(questions: list[dict], key: dict[str, str], correct: int) -> dict[str, str]:
    answers = {}
    for i, question in enumerate(questions):
        right = key[question["question_id"]]
        if i < correct:
            answers[question["question_id"]] = right
        else:
            answers[question["question_id"]] = next(o for o in ("A", "B", "C", "D") if o != right)
    return answers


def _milestone(service: TrustWorkService, posting_id: str, milestone_id: str):
    return next(m for m in service.list_milestones(posting_id) if m.milestone_id == milestone_id)


# ------------------------------------------------------------------
# Happy path
# ------------------------------------------------------------------

class TestHappyPath:
    """Prove a tested gig runs from posting to mutual reviews."""

    def test_full_gig(self, service, gateway, notifier, answer_key) -> None:
        posting_id = _gig(service, skill_test=SkillTestRequirement(TEMPLATE, "mid", 70))

        started = service.start_attempt(SEEKER, posting_id, now=_now())
        assert started.success, started.errors
        questions = started.data["questions"]
        assert len(questions) == 10
        assert all("correct_answer" not in q for q in questions)

        submitted = service.submit_attempt(
            SEEKER, started.data["attempt_id"], _answers(questions, answer_key, 8),
            time_taken_seconds=900, now=_now() + timedelta(minutes=15),
        )
        assert submitted.data["score"] == 80
        assert submitted.data["passed"] is True

        milestone_ids = _hire(service, posting_id)
        assert len(milestone_ids) == 1
        assert service.get_posting(posting_id).status.value == "in_progress"

        funded = service.fund_milestone(EMPLOYER, milestone_ids[0], now=_now())
        assert Decimal(funded.data["gross"]) == Decimal("1000")
        assert Decimal(funded.data["fee"]) == Decimal("100")
        assert Decimal(funded.data["net"]) == Decimal("900")
        held = service.handle_webhook(
            build_signed_payload(EVENT_PAYMENT, funded.data["external_ref"], STATUS_HELD, SECRET),
            now=_now(),
        )
        assert held.data["state"] == "held"

        _deliver(service, milestone_ids[0])
        approved = service.approve_milestone(EMPLOYER, milestone_ids[0], notes="great", now=_now())
        assert approved.success, approved.errors
        assert approved.data["settlement"] == "completed"
        assert approved.data["escrow_state"] == "released"
        assert approved.data["status"] == "paid"
        assert service.get_posting(posting_id).status.value == "completed"
        assert Decimal("900") in [p["amount"] for p in gateway.payouts]

        by_client = service.create_review(
            EMPLOYER, posting_id, "js_1", CLIENT_RATINGS, "Superb", True, now=_now(),
        )
        by_freelancer = service.create_review(
            SEEKER, posting_id, "emp_1", FREELANCER_RATINGS, now=_now(),
        )
        assert by_client.data["overall_rating"] == "5.0"
        assert by_freelancer.data["overall_rating"] == "4.5"
        aggregate = service.get_rating_aggregate("js_1")
        assert aggregate.data["total_reviews"] == 1
        assert aggregate.data["overall_mean"] == "5.00"
        assert aggregate.data["recommend_count"] == 1

        assert "escrow.released" in notifier.topics()
        assert service.check_invariants().success

    def test_status_counts(self, service) -> None:
        posting_id = _gig(service)
        milestone_ids = _hire(service, posting_id)
        _fund(service, milestone_ids[0])
        status = service.status()
        assert status["postings"]["total"] == 1
        assert status["postings"]["by_status"] == {"in_progress": 1}
        assert status["applications"] == {"accepted": 1}
        assert status["milestones"] == {"pending": 1}
        assert status["escrow"] == {"held": 1}
        assert status["events"] > 0
        assert status["persistence_degraded"] is False


# ------------------------------------------------------------------
# Skill test gating
# ------------------------------------------------------------------

class TestSkillTestGate:
    """Prove failed tests block applying and start the cooldown."""

    def test_failed_test_blocks_apply(self, service, answer_key) -> None:
        posting_id = _gig(service, skill_test=SkillTestRequirement(TEMPLATE, "mid", 70))
        started = service.start_attempt(SEEKER, posting_id, now=_now())
        failed = service.submit_attempt(
            SEEKER, started.data["attempt_id"], _answers(started.data["questions"], answer_key, 5),
            time_taken_seconds=600, now=_now() + timedelta(minutes=10),
        )
        assert failed.data["score"] == 50
        assert failed.data["passed"] is False

        refused = service.apply(SEEKER, posting_id, now=_now() + timedelta(minutes=11))
        assert not refused.success
        assert refused.code == "requires_test_not_passed"

        blocked = service.can_attempt(SEEKER, posting_id, now=_now() + timedelta(days=1))
        assert blocked.data["allowed"] is False
        assert blocked.data["reason"] == "cooldown"
        retry = service.start_attempt(SEEKER, posting_id, now=_now() + timedelta(days=1))
        assert retry.code == "cooldown"

        later = _now() + timedelta(days=8)
        assert service.can_attempt(SEEKER, posting_id, now=later).data["allowed"] is True
        assert service.start_attempt(SEEKER, posting_id, now=later).success

    def test_tab_switching_fails_the_attempt(self, service, answer_key) -> None:
        posting_id = _gig(service, skill_test=SkillTestRequirement(TEMPLATE, "mid", 70))
        started = service.start_attempt(SEEKER, posting_id, now=_now())
        result = service.submit_attempt(
            SEEKER, started.data["attempt_id"], _answers(started.data["questions"], answer_key, 10),
            time_taken_seconds=600, tab_switches=2, now=_now() + timedelta(minutes=10),
        )
        assert result.success
        assert result.data["status"] == "failed_cheat"
        assert result.data["passed"] is False
        assert result.data["score"] == 100
        assert result.data["cheat_reason"] == "tab_switches"
        assert service.apply(SEEKER, posting_id, now=_now()).code == "requires_test_not_passed"


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------

class TestConcurrentAccept:
    """Prove only one of two racing hires can win."""

    def test_one_accept_wins(self, service) -> None:
        posting_id = _gig(service)
        app_ids = []
        for seeker in (SEEKER, SEEKER_2):
            app_id = service.apply(seeker, posting_id, proposed_rate=Decimal("800"), now=_now()).data["application_id"]
            assert service.shortlist_application(EMPLOYER, app_id, now=_now()).success
            app_ids.append(app_id)

        barrier = threading.Barrier(2)
        results = {}

        def accept(app_id: str) -> None:
            barrier.wait()
            results[app_id] = service.accept_application(EMPLOYER, app_id, now=_now())

        threads = [threading.Thread(target=accept, args=(a,)) for a in app_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [r for r in results.values() if r.success]
        losers = [r for r in results.values() if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].code in {"invalid_transition", "conflict", "posting_closed"}

        listed = service.list_applications(EMPLOYER, posting_id).data["applications"]
        assert sorted(a["status"] for a in listed) == ["accepted", "rejected"]
        assert len(service.list_milestones(posting_id)) == 1
        assert service.check_invariants().success


# ------------------------------------------------------------------
# Disputes
# ------------------------------------------------------------------

class TestDisputedMilestone:
    """Prove a split verdict settles the escrow and finishes the gig."""

    def test_split_on_second_milestone(self, service, gateway) -> None:
        plan = [
            MilestonePlanItem("Design", Decimal("50")),
            MilestonePlanItem("Build", Decimal("50")),
        ]
        first, second = _hire(service, _gig(service, plan=plan))
        posting_id = service.get_escrow(_fund(service, first)).posting_id

        _deliver(service, first)
        approved = service.approve_milestone(EMPLOYER, first, now=_now())
        assert approved.data["settlement"] == "completed"

        escrow_id = _fund(service, second)
        opened = service.open_dispute(
            EMPLOYER, second, DisputeReason.QUALITY_ISSUE, title="Half finished", now=_now(),
        )
        assert opened.success, opened.errors
        assert opened.data["escrow_state"] == "disputed"
        dispute_id = opened.data["dispute_id"]

        # Frozen escrow cannot be refunded outside the dispute
        assert not service.refund_escrow(SEEKER, escrow_id, now=_now()).success

        responded = service.respond_to_dispute(SEEKER, dispute_id, "Delivered half", now=_now())
        assert responded.data["status"] == "under_review"

        resolved = service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal("200")), "half done", now=_now(),
        )
        assert resolved.success, resolved.errors
        assert resolved.data["settlement"] == "completed"
        assert resolved.data["escrow_state"] == "split"

        amounts = [p["amount"] for p in gateway.payouts]
        assert Decimal("180") in amounts
        assert Decimal("300") in amounts
        assert _milestone(service, posting_id, second).status.value == "paid"
        assert service.get_posting(posting_id).status.value == "completed"
        assert service.check_invariants().success

    def test_party_cannot_resolve(self, service) -> None:
        (milestone_id,) = _hire(service, _gig(service))
        _fund(service, milestone_id)
        dispute_id = service.open_dispute(
            SEEKER, milestone_id, DisputeReason.PAYMENT_ISSUE, now=_now(),
        ).data["dispute_id"]
        result = service.resolve_dispute(
            EMPLOYER, dispute_id, Verdict(VerdictKind.REFUND_TO_PAYER), now=_now() + timedelta(days=8),
        )
        assert not result.success
        assert result.data["kind"] == "authorization"


# ------------------------------------------------------------------
# Webhooks and payouts
# ------------------------------------------------------------------

class TestWebhooks:
    """Prove webhooks apply once and bad signatures change nothing."""

    def test_replay_is_a_noop(self, service) -> None:
        (milestone_id,) = _hire(service, _gig(service))
        funded = service.fund_milestone(EMPLOYER, milestone_id, now=_now())
        payload = build_signed_payload(EVENT_PAYMENT, funded.data["external_ref"], STATUS_HELD, SECRET)

        first = service.handle_webhook(payload, now=_now())
        second = service.handle_webhook(dict(payload), now=_now())
        assert first.data["duplicate"] is False
        assert second.success
        assert second.data["duplicate"] is True
        assert len(service._event_log.events(EventKind.ESCROW_HELD)) == 1

    def test_bad_signature_rejected(self, service) -> None:
        (milestone_id,) = _hire(service, _gig(service))
        funded = service.fund_milestone(EMPLOYER, milestone_id, now=_now())
        payload = build_signed_payload(EVENT_PAYMENT, funded.data["external_ref"], STATUS_HELD, "wrong")
        result = service.handle_webhook(payload, now=_now())
        assert not result.success
        assert service.get_escrow(funded.data["escrow_id"]).state.value == "initiated"

    def test_failed_payout_then_retry(self, service, gateway) -> None:
        posting_id = _gig(service)
        (milestone_id,) = _hire(service, posting_id)
        escrow_id = _fund(service, milestone_id)
        _deliver(service, milestone_id)

        gateway.payout_failures = 5
        approved = service.approve_milestone(EMPLOYER, milestone_id, now=_now())
        assert approved.success
        assert approved.data["settlement"] == "failed"
        assert approved.data["status"] == "approved"
        assert service.get_escrow(escrow_id).state.value == "held"

        gateway.payout_failures = 0
        retried = service.release_escrow(EMPLOYER, escrow_id, now=_now())
        assert retried.success, retried.errors
        assert _milestone(service, posting_id, milestone_id).status.value == "paid"
        assert service.get_posting(posting_id).status.value == "completed"

    def test_pending_payout_settles_on_webhook(self, service, gateway) -> None:
        gateway.payout_status = "pending"
        posting_id = _gig(service)
        (milestone_id,) = _hire(service, posting_id)
        escrow_id = _fund(service, milestone_id)
        _deliver(service, milestone_id)

        approved = service.approve_milestone(EMPLOYER, milestone_id, now=_now())
        assert approved.data["settlement"] == "pending"
        assert _milestone(service, posting_id, milestone_id).status.value == "approved"

        for payout in list(gateway.payouts):
            result = service.handle_webhook(
                build_signed_payload(EVENT_PAYOUT, payout["payout_id"], STATUS_COMPLETED, SECRET),
                now=_now(),
            )
            assert result.success, result.errors
        assert service.get_escrow(escrow_id).state.value == "released"
        assert _milestone(service, posting_id, milestone_id).status.value == "paid"


# ------------------------------------------------------------------
# Housekeeping
# ------------------------------------------------------------------

class TestSweepAndClose:
    def test_sweep_abandons_and_advances(self, service) -> None:
        tested = _gig(service, skill_test=SkillTestRequirement(TEMPLATE, "mid", 70))
        assert service.start_attempt(SEEKER_2, tested, now=_now()).success

        (milestone_id,) = _hire(service, _gig(service))
        _fund(service, milestone_id)
        assert service.open_dispute(EMPLOYER, milestone_id, DisputeReason.NON_DELIVERY, now=_now()).success

        early = service.sweep(now=_now() + timedelta(hours=1))
        assert early.data["attempts_abandoned"] == 1
        assert early.data["disputes_advanced"] == 0

        late = service.sweep(now=_now() + timedelta(days=8))
        assert late.success
        assert late.data["disputes_advanced"] == 1
        attempts = service.list_attempts_for_posting(SEEKER_2, tested).data["attempts"]
        assert attempts[0]["status"] == "abandoned"

    def test_close_refused_with_live_escrow(self, service) -> None:
        posting_id = _gig(service)
        (milestone_id,) = _hire(service, posting_id)
        _fund(service, milestone_id)
        result = service.close_posting(EMPLOYER, posting_id, "changed my mind", now=_now())
        assert not result.success
        assert result.code == "escrow_busy"

    def test_close_open_posting_rejects_applicants(self, service) -> None:
        posting_id = _gig(service)
        app_id = service.apply(SEEKER, posting_id, now=_now()).data["application_id"]
        result = service.close_posting(EMPLOYER, posting_id, "filled elsewhere", now=_now())
        assert result.success
        assert result.data["rejected_applications"] == [app_id]


# ------------------------------------------------------------------
# Rejected verdicts
# ------------------------------------------------------------------

def _disputed(service: TrustWorkService, respond: bool = True) -> tuple[str, str]:
    (milestone_id,) = _hire(service, _gig(service))
    escrow_id = _fund(service, milestone_id)
    dispute_id = service.open_dispute(
        EMPLOYER, milestone_id, DisputeReason.QUALITY_ISSUE, now=_now(),
    ).data["dispute_id"]
    if respond:
        assert service.respond_to_dispute(SEEKER, dispute_id, "It works", now=_now()).success
    return dispute_id, escrow_id


class TestRejectedVerdict:
    """Prove a verdict the ledger cannot execute is refused before it is saved."""

    @pytest.mark.parametrize("payee_amount", ["0", "1000", "200.005"])
    def test_bad_split_leaves_dispute_open(self, service, payee_amount) -> None:
        dispute_id, escrow_id = _disputed(service)
        events_before = service.status()["events"]

        result = service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal(payee_amount)), now=_now(),
        )
        assert not result.success
        assert result.code == "invalid_verdict"
        dispute = service.get_dispute(dispute_id)
        assert dispute.status.value == "under_review"
        assert dispute.verdict is None
        assert service.get_escrow(escrow_id).state.value == "disputed"
        assert service.status()["events"] == events_before

    def test_bad_split_while_awaiting_response(self, service) -> None:
        dispute_id, escrow_id = _disputed(service, respond=False)
        result = service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal("200.005")),
            now=_now() + timedelta(days=8),
        )
        assert result.code == "invalid_verdict"
        assert service.get_dispute(dispute_id).status.value == "awaiting_response"
        assert service.get_escrow(escrow_id).state.value == "disputed"

    def test_valid_split_after_rejection(self, service) -> None:
        dispute_id, escrow_id = _disputed(service)
        assert not service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal("200.005")), now=_now(),
        ).success
        resolved = service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal("200.00")), now=_now(),
        )
        assert resolved.success, resolved.errors
        assert service.get_escrow(escrow_id).state.value == "split"
        assert service.check_invariants().success

    def test_unresolved_dispute_cannot_be_executed(self, service) -> None:
        dispute_id, escrow_id = _disputed(service)
        with pytest.raises(InvariantError):
            service._execute_verdict(
                service.get_dispute(dispute_id), service.get_escrow(escrow_id), "admin_1", _now(),
            )


# ------------------------------------------------------------------
# Progress and money queries
# ------------------------------------------------------------------

class TestMilestoneStats:
    def test_progress_after_first_payment(self, service) -> None:
        plan = [
            MilestonePlanItem("Design", Decimal("30")),
            MilestonePlanItem("Build", Decimal("70")),
        ]
        posting_id = _gig(service, plan=plan)
        first, second = _hire(service, posting_id)

        before = service.milestone_stats(posting_id)
        assert before.data["total"] == 2
        assert before.data["percentage_complete"] == "0.00"
        assert before.data["released_amount"] == "0"

        _fund(service, first)
        _deliver(service, first)
        assert service.approve_milestone(EMPLOYER, first, now=_now()).success

        stats = service.milestone_stats(posting_id).data
        assert stats["by_status"]["paid"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["percentage_complete"] == "50.00"
        assert Decimal(stats["released_amount"]) == Decimal("300")
        assert Decimal(stats["total_amount"]) == Decimal("1000")

    def test_unknown_posting(self, service) -> None:
        assert service.milestone_stats("post_missing").code == "not_found"


class TestPaymentStats:
    def test_held_then_released(self, service) -> None:
        (milestone_id,) = _hire(service, _gig(service))
        funded = service.fund_milestone(EMPLOYER, milestone_id, now=_now())
        assert Decimal(service.payment_stats(EMPLOYER, "emp_1").data["pending_payments"]) == Decimal("1000")

        service.handle_webhook(
            build_signed_payload(EVENT_PAYMENT, funded.data["external_ref"], STATUS_HELD, SECRET),
            now=_now(),
        )
        payer = service.payment_stats(EMPLOYER, "emp_1").data
        assert Decimal(payer["held_in_escrow"]) == Decimal("1000")
        assert Decimal(payer["pending_payments"]) == 0
        payee = service.payment_stats(SEEKER, "js_1").data
        assert Decimal(payee["pending_payouts"]) == Decimal("900")

        _deliver(service, milestone_id)
        assert service.approve_milestone(EMPLOYER, milestone_id, now=_now()).success
        payer = service.payment_stats(EMPLOYER, "emp_1").data
        assert Decimal(payer["total_paid"]) == Decimal("1000")
        assert Decimal(payer["held_in_escrow"]) == 0
        payee = service.payment_stats(ADMIN, "js_1").data
        assert Decimal(payee["total_received"]) == Decimal("900")
        assert Decimal(payee["pending_payouts"]) == 0

    def test_split_counts_only_the_kept_share(self, service) -> None:
        dispute_id, _ = _disputed(service)
        assert service.resolve_dispute(
            ADMIN, dispute_id, Verdict(VerdictKind.SPLIT, Decimal("400")), now=_now(),
        ).success
        assert Decimal(service.payment_stats(EMPLOYER, "emp_1").data["total_paid"]) == Decimal("400")
        assert Decimal(service.payment_stats(SEEKER, "js_1").data["total_received"]) == Decimal("360")

    def test_other_users_totals_are_private(self, service) -> None:
        result = service.payment_stats(SEEKER_2, "js_1")
        assert not result.success
        assert result.data["kind"] == "authorization"


class TestPendingReviews:
    def _completed(self, service) -> str:
        posting_id = _gig(service)
        (milestone_id,) = _hire(service, posting_id)
        _fund(service, milestone_id)
        _deliver(service, milestone_id)
        assert service.approve_milestone(EMPLOYER, milestone_id, now=_now()).success
        return posting_id

    def test_both_parties_owe_a_review(self, service) -> None:
        posting_id = self._completed(service)
        owed = service.pending_reviews(EMPLOYER, now=_now()).data["pending"]
        assert [(p["posting_id"], p["subject_id"]) for p in owed] == [(posting_id, "js_1")]
        owed = service.pending_reviews(SEEKER, now=_now()).data["pending"]
        assert [(p["posting_id"], p["subject_id"]) for p in owed] == [(posting_id, "emp_1")]
        assert service.pending_reviews(SEEKER_2, now=_now()).data["pending"] == []

    def test_written_review_is_no_longer_owed(self, service) -> None:
        posting_id = self._completed(service)
        assert service.create_review(EMPLOYER, posting_id, "js_1", CLIENT_RATINGS, now=_now()).success
        assert service.pending_reviews(EMPLOYER, now=_now()).data["pending"] == []
        assert len(service.pending_reviews(SEEKER, now=_now()).data["pending"]) == 1

    def test_closed_window_drops_the_posting(self, service) -> None:
        self._completed(service)
        assert service.pending_reviews(EMPLOYER, now=_now() + timedelta(days=31)).data["pending"] == []
