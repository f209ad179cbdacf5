"""Tests for disputes — proves escrow freeze, response window and verdict rules."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from trustwork.compensation.escrow import EscrowLedger
from trustwork.errors import AuthorizationError, PreconditionError
from trustwork.legal.disputes import DisputeResolver, validate_verdict
from trustwork.models.dispute import DisputeReason, DisputeStatus, Evidence, Verdict, VerdictKind
from trustwork.models.escrow import EscrowPayment, EscrowState, PaymentMethod
from trustwork.models.identity import Caller, Role
from trustwork.models.milestone import Milestone, MilestoneStatus
from trustwork.policy.resolver import PolicyResolver


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

CLIENT = Caller("emp_1", Role.EMPLOYER)
FREELANCER = Caller("js_1", Role.JOB_SEEKER)
STRANGER = Caller("js_9", Role.JOB_SEEKER)
ADMIN = Caller("admin_1", Role.ADMIN)


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def ledger(policy: PolicyResolver) -> EscrowLedger:
    return EscrowLedger(policy)


@pytest.fixture
def resolver(policy: PolicyResolver, ledger: EscrowLedger) -> DisputeResolver:
    return DisputeResolver(policy, ledger)


@pytest.fixture
def milestone() -> Milestone:
    return Milestone(
        "ms_1", "post_1", 1, "Build", Decimal("100"), Decimal("500"),
        status=MilestoneStatus.SUBMITTED,
    )


@pytest.fixture
def escrow(ledger: EscrowLedger, milestone: Milestone) -> EscrowPayment:
    record = ledger.create(milestone, "emp_1", "js_1", PaymentMethod.PAYFAST, now=_now())
    ledger.confirm_held(record, _now())
    return record


def _open(resolver: DisputeResolver, milestone: Milestone, escrow: EscrowPayment, caller=CLIENT):
    return resolver.open(
        caller, milestone, escrow, [], DisputeReason.QUALITY_ISSUE,
        title="Broken checkout", now=_now(),
    )


class TestOpen:
    def test_open_freezes_escrow(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        assert dispute.status == DisputeStatus.AWAITING_RESPONSE
        assert dispute.respondent_id == "js_1"
        assert dispute.response_deadline == _now() + timedelta(days=7)
        assert escrow.state == EscrowState.DISPUTED

    def test_payee_may_open(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow, caller=FREELANCER)
        assert dispute.respondent_id == "emp_1"

    def test_outsider_and_admin_cannot_open(self, resolver, milestone, escrow) -> None:
        with pytest.raises(AuthorizationError):
            _open(resolver, milestone, escrow, caller=STRANGER)
        with pytest.raises(AuthorizationError):
            _open(resolver, milestone, escrow, caller=ADMIN)
        assert escrow.state == EscrowState.HELD

    def test_unknown_reason(self, resolver, milestone, escrow) -> None:
        with pytest.raises(PreconditionError) as exc:
            resolver.open(CLIENT, milestone, escrow, [], "bad_vibes")
        assert exc.value.code == "invalid_dispute"

    def test_one_open_dispute_per_milestone(self, resolver, milestone, escrow) -> None:
        first = _open(resolver, milestone, escrow)
        with pytest.raises(PreconditionError) as exc:
            resolver.open(FREELANCER, milestone, escrow, [first], DisputeReason.OTHER)
        assert exc.value.code == "dispute_exists"

    def test_unfunded_escrow_cannot_be_disputed(self, resolver, ledger, milestone) -> None:
        record = ledger.create(milestone, "emp_1", "js_1", PaymentMethod.PAYFAST)
        with pytest.raises(PreconditionError) as exc:
            _open(resolver, milestone, record)
        assert exc.value.code == "escrow_not_funded"

    def test_paid_milestone_cannot_be_disputed(self, resolver, milestone, escrow) -> None:
        milestone.status = MilestoneStatus.PAID
        with pytest.raises(PreconditionError):
            _open(resolver, milestone, escrow)

    def test_initial_evidence_stamped(self, resolver, milestone, escrow) -> None:
        dispute = resolver.open(
            CLIENT, milestone, escrow, [], DisputeReason.NON_DELIVERY,
            evidence=[Evidence(submitted_by="", kind="screenshot", url="https://img/1")],
            now=_now(),
        )
        assert dispute.evidence[0].submitted_by == "emp_1"
        assert dispute.evidence[0].submitted_at == _now()


class TestResponseWindow:
    def test_respondent_answers(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        resolver.respond(FREELANCER, dispute, "Works on staging", now=_now() + timedelta(days=1))
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.response == "Works on staging"

    def test_initiator_cannot_respond(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        with pytest.raises(AuthorizationError):
            resolver.respond(CLIENT, dispute, "me again")

    def test_late_response_refused(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        with pytest.raises(PreconditionError) as exc:
            resolver.respond(FREELANCER, dispute, "sorry", now=_now() + timedelta(days=8))
        assert exc.value.code == "response_closed"

    def test_overdue_advances_without_response(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        assert not resolver.advance_overdue(dispute, _now() + timedelta(days=7))
        assert resolver.advance_overdue(dispute, _now() + timedelta(days=7, seconds=1))
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.no_response

    def test_evidence_from_either_party(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        resolver.add_evidence(FREELANCER, dispute, "link", url="https://staging")
        resolver.add_evidence(ADMIN, dispute, "note", note="checked logs")
        assert len(dispute.evidence) == 2
        with pytest.raises(PreconditionError) as exc:
            resolver.add_evidence(CLIENT, dispute, "note")
        assert exc.value.code == "invalid_evidence"
        with pytest.raises(AuthorizationError):
            resolver.add_evidence(STRANGER, dispute, "note", note="hi")


class TestResolve:
    def _under_review(self, resolver, milestone, escrow):
        dispute = _open(resolver, milestone, escrow)
        resolver.respond(FREELANCER, dispute, "Delivered as agreed", now=_now())
        return dispute

    def test_admin_records_split(self, resolver, milestone, escrow) -> None:
        dispute = self._under_review(resolver, milestone, escrow)
        verdict = Verdict(VerdictKind.SPLIT, Decimal("200"))
        resolver.resolve(ADMIN, dispute, verdict, escrow, "half done", now=_now())
        assert dispute.is_resolved
        assert dispute.verdict == verdict
        assert dispute.resolved_by == "admin_1"

    def test_party_cannot_resolve(self, resolver, milestone, escrow) -> None:
        dispute = self._under_review(resolver, milestone, escrow)
        with pytest.raises(AuthorizationError):
            resolver.resolve(CLIENT, dispute, Verdict(VerdictKind.REFUND_TO_PAYER), escrow)

    def test_awaiting_response_not_resolvable(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        with pytest.raises(PreconditionError):
            resolver.resolve(ADMIN, dispute, Verdict(VerdictKind.RELEASE_TO_PAYEE), escrow, now=_now())

    def test_resolve_after_deadline_advances_first(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        later = _now() + timedelta(days=8)
        resolver.resolve(ADMIN, dispute, Verdict(VerdictKind.REFUND_TO_PAYER), escrow, now=later)
        assert dispute.no_response
        assert dispute.is_resolved

    def test_resolved_is_final(self, resolver, milestone, escrow) -> None:
        dispute = self._under_review(resolver, milestone, escrow)
        resolver.resolve(ADMIN, dispute, Verdict(VerdictKind.RELEASE_TO_PAYEE), escrow, now=_now())
        with pytest.raises(PreconditionError):
            resolver.resolve(ADMIN, dispute, Verdict(VerdictKind.REFUND_TO_PAYER), escrow, now=_now())
        with pytest.raises(PreconditionError) as exc:
            resolver.add_evidence(CLIENT, dispute, "note", note="late")
        assert exc.value.code == "dispute_resolved"


class TestValidateVerdict:
    @pytest.mark.parametrize("amount", [None, Decimal("0"), Decimal("500"), Decimal("600")])
    def test_split_amount_bounds(self, amount) -> None:
        with pytest.raises(PreconditionError):
            validate_verdict(Verdict(VerdictKind.SPLIT, amount), Decimal("500"))

    def test_release_carries_no_amount(self) -> None:
        with pytest.raises(PreconditionError):
            validate_verdict(Verdict(VerdictKind.RELEASE_TO_PAYEE, Decimal("10")), Decimal("500"))

    def test_valid_split(self) -> None:
        validate_verdict(Verdict(VerdictKind.SPLIT, Decimal("0.01")), Decimal("500"))

    def test_split_off_the_currency_unit(self) -> None:
        with pytest.raises(PreconditionError) as exc:
            validate_verdict(Verdict(VerdictKind.SPLIT, Decimal("200.005")), Decimal("500"), Decimal("0.01"))
        assert exc.value.code == "invalid_verdict"


class TestRejectedSplit:
    """Prove an unexecutable split leaves the dispute and escrow untouched."""

    def test_off_unit_split_not_recorded(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        resolver.respond(FREELANCER, dispute, "Works on my machine", now=_now())
        with pytest.raises(PreconditionError):
            resolver.resolve(
                ADMIN, dispute, Verdict(VerdictKind.SPLIT, Decimal("200.005")), escrow, now=_now(),
            )
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.verdict is None
        assert dispute.resolved_at is None
        assert escrow.state == EscrowState.DISPUTED

    def test_rejection_does_not_advance_overdue(self, resolver, milestone, escrow) -> None:
        dispute = _open(resolver, milestone, escrow)
        with pytest.raises(PreconditionError):
            resolver.resolve(
                ADMIN, dispute, Verdict(VerdictKind.SPLIT, Decimal("500")), escrow,
                now=_now() + timedelta(days=8),
            )
        assert dispute.status == DisputeStatus.AWAITING_RESPONSE
        assert not dispute.no_response
