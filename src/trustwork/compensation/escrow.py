"""Escrow ledger — authoritative money state for milestone payments.

The ledger is the source of truth for what *should* happen to escrowed
money; the gateway moves it. Every gateway-bound settlement is first
recorded as a PendingIntent, completed when the payouts confirm, and
failed (leaving the escrow where it was) when they do not.

The ledger is a pure state machine — no side effects. Gateway calls,
event logging and persistence are handled by the service layer.

State machine:
    INITIATED → HELD        (signed payment webhook)
    INITIATED → VOID        (payment failed, or funding intent swept)
    HELD → RELEASED         (payer approves; payee ← net, platform ← fee)
    HELD → REFUNDED         (payer ← gross)
    HELD → DISPUTED         (dispute opened)
    DISPUTED → RELEASED | REFUNDED | SPLIT   (verdict executed)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from trustwork.compensation.fees import (
    check_conservation,
    compute_fee,
    refund_movements,
    release_movements,
    split_movements,
)
from trustwork.errors import PreconditionError
from trustwork.models.escrow import (
    EscrowPayment,
    EscrowState,
    IntentKind,
    IntentStatus,
    Movement,
    Party,
    PaymentMethod,
    PayoutRef,
    PendingIntent,
)
from trustwork.models.history import record_change
from trustwork.models.identity import SYSTEM_ACTOR
from trustwork.models.milestone import Milestone
from trustwork.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

_TARGETS = {
    IntentKind.RELEASE: EscrowState.RELEASED,
    IntentKind.REFUND: EscrowState.REFUNDED,
    IntentKind.SPLIT: EscrowState.SPLIT,
}


class EscrowLedger:
    """Validates and applies escrow transitions.

    Usage:
        ledger = EscrowLedger(resolver)
        record = ledger.create(milestone, "client_1", "freelancer_1", PaymentMethod.PAYFAST)
        ledger.attach_session(record, session.external_ref, session.session_url)
        ledger.confirm_held(record)
        intent = ledger.begin_settlement(record, IntentKind.RELEASE)
        ...payouts...
        ledger.complete_settlement(record)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def create(
        self,
        milestone: Milestone,
        payer_id: str,
        payee_id: str,
        method: PaymentMethod,
        escrow_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscrowPayment:
        """Create an INITIATED escrow for a milestone's amount."""
        method = PaymentMethod(method)
        if method.value not in self._resolver.payment_methods():
            raise PreconditionError(
                "invalid_payment_method", f"Payment method not enabled: {method.value}",
            )
        now = now or datetime.now(timezone.utc)
        breakdown = compute_fee(
            milestone.amount,
            self._resolver.platform_fee_rate(),
            self._resolver.money_quantum(),
        )
        record = EscrowPayment(
            escrow_id=escrow_id or f"esc_{uuid4().hex[:12]}",
            posting_id=milestone.posting_id,
            milestone_id=milestone.milestone_id,
            payer_id=payer_id,
            payee_id=payee_id,
            gross=breakdown.gross,
            fee=breakdown.fee,
            net=breakdown.net,
            currency=self._resolver.currency(),
            method=method,
            created_at=now,
        )
        check_conservation(record, release_movements(record))
        record_change(record.history, None, record.state.value, payer_id, now, "created")
        return record

    def attach_session(self, record: EscrowPayment, external_ref: str, session_url: str) -> None:
        if record.external_ref:
            raise PreconditionError("invalid_transition", "Escrow already has a payment session")
        record.external_ref = external_ref
        record.session_url = session_url

    def confirm_held(self, record: EscrowPayment, now: Optional[datetime] = None) -> bool:
        """INITIATED → HELD. Returns False (no-op) if already past INITIATED."""
        if record.state != EscrowState.INITIATED:
            return False
        now = now or datetime.now(timezone.utc)
        self._transition(record, EscrowState.HELD, SYSTEM_ACTOR, now, "payment confirmed")
        record.held_at = now
        return True

    def void(
        self,
        record: EscrowPayment,
        reason: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """INITIATED → VOID. Returns False (no-op) if already past INITIATED."""
        if record.state != EscrowState.INITIATED:
            return False
        now = now or datetime.now(timezone.utc)
        self._transition(record, EscrowState.VOID, SYSTEM_ACTOR, now, reason)
        record.voided_at = now
        record.failure_reason = reason
        return True

    def mark_disputed(
        self,
        record: EscrowPayment,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> EscrowPayment:
        """HELD → DISPUTED. Refused while a settlement is in flight."""
        self._require_idle(record)
        if record.state != EscrowState.HELD:
            raise PreconditionError(
                "escrow_not_funded",
                f"Escrow {record.escrow_id} is {record.state.value}; only held escrow can be disputed",
            )
        now = now or datetime.now(timezone.utc)
        self._transition(record, EscrowState.DISPUTED, actor_id, now, "dispute opened")
        record.disputed_at = now
        return record

    def begin_settlement(
        self,
        record: EscrowPayment,
        kind: IntentKind,
        payee_amount: Optional[Decimal] = None,
        via_dispute: bool = False,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> PendingIntent:
        """Record the intended settlement before calling the gateway.

        Release and refund settle a HELD escrow; with ``via_dispute`` they
        settle a DISPUTED one instead, as does SPLIT (dispute-only).
        """
        self._require_idle(record)
        source = EscrowState.DISPUTED if via_dispute else EscrowState.HELD
        if kind == IntentKind.SPLIT and not via_dispute:
            raise PreconditionError("invalid_transition", "Split settlements come only from disputes")
        if record.state != source:
            if record.state == EscrowState.DISPUTED:
                code = "escrow_disputed"
            elif record.state == EscrowState.INITIATED:
                code = "escrow_not_funded"
            else:
                code = "invalid_transition"
            raise PreconditionError(
                code,
                f"Escrow {record.escrow_id} is {record.state.value}; cannot {kind.value}",
            )

        if kind == IntentKind.RELEASE:
            movements = release_movements(record)
        elif kind == IntentKind.REFUND:
            movements = refund_movements(record, self._resolver.refund_retains_fee())
        else:
            if payee_amount is None:
                raise PreconditionError("invalid_verdict", "Split requires a payee amount")
            movements = split_movements(
                record,
                payee_amount,
                self._resolver.platform_fee_rate(),
                self._resolver.money_quantum(),
            )
        check_conservation(record, movements)

        now = now or datetime.now(timezone.utc)
        intent = PendingIntent(
            intent_id=f"int_{uuid4().hex[:12]}",
            kind=kind,
            target_state=_TARGETS[kind],
            movements=movements,
            created_at=now,
            reason=reason,
        )
        record.pending_intent = intent
        logger.info(
            "Escrow %s: %s intent %s recorded (%s)",
            record.escrow_id, kind.value, intent.intent_id,
            ", ".join(f"{m.party.value}={m.amount}" for m in movements),
        )
        return intent

    @staticmethod
    def payout_movements(intent: PendingIntent) -> list[Movement]:
        """Movements that need a gateway payout (the platform keeps its fee)."""
        return [m for m in intent.movements if m.party != Party.PLATFORM]

    def record_payout(
        self,
        record: EscrowPayment,
        movement: Movement,
        payout_id: str,
        status: str,
    ) -> None:
        intent = self._require_intent(record)
        intent.payouts.append(PayoutRef(
            payout_id=payout_id,
            party=movement.party,
            amount=movement.amount,
            status=_payout_status(status),
        ))

    def apply_payout_status(self, record: EscrowPayment, payout_id: str, status: str) -> bool:
        """Update one payout from a webhook. Returns False if already final."""
        intent = self._require_intent(record)
        for payout in intent.payouts:
            if payout.payout_id == payout_id:
                if payout.status != IntentStatus.PENDING:
                    return False
                payout.status = _payout_status(status)
                return True
        raise PreconditionError("unknown_external_ref", f"Unknown payout: {payout_id}")

    def settlement_outcome(self, record: EscrowPayment) -> IntentStatus:
        """COMPLETED when every payout confirmed, FAILED if any failed."""
        intent = self._require_intent(record)
        expected = len(self.payout_movements(intent))
        if any(p.status == IntentStatus.FAILED for p in intent.payouts):
            return IntentStatus.FAILED
        if len(intent.payouts) == expected and intent.all_payouts_completed:
            return IntentStatus.COMPLETED
        return IntentStatus.PENDING

    def complete_settlement(
        self,
        record: EscrowPayment,
        actor_id: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None,
    ) -> EscrowPayment:
        """Apply the intent's target state and movements."""
        intent = self._require_intent(record)
        check_conservation(record, intent.movements)
        now = now or datetime.now(timezone.utc)
        self._transition(record, intent.target_state, actor_id, now, intent.reason or intent.kind.value)
        intent.status = IntentStatus.COMPLETED
        record.movements = list(intent.movements)
        record.settled_at = now
        record.pending_intent = None
        logger.info("Escrow %s settled as %s", record.escrow_id, record.state.value)
        return record

    def fail_settlement(
        self,
        record: EscrowPayment,
        reason: str,
        now: Optional[datetime] = None,
    ) -> EscrowPayment:
        """Drop the intent; the escrow stays where it was for a fresh attempt."""
        intent = self._require_intent(record)
        intent.status = IntentStatus.FAILED
        record.pending_intent = None
        record.failure_reason = reason
        now = now or datetime.now(timezone.utc)
        record_change(
            record.history, record.state.value, record.state.value, SYSTEM_ACTOR, now,
            f"{intent.kind.value} failed: {reason}",
        )
        logger.warning("Escrow %s: %s intent failed: %s", record.escrow_id, intent.kind.value, reason)
        return record

    def sweep_stale(self, record: EscrowPayment, now: Optional[datetime] = None) -> Optional[str]:
        """Fail gateway work older than the intent TTL.

        Returns a description of what was swept, or None.
        """
        now = now or datetime.now(timezone.utc)
        ttl = self._resolver.intent_ttl()
        if (
            record.state == EscrowState.INITIATED
            and record.created_at is not None
            and now - record.created_at > ttl
        ):
            self.void(record, "funding intent expired", now)
            logger.warning("Escrow %s: funding swept after TTL", record.escrow_id)
            return "funding"
        intent = record.pending_intent
        if intent is not None and intent.created_at is not None and now - intent.created_at > ttl:
            self.fail_settlement(record, "settlement intent expired", now)
            return intent.kind.value
        return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _require_idle(record: EscrowPayment) -> None:
        if record.pending_intent is not None:
            raise PreconditionError(
                "escrow_busy",
                f"Escrow {record.escrow_id} has a {record.pending_intent.kind.value} in flight",
            )

    @staticmethod
    def _require_intent(record: EscrowPayment) -> PendingIntent:
        if record.pending_intent is None:
            raise PreconditionError("invalid_transition", f"Escrow {record.escrow_id} has no pending intent")
        return record.pending_intent

    @staticmethod
    def _transition(
        record: EscrowPayment,
        target: EscrowState,
        actor_id: str,
        now: datetime,
        note: str = "",
    ) -> None:
        previous = record.state
        record.transition_to(target)
        record_change(record.history, previous.value, target.value, actor_id, now, note)
        logger.info("Escrow %s: %s → %s", record.escrow_id, previous.value, target.value)


def _payout_status(status: str) -> IntentStatus:
    try:
        return IntentStatus(status)
    except ValueError:
        raise PreconditionError("invalid_webhook", f"Unknown payout status: {status}") from None
