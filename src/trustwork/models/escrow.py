"""Escrow models — per-milestone money state.

All monetary values use Decimal for exact arithmetic. No floats in finance.

State machine:
    INITIATED → HELD        (gateway confirms payment)
    INITIATED → VOID        (payment failed or intent swept; nothing moved)
    HELD → RELEASED         (payout to payee, fee to platform)
    HELD → REFUNDED         (payer made whole)
    HELD → DISPUTED         (dispute opened on the milestone)
    DISPUTED → RELEASED | REFUNDED | SPLIT   (verdict executed)

RELEASED, REFUNDED, SPLIT and VOID are absorbing. For every terminal
monetary state the movements sum to the gross amount.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from trustwork.errors import PreconditionError
from trustwork.models.history import StatusChange


class EscrowState(str, enum.Enum):
    """Lifecycle state of an escrow payment."""
    INITIATED = "initiated"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    SPLIT = "split"
    VOID = "void"


ESCROW_TRANSITIONS: Dict[EscrowState, frozenset] = {
    EscrowState.INITIATED: frozenset({EscrowState.HELD, EscrowState.VOID}),
    EscrowState.HELD: frozenset({
        EscrowState.RELEASED,
        EscrowState.REFUNDED,
        EscrowState.DISPUTED,
    }),
    EscrowState.DISPUTED: frozenset({
        EscrowState.RELEASED,
        EscrowState.REFUNDED,
        EscrowState.SPLIT,
    }),
    EscrowState.RELEASED: frozenset(),
    EscrowState.REFUNDED: frozenset(),
    EscrowState.SPLIT: frozenset(),
    EscrowState.VOID: frozenset(),
}

# Terminal states in which money left escrow.
SETTLED_STATES = frozenset({
    EscrowState.RELEASED,
    EscrowState.REFUNDED,
    EscrowState.SPLIT,
})

# States in which the escrow is still "live" for its milestone.
LIVE_STATES = frozenset({
    EscrowState.INITIATED,
    EscrowState.HELD,
    EscrowState.DISPUTED,
})


class PaymentMethod(str, enum.Enum):
    PAYFAST = "payfast"
    CARD = "card"
    EFT = "eft"


class Party(str, enum.Enum):
    """Recipient of a monetary movement."""
    PAYER = "payer"
    PAYEE = "payee"
    PLATFORM = "platform"


class IntentKind(str, enum.Enum):
    """Kind of gateway operation awaiting a callback."""
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


class IntentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Movement:
    """A single terminal transfer out of escrow."""
    party: Party
    party_id: str
    amount: Decimal


@dataclass
class PayoutRef:
    """A gateway payout issued for one movement of a settlement."""
    payout_id: str
    party: Party
    amount: Decimal
    status: IntentStatus = IntentStatus.PENDING


@dataclass
class PendingIntent:
    """A persisted settlement awaiting gateway confirmation.

    The intent survives restarts: the payout webhook resumes it by
    payout id, and the sweep fails it once older than the TTL.
    """
    intent_id: str
    kind: IntentKind
    target_state: EscrowState
    movements: list[Movement] = field(default_factory=list)
    payouts: list[PayoutRef] = field(default_factory=list)
    status: IntentStatus = IntentStatus.PENDING
    created_at: Optional[datetime] = None
    reason: str = ""

    @property
    def all_payouts_completed(self) -> bool:
        return all(p.status == IntentStatus.COMPLETED for p in self.payouts)


@dataclass
class EscrowPayment:
    """Escrowed funds for a single milestone.

    Mutable: state transitions happen through ``transition_to`` which
    validates against ESCROW_TRANSITIONS.
    """
    escrow_id: str
    posting_id: str
    milestone_id: str
    payer_id: str
    payee_id: str
    gross: Decimal
    fee: Decimal
    net: Decimal
    currency: str = "ZAR"
    method: PaymentMethod = PaymentMethod.PAYFAST
    state: EscrowState = EscrowState.INITIATED
    external_ref: str = ""
    session_url: str = ""
    movements: list[Movement] = field(default_factory=list)
    pending_intent: Optional[PendingIntent] = None
    created_at: Optional[datetime] = None
    held_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    failure_reason: str = ""
    history: list[StatusChange] = field(default_factory=list)
    version: int = 0

    def transition_to(self, new_state: EscrowState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = ESCROW_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise PreconditionError(
                "invalid_transition",
                f"Invalid escrow transition: {self.state.value} → {new_state.value}. "
                f"Allowed: {', '.join(sorted(s.value for s in allowed))}",
            )
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return not ESCROW_TRANSITIONS.get(self.state)

    def moved_total(self) -> Decimal:
        return sum((m.amount for m in self.movements), Decimal("0"))


@dataclass
class WebhookReceipt:
    """First processed webhook per (external_ref, event_type)."""
    receipt_key: str
    external_ref: str
    event_type: str
    status: str
    escrow_id: str
    received_at: Optional[datetime] = None
    version: int = 0
