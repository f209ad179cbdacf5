"""Fee arithmetic and settlement movements.

All monetary values use Decimal for exact arithmetic. No floats in finance.

Conservation: gross == fee + net for every escrow, and the movements of
every settlement sum to gross.

    release:  payee ← net,             platform ← fee
    refund:   payer ← gross            (or payer ← net, platform ← fee
                                        when the platform retains its fee)
    split(x): payee ← x − fee_share,   platform ← fee_share,
              payer ← gross − x        where fee_share = x × rate
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from trustwork.errors import InvariantError, PreconditionError
from trustwork.models.escrow import EscrowPayment, Movement, Party

ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeBreakdown:
    """Published split of a gross amount."""
    gross: Decimal
    rate: Decimal
    fee: Decimal
    net: Decimal


def compute_fee(gross: Decimal, rate: Decimal, quantum: Decimal) -> FeeBreakdown:
    """Fee rounded half-up to the money quantum; net is the remainder."""
    if gross <= ZERO:
        raise PreconditionError("invalid_amount", "Escrow amount must be positive")
    fee = (gross * rate).quantize(quantum, rounding=ROUND_HALF_UP)
    return FeeBreakdown(gross=gross, rate=rate, fee=fee, net=gross - fee)


def release_movements(record: EscrowPayment) -> list[Movement]:
    return _non_zero([
        Movement(Party.PAYEE, record.payee_id, record.net),
        Movement(Party.PLATFORM, "platform", record.fee),
    ])


def refund_movements(record: EscrowPayment, retains_fee: bool = False) -> list[Movement]:
    if retains_fee:
        return _non_zero([
            Movement(Party.PAYER, record.payer_id, record.net),
            Movement(Party.PLATFORM, "platform", record.fee),
        ])
    return [Movement(Party.PAYER, record.payer_id, record.gross)]


def split_movements(
    record: EscrowPayment,
    payee_amount: Decimal,
    rate: Decimal,
    quantum: Decimal,
) -> list[Movement]:
    """Award ``payee_amount`` of the gross to the payee, the rest to the payer.

    The platform fee applies only to the payee's share.
    """
    payee_amount = Decimal(payee_amount)
    if not ZERO < payee_amount < record.gross:
        raise PreconditionError(
            "invalid_verdict",
            f"Split amount must be between 0 and {record.gross} exclusive, got {payee_amount}",
        )
    if payee_amount != payee_amount.quantize(quantum):
        raise PreconditionError("invalid_verdict", f"Split amount must be in units of {quantum}")
    fee_share = (payee_amount * rate).quantize(quantum, rounding=ROUND_HALF_UP)
    return _non_zero([
        Movement(Party.PAYEE, record.payee_id, payee_amount - fee_share),
        Movement(Party.PLATFORM, "platform", fee_share),
        Movement(Party.PAYER, record.payer_id, record.gross - payee_amount),
    ])


def check_conservation(record: EscrowPayment, movements: list[Movement]) -> None:
    """Raise InvariantError if the record or movements do not balance."""
    if record.fee + record.net != record.gross:
        raise InvariantError(
            "money_imbalance",
            f"Escrow {record.escrow_id}: fee {record.fee} + net {record.net} != gross {record.gross}",
        )
    if any(m.amount < ZERO for m in movements):
        raise InvariantError("money_imbalance", f"Escrow {record.escrow_id}: negative movement")
    moved = sum((m.amount for m in movements), ZERO)
    if moved != record.gross:
        raise InvariantError(
            "money_imbalance",
            f"Escrow {record.escrow_id}: movements {moved} != gross {record.gross}",
        )


def _non_zero(movements: list[Movement]) -> list[Movement]:
    return [m for m in movements if m.amount != ZERO]
