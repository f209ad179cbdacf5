"""Payment gateway abstraction and webhook verification.

The core consumes two gateway operations:
    create_payment_session(amount, currency, metadata) → PaymentSession
    initiate_payout(external_ref, amount, target_account) → Payout

and accepts one ingress: a signed webhook carrying event_type,
external_ref, status and signature. The signature is an HMAC-SHA256,
keyed with a pre-shared secret, over the payload's key=value pairs
sorted by key and joined with "&", excluding the signature itself.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol

from trustwork.errors import AuthorizationError, ExternalError, PreconditionError

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"

# Webhook event types
EVENT_PAYMENT = "payment"
EVENT_PAYOUT = "payout"

# Webhook statuses
STATUS_HELD = "held"
STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"

_VALID_STATUSES = {
    EVENT_PAYMENT: frozenset({STATUS_HELD, STATUS_FAILED}),
    EVENT_PAYOUT: frozenset({STATUS_COMPLETED, STATUS_FAILED}),
}


@dataclass(frozen=True)
class PaymentSession:
    """Hosted payment page the payer completes out-of-band."""
    session_url: str
    external_ref: str


@dataclass(frozen=True)
class Payout:
    """Gateway acknowledgement of a payout request."""
    payout_id: str
    status: str = STATUS_PENDING


class PaymentGateway(Protocol):
    """Protocol for payment processor adapters."""

    def create_payment_session(
        self, amount: Decimal, currency: str, metadata: dict[str, str],
    ) -> PaymentSession:
        """Open a payment session. Raises ExternalError on failure."""
        ...

    def initiate_payout(
        self, external_ref: str, amount: Decimal, target_account: str,
    ) -> Payout:
        """Request a payout. Raises ExternalError on failure."""
        ...


def canonical_payload(fields: Mapping[str, Any]) -> str:
    """Deterministic field ordering used for signing."""
    return "&".join(
        f"{key}={fields[key]}"
        for key in sorted(fields)
        if key != SIGNATURE_FIELD
    )


def sign_payload(fields: Mapping[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_payload(fields).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(fields: Mapping[str, Any], secret: str) -> bool:
    provided = fields.get(SIGNATURE_FIELD)
    if not provided or not secret:
        return False
    return hmac.compare_digest(sign_payload(fields, secret), str(provided))


@dataclass(frozen=True)
class WebhookEvent:
    """A verified gateway notification."""
    event_type: str
    external_ref: str
    status: str
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def receipt_key(self) -> str:
        """Idempotency key: one effect per (external_ref, event_type)."""
        return f"{self.external_ref}:{self.event_type}"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], secret: Optional[str]) -> WebhookEvent:
        """Verify and parse a raw webhook payload.

        Raises:
            AuthorizationError: ``invalid_signature`` if the HMAC does not match.
            PreconditionError: ``invalid_webhook`` for missing or unknown fields.
            ExternalError: ``gateway_error`` when no secret is configured.
        """
        if not secret:
            raise ExternalError("gateway_error", "Webhook secret is not configured")
        if not verify_signature(payload, secret):
            logger.warning("Rejected webhook with invalid signature: %s", payload.get("external_ref"))
            raise AuthorizationError("invalid_signature", "Webhook signature mismatch")
        try:
            event_type = str(payload["event_type"])
            external_ref = str(payload["external_ref"])
            status = str(payload["status"])
        except KeyError as e:
            raise PreconditionError("invalid_webhook", f"Webhook missing field: {e}") from e
        if status not in _VALID_STATUSES.get(event_type, frozenset()):
            raise PreconditionError(
                "invalid_webhook", f"Unsupported webhook {event_type}/{status}",
            )
        return cls(
            event_type=event_type,
            external_ref=external_ref,
            status=status,
            fields={k: str(v) for k, v in payload.items() if k != SIGNATURE_FIELD},
        )


def build_signed_payload(
    event_type: str,
    external_ref: str,
    status: str,
    secret: str,
    **extra: Any,
) -> dict[str, str]:
    """Assemble a signed webhook payload, as the gateway would send it."""
    fields = {
        "event_type": event_type,
        "external_ref": external_ref,
        "status": status,
        **{k: str(v) for k, v in extra.items()},
    }
    fields[SIGNATURE_FIELD] = sign_payload(fields, secret)
    return fields


class SandboxGateway:
    """Deterministic in-process gateway for tests and local runs.

    Knobs:
        session_failures: number of upcoming session calls that fail
            transiently before one succeeds.
        payout_failures: same, for payouts.
        payout_status: status returned for successful payouts
            ("completed" settles synchronously, "pending" waits for a
            payout webhook, "failed" rejects the payout).
    """

    def __init__(
        self,
        base_url: str = "https://sandbox.gateway.local/pay",
        payout_status: str = STATUS_COMPLETED,
    ) -> None:
        self._base_url = base_url
        self.payout_status = payout_status
        self.session_failures = 0
        self.payout_failures = 0
        self.sessions: list[dict[str, Any]] = []
        self.payouts: list[dict[str, Any]] = []
        self._counter = 0

    def create_payment_session(
        self, amount: Decimal, currency: str, metadata: dict[str, str],
    ) -> PaymentSession:
        if self.session_failures > 0:
            self.session_failures -= 1
            raise ExternalError("gateway_unavailable", "Sandbox session failure", transient=True)
        ref = self._next_id("pay")
        self.sessions.append({
            "external_ref": ref, "amount": amount, "currency": currency, "metadata": dict(metadata),
        })
        return PaymentSession(session_url=f"{self._base_url}?ref={ref}", external_ref=ref)

    def initiate_payout(
        self, external_ref: str, amount: Decimal, target_account: str,
    ) -> Payout:
        if self.payout_failures > 0:
            self.payout_failures -= 1
            raise ExternalError("gateway_unavailable", "Sandbox payout failure", transient=True)
        payout_id = self._next_id("po")
        self.payouts.append({
            "payout_id": payout_id,
            "external_ref": external_ref,
            "amount": amount,
            "target_account": target_account,
            "status": self.payout_status,
        })
        return Payout(payout_id=payout_id, status=self.payout_status)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:06d}"
