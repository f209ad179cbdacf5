"""Compensation subsystem — fees, escrow ledger, gateway abstraction, retry."""

from trustwork.compensation.escrow import EscrowLedger
from trustwork.compensation.gateway import PaymentGateway, SandboxGateway, WebhookEvent

__all__ = ["EscrowLedger", "PaymentGateway", "SandboxGateway", "WebhookEvent"]
