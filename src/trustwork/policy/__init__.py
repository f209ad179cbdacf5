"""Platform configuration."""

from trustwork.policy.resolver import PolicyResolver, RetryPolicy

__all__ = ["PolicyResolver", "RetryPolicy"]
