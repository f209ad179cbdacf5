"""Gig delivery workflow — milestones and transition notifications."""

from trustwork.workflow.milestones import MilestoneEngine
from trustwork.workflow.notifications import InMemoryNotifier, Notification, Notifier

__all__ = ["InMemoryNotifier", "MilestoneEngine", "Notification", "Notifier"]
