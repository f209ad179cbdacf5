"""Core data models for the gig lifecycle."""

from trustwork.models.application import Application, ApplicationStatus
from trustwork.models.dispute import Dispute, DisputeReason, DisputeStatus, Verdict, VerdictKind
from trustwork.models.escrow import EscrowPayment, EscrowState, Movement, PendingIntent
from trustwork.models.history import StatusChange
from trustwork.models.identity import Caller, Role
from trustwork.models.milestone import Deliverable, Milestone, MilestoneSpec, MilestoneStatus
from trustwork.models.posting import Posting, PostingKind, PostingStatus, SkillTestRequirement
from trustwork.models.review import RatingAggregate, Review
from trustwork.models.skill_test import (
    AttemptStatus,
    Difficulty,
    Question,
    SkillTestAttempt,
    SkillTestTemplate,
)

__all__ = [
    "Application",
    "ApplicationStatus",
    "AttemptStatus",
    "Caller",
    "Deliverable",
    "Difficulty",
    "Dispute",
    "DisputeReason",
    "DisputeStatus",
    "EscrowPayment",
    "EscrowState",
    "Milestone",
    "MilestoneSpec",
    "MilestoneStatus",
    "Movement",
    "PendingIntent",
    "Posting",
    "PostingKind",
    "PostingStatus",
    "Question",
    "RatingAggregate",
    "Review",
    "Role",
    "SkillTestAttempt",
    "SkillTestRequirement",
    "SkillTestTemplate",
    "StatusChange",
    "Verdict",
    "VerdictKind",
]
