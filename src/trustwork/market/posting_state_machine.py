"""Posting state machine — enforces valid lifecycle transitions.

Posting lifecycle:
    OPEN → IN_PROGRESS → COMPLETED
    OPEN ⇄ FLAGGED
    OPEN / FLAGGED / IN_PROGRESS → CANCELLED

State semantics:
- OPEN: visible to applicants, applications may arrive.
- FLAGGED: hidden by moderation; may be restored to OPEN.
- IN_PROGRESS: an application was accepted; work is under way.
- COMPLETED: terminal. For gigs, every milestone is paid or settled.
- CANCELLED: terminal. Withdrawn by the owner or an admin.

Fail-closed: invalid transitions return errors. There are no implicit
transitions.
"""

from __future__ import annotations

from trustwork.models.posting import Posting, PostingStatus


# Valid transitions: {from_status: {allowed_to_statuses}}
_TRANSITIONS: dict[PostingStatus, set[PostingStatus]] = {
    PostingStatus.OPEN: {
        PostingStatus.IN_PROGRESS,
        PostingStatus.FLAGGED,
        PostingStatus.CANCELLED,
    },
    PostingStatus.FLAGGED: {PostingStatus.OPEN, PostingStatus.CANCELLED},
    PostingStatus.IN_PROGRESS: {
        PostingStatus.COMPLETED,
        PostingStatus.CANCELLED,
    },
    # Terminal states: no outgoing transitions
    PostingStatus.COMPLETED: set(),
    PostingStatus.CANCELLED: set(),
}


class PostingStateMachine:
    """Validates and applies posting status transitions.

    Pure computation: validates transitions only. Side effects (history,
    audit events, persistence) are handled by the caller.
    """

    @staticmethod
    def validate_transition(
        posting: Posting,
        target: PostingStatus,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = posting.status
        allowed = PostingStateMachine.valid_transitions(current)

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid posting transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def apply_transition(
        posting: Posting,
        target: PostingStatus,
    ) -> list[str]:
        """Validate and apply a status transition.

        Returns errors if transition is invalid. On success,
        mutates posting.status and returns empty list.
        """
        errors = PostingStateMachine.validate_transition(posting, target)
        if errors:
            return errors
        posting.status = target
        return []

    @staticmethod
    def is_terminal(status: PostingStatus) -> bool:
        """Check if a status is terminal (no further transitions)."""
        return status in (PostingStatus.COMPLETED, PostingStatus.CANCELLED)

    @staticmethod
    def accepts_applications(status: PostingStatus) -> bool:
        """Only OPEN postings take new applications."""
        return status == PostingStatus.OPEN

    @staticmethod
    def valid_transitions(status: PostingStatus) -> set[PostingStatus]:
        """Return the set of valid target statuses from the given status."""
        return set(_TRANSITIONS.get(status, set()))
