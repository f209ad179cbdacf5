"""Authorization predicates.

Every public operation evaluates one or more of these against the
caller before touching state. Each predicate raises AuthorizationError
with a stable code; none of them read from storage.
"""

from __future__ import annotations

from typing import Iterable

from trustwork.errors import AuthorizationError
from trustwork.models.identity import Caller, Role


def require_role(caller: Caller, *roles: Role) -> None:
    """Caller must hold one of ``roles``."""
    if caller.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise AuthorizationError(
            "forbidden_role",
            f"Role {caller.role.value} may not perform this action (allowed: {allowed})",
        )


def require_admin(caller: Caller) -> None:
    require_role(caller, Role.ADMIN)


def require_owner_or_admin(caller: Caller, owner_id: str) -> None:
    """Caller must own the resource or be an admin."""
    if caller.is_admin or caller.user_id == owner_id:
        return
    raise AuthorizationError("not_owner", "Only the owner or an admin may do this")


def require_self(caller: Caller, user_id: str) -> None:
    """Caller must be exactly ``user_id``. Admins are not exempt."""
    if caller.user_id != user_id:
        raise AuthorizationError("not_owner", "Only the record's author may do this")


def require_party(caller: Caller, party_ids: Iterable[str], allow_admin: bool = True) -> None:
    """Caller must be one of ``party_ids`` (or an admin when allowed)."""
    if allow_admin and caller.is_admin:
        return
    if caller.user_id not in set(party_ids):
        raise AuthorizationError("not_owner", "Caller is not a party to this record")


def can_view_attempt(caller: Caller, applicant_id: str, posting_owner_id: str) -> bool:
    """Attempts are visible to their author, the posting owner and admins."""
    return (
        caller.is_admin
        or caller.user_id == applicant_id
        or caller.user_id == posting_owner_id
    )
