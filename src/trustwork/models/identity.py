"""Identity models — caller identity and role tags.

The identity collaborator resolves every request to a Caller. The core
never authenticates; it only evaluates authorization predicates against
the caller's role and the resource's ownership.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Role(str, enum.Enum):
    """Role tag attached to every caller."""
    EMPLOYER = "employer"
    JOB_SEEKER = "job_seeker"
    ADMIN = "admin"


SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Caller:
    """The resolved identity of the current caller."""
    user_id: str
    role: Role
    verified_flags: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def is_verified(self, flag: str) -> bool:
        return flag in self.verified_flags
