"""Error taxonomy for the gig lifecycle core.

Every failure surfaced by an engine carries a stable ``code`` and a
``kind``. The service facade converts these into failed ServiceResults;
nothing else in the core catches them.

Kinds:
    authorization — caller lacks role or ownership.
    precondition  — the state machine disallows the operation.
    conflict      — optimistic concurrency lost; retry after refresh.
    external      — gateway or storage reported a failure.
    invariant     — internal accounting broke; abort the unit of work.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Classification of core errors."""
    AUTHORIZATION = "authorization"
    PRECONDITION = "precondition"
    CONFLICT = "conflict"
    EXTERNAL = "external"
    INVARIANT = "invariant"


class TrustWorkError(ValueError):
    """Base class for all core errors."""

    kind: ErrorKind = ErrorKind.PRECONDITION

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message or code
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AuthorizationError(TrustWorkError):
    kind = ErrorKind.AUTHORIZATION


class PreconditionError(TrustWorkError):
    kind = ErrorKind.PRECONDITION


class ConflictError(TrustWorkError):
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str = "Record was modified concurrently") -> None:
        super().__init__("conflict", message)


class ExternalError(TrustWorkError):
    """Gateway or storage failure.

    ``transient`` marks failures that are safe to retry.
    """
    kind = ErrorKind.EXTERNAL

    def __init__(self, code: str, message: str = "", transient: bool = False) -> None:
        super().__init__(code, message)
        self.transient = transient


class InvariantError(TrustWorkError):
    kind = ErrorKind.INVARIANT


class NotFoundError(PreconditionError):
    """Lookup of an unknown entity id."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__("not_found", f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id
