"""Versioned state store — one collection per entity.

Every record carries a ``version``. Reads hand out detached copies, so a
caller can mutate freely and nothing is visible to anyone else until
``commit``. A commit checks every staged record's observed version under
the store lock: a stale or duplicate write raises ConflictError and
nothing is written. The ``on_commit`` hook (used for the audit log) runs
under the same lock, after the checks and before the writes; if it
raises, nothing is written either.

With a storage path the full state is rewritten as JSON after each
commit (temp file + rename). A failed file write does not undo the
in-memory commit; it is reported back as a warning.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from trustwork.errors import ConflictError, NotFoundError
from trustwork.models.application import Application
from trustwork.models.dispute import Dispute
from trustwork.models.escrow import EscrowPayment, WebhookReceipt
from trustwork.models.milestone import Milestone
from trustwork.models.posting import Posting
from trustwork.models.review import RatingAggregate, Review
from trustwork.models.skill_test import SkillTestAttempt
from trustwork.persistence.codec import decode, encode

logger = logging.getLogger(__name__)

T = TypeVar("T")

POSTINGS = "postings"
ATTEMPTS = "skill_test_attempts"
APPLICATIONS = "applications"
MILESTONES = "milestones"
ESCROWS = "escrow_payments"
DISPUTES = "disputes"
REVIEWS = "reviews"
AGGREGATES = "rating_aggregates"
WEBHOOK_RECEIPTS = "webhook_receipts"

# collection → (record type, id attribute)
COLLECTIONS: dict[str, tuple[type, str]] = {
    POSTINGS: (Posting, "posting_id"),
    ATTEMPTS: (SkillTestAttempt, "attempt_id"),
    APPLICATIONS: (Application, "application_id"),
    MILESTONES: (Milestone, "milestone_id"),
    ESCROWS: (EscrowPayment, "escrow_id"),
    DISPUTES: (Dispute, "dispute_id"),
    REVIEWS: (Review, "review_id"),
    AGGREGATES: (RatingAggregate, "user_id"),
    WEBHOOK_RECEIPTS: (WebhookReceipt, "receipt_key"),
}


class UnitOfWork:
    """Records staged for a single atomic commit."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._staged: dict[tuple[str, str], Any] = {}

    def stage(self, collection: str, record: Any) -> None:
        """Stage ``record`` (a copy previously read, or a new record)."""
        record_id = self._store.record_id(collection, record)
        self._staged[(collection, record_id)] = record

    def stage_all(self, collection: str, records: Iterable[Any]) -> None:
        for record in records:
            self.stage(collection, record)

    @property
    def staged(self) -> list[tuple[str, Any]]:
        return [(collection, record) for (collection, _), record in self._staged.items()]

    def commit(self, on_commit: Optional[Callable[[], None]] = None) -> Optional[str]:
        return self._store.commit(self.staged, on_commit)


class StateStore:
    """In-memory versioned store with optional JSON file persistence.

    Usage:
        store = StateStore(storage_path=Path("data/state.json"))
        posting = store.require(POSTINGS, "post_1")
        posting.title = "New"
        uow = store.begin()
        uow.stage(POSTINGS, posting)
        warning = uow.commit()
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, Any]] = {name: {} for name in COLLECTIONS}
        self._storage_path = storage_path
        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    @staticmethod
    def record_id(collection: str, record: Any) -> str:
        _, id_attr = COLLECTIONS[collection]
        return getattr(record, id_attr)

    def begin(self) -> UnitOfWork:
        return UnitOfWork(self)

    def get(self, collection: str, record_id: str) -> Optional[Any]:
        """Detached copy of a record, or None."""
        with self._lock:
            record = self._data[collection].get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def require(self, collection: str, record_id: str) -> Any:
        record = self.get(collection, record_id)
        if record is None:
            raise NotFoundError(collection.rstrip("s").replace("_", " "), record_id)
        return record

    def find(
        self,
        collection: str,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list[Any]:
        """Detached copies of every record matching ``predicate``."""
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._data[collection].values()
                if predicate is None or predicate(r)
            ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._data[collection])

    def commit(
        self,
        staged: list[tuple[str, Any]],
        on_commit: Optional[Callable[[], None]] = None,
    ) -> Optional[str]:
        """Atomically write ``staged`` records.

        Returns a persistence warning string, or None.

        Raises:
            ConflictError: a staged record's version is stale, or a new
                record's id is already taken.
        """
        with self._lock:
            for collection, record in staged:
                record_id = self.record_id(collection, record)
                current = self._data[collection].get(record_id)
                if current is None:
                    if record.version != 0:
                        raise ConflictError(f"{collection}/{record_id} no longer exists")
                elif record.version == 0 or current.version != record.version:
                    raise ConflictError(
                        f"{collection}/{record_id} was modified concurrently "
                        f"(observed v{record.version}, current v{current.version})"
                    )

            if on_commit is not None:
                on_commit()

            for collection, record in staged:
                record.version += 1
                self._data[collection][self.record_id(collection, record)] = copy.deepcopy(record)
            return self._safe_save()

    def snapshot(self) -> dict[str, Any]:
        """Encoded copy of the full state."""
        with self._lock:
            return {
                name: {rid: encode(r) for rid, r in sorted(records.items())}
                for name, records in self._data.items()
            }

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _safe_save(self) -> Optional[str]:
        if self._storage_path is None:
            return None
        try:
            self._save_to_file(self._storage_path)
            return None
        except OSError as e:
            logger.error("State persistence failed: %s", e)
            return f"Persistence degraded: {e}; state committed in memory but the state file is stale"

    def _save_to_file(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self.snapshot(), f, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(tmp, path)

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        for name, records in raw.items():
            if name not in COLLECTIONS:
                raise ValueError(f"Unknown collection in state file: {name}")
            record_type, _ = COLLECTIONS[name]
            self._data[name] = {rid: decode(record_type, data) for rid, data in records.items()}
