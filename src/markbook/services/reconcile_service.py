from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import ContextManager, Dict, Mapping, Optional, Tuple

from markbook.state.marks_store import MarksContext, MarksStore

logger = logging.getLogger(__name__)


class MarksPersistenceError(Exception):
    def __init__(self, message: str, student_ids: Tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.student_ids = student_ids


@dataclass(frozen=True)
class SaveRequest:
    student_id: str
    persisted_id: Optional[str]
    sessional_score: float
    attendance_score: float
    total_score: float
    subject_id: str
    term: str
    faculty_id: Optional[str] = None

    @property
    def is_create(self) -> bool:
        return self.persisted_id is None

    def to_payload(self) -> Dict:
        return {
            "student_id": self.student_id,
            "subject_id": self.subject_id,
            "term": self.term,
            "faculty_id": self.faculty_id,
            "sessional_mark": self.sessional_score,
            "attendance_mark": self.attendance_score,
            "total_mark": self.total_score,
        }


@dataclass(frozen=True)
class SaveBatch:
    context: MarksContext
    requests: Tuple[SaveRequest, ...]
    revisions: Dict[str, int] = field(default_factory=dict)

    @property
    def student_ids(self) -> Tuple[str, ...]:
        return tuple(req.student_id for req in self.requests)


@dataclass(frozen=True)
class ReconcileResult:
    saved: Tuple[str, ...] = ()
    created: Dict[str, str] = field(default_factory=dict)
    still_dirty: Tuple[str, ...] = ()

    @property
    def no_changes(self) -> bool:
        return not self.saved

    def to_dict(self) -> Dict:
        return {
            "status": "no_changes" if self.no_changes else "saved",
            "count": len(self.saved),
            "saved": list(self.saved),
            "created": dict(self.created),
            "still_dirty": list(self.still_dirty),
        }


def snapshot_dirty(store: MarksStore, context: Optional[MarksContext] = None) -> Optional[SaveBatch]:
    """Copy the dirty records into save requests; None when nothing is dirty."""
    ctx = context or store.context
    requests = []
    revisions: Dict[str, int] = {}
    for record in store.dirty_records():
        requests.append(
            SaveRequest(
                student_id=record.student_id,
                persisted_id=record.persisted_id,
                sessional_score=record.sessional_score,
                attendance_score=record.attendance_score,
                total_score=record.total_score,
                subject_id=ctx.subject_id,
                term=ctx.term,
                faculty_id=ctx.faculty_id,
            )
        )
        revisions[record.student_id] = record.revision
    if not requests:
        return None
    return SaveBatch(context=ctx, requests=tuple(requests), revisions=revisions)


def apply_saved(store: MarksStore, batch: SaveBatch, assigned: Mapping[str, str]) -> ReconcileResult:
    missing = [req.student_id for req in batch.requests if req.is_create and not assigned.get(req.student_id)]
    if missing:
        raise MarksPersistenceError(
            f"Storage did not return record ids for: {', '.join(missing)}",
            batch.student_ids,
        )

    created: Dict[str, str] = {}
    still_dirty = []
    for req in batch.requests:
        record = store.get(req.student_id)
        if req.is_create:
            record.persisted_id = str(assigned[req.student_id])
            created[req.student_id] = record.persisted_id
        if record.revision == batch.revisions[req.student_id]:
            record.dirty = False
        else:
            still_dirty.append(req.student_id)

    return ReconcileResult(saved=batch.student_ids, created=created, still_dirty=tuple(still_dirty))


def reconcile(
    store: MarksStore,
    sink,
    context: Optional[MarksContext] = None,
    lock: Optional[ContextManager] = None,
) -> ReconcileResult:
    """
    Save the dirty records through `sink`.

    `lock` guards the store while the batch is copied and while the result is
    applied; it is not held during the sink call, so edits can continue.
    """
    guard = lock if lock is not None else nullcontext()
    with guard:
        batch = snapshot_dirty(store, context)
    if batch is None:
        return ReconcileResult()

    try:
        assigned = sink.save_internal_marks(list(batch.requests))
    except Exception as exc:
        logger.error(
            "Saving internal marks for %d students in %s/%s failed: %s",
            len(batch.requests),
            batch.context.subject_id,
            batch.context.term,
            exc,
        )
        raise MarksPersistenceError(
            f"Storage did not confirm the batch; {len(batch.requests)} records remain pending, retry to save them: {exc}",
            batch.student_ids,
        ) from exc

    with guard:
        result = apply_saved(store, batch, assigned or {})
    logger.info(
        "Saved internal marks for %d students in %s/%s (%d new)",
        len(result.saved),
        batch.context.subject_id,
        batch.context.term,
        len(result.created),
    )
    return result
