from __future__ import annotations

import logging
from typing import Any, List

from markbook.core.marks import (
    ATTENDANCE_FIELD,
    SESSIONAL_FIELD,
    check_mark_range,
    derive_attendance_score,
    parse_mark_input,
)
from markbook.state.marks_store import MarksContext, MarksStore, ScoreRecord, build_store

logger = logging.getLogger(__name__)


def load_marks_store(backend, context: MarksContext) -> MarksStore:
    """Fetch roster, stored marks and attendance from a backend and build the store."""
    roster = backend.list_roster(context.subject_id)
    persisted = backend.list_internal_marks(context.subject_id, context.term)
    attendance = backend.list_attendance(context.subject_id)
    return build_store(context, roster, persisted, attendance)


def _set_mark(store: MarksStore, student_id: str, field: str, raw: Any) -> ScoreRecord:
    record = store.get(student_id)
    value = check_mark_range(field, parse_mark_input(field, raw))
    setattr(record, field, value)
    # Same-value edits are still marked dirty.
    record.mark_dirty()
    return record


def set_sessional_score(store: MarksStore, student_id: str, value: Any) -> ScoreRecord:
    return _set_mark(store, student_id, SESSIONAL_FIELD, value)


def set_attendance_score(store: MarksStore, student_id: str, value: Any) -> ScoreRecord:
    return _set_mark(store, student_id, ATTENDANCE_FIELD, value)


def recalculate_attendance_scores(store: MarksStore) -> List[ScoreRecord]:
    updated: List[ScoreRecord] = []
    for record in store:
        record.attendance_score = derive_attendance_score(record.attendance_percentage)
        record.mark_dirty()
        updated.append(record)
    logger.info(
        "Recalculated attendance marks for %d students in %s/%s",
        len(updated),
        store.context.subject_id,
        store.context.term,
    )
    return updated
