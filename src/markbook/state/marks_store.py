from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from markbook.core.marks import (
    ATTENDANCE_FIELD,
    SESSIONAL_FIELD,
    check_mark_range,
    derive_attendance_score,
    grade_from_total,
)

logger = logging.getLogger(__name__)

TOTAL_TOLERANCE = 1e-6


class StudentNotFoundError(LookupError):
    def __init__(self, student_id: str) -> None:
        super().__init__(f"Student {student_id} is not on this roster")
        self.student_id = student_id


@dataclass(frozen=True)
class MarksContext:
    subject_id: str
    term: str
    faculty_id: Optional[str] = None


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    enrollment_id: str = ""
    name: str = ""


@dataclass(frozen=True)
class PersistedMarks:
    student_id: str
    persisted_id: str
    sessional_score: float
    attendance_score: float
    total_score: float


@dataclass
class ScoreRecord:
    student_id: str
    sessional_score: float = 0.0
    attendance_score: float = 0.0
    attendance_percentage: float = 0.0
    persisted_id: Optional[str] = None
    dirty: bool = False
    revision: int = 0

    @property
    def total_score(self) -> float:
        return self.sessional_score + self.attendance_score

    @property
    def grade(self) -> str:
        return grade_from_total(self.total_score)

    def mark_dirty(self) -> None:
        self.dirty = True
        self.revision += 1

    def to_dict(self) -> Dict:
        return {
            "student_id": self.student_id,
            "sessional_score": self.sessional_score,
            "attendance_score": self.attendance_score,
            "total_score": self.total_score,
            "attendance_percentage": self.attendance_percentage,
            "grade": self.grade,
            "persisted_id": self.persisted_id,
            "dirty": self.dirty,
        }


@dataclass
class MarksStore:
    context: MarksContext
    records: Dict[str, ScoreRecord] = field(default_factory=dict)
    roster: Dict[str, RosterEntry] = field(default_factory=dict)

    def __iter__(self) -> Iterator[ScoreRecord]:
        return iter(self.records.values())

    def __len__(self) -> int:
        return len(self.records)

    def get(self, student_id: str) -> ScoreRecord:
        try:
            return self.records[student_id]
        except KeyError as exc:
            raise StudentNotFoundError(student_id) from exc

    def dirty_records(self) -> List[ScoreRecord]:
        return [record for record in self.records.values() if record.dirty]

    @property
    def has_unsaved_changes(self) -> bool:
        return any(record.dirty for record in self.records.values())

    def rows(self) -> List[Dict]:
        results = []
        for record in self.records.values():
            entry = self.roster[record.student_id]
            row = record.to_dict()
            row["enrollment_id"] = entry.enrollment_id
            row["name"] = entry.name
            results.append(row)
        return results


def build_store(
    context: MarksContext,
    roster: Iterable[RosterEntry],
    persisted: Iterable[PersistedMarks],
    attendance: Mapping[str, float],
) -> MarksStore:
    """
    Build the store for one (subject, term) selection.

    Students with stored marks keep them; everyone else starts at a sessional
    score of 0 and an attendance score derived from their percentage. Nothing
    is dirty after a build.
    """
    store = MarksStore(context=context)
    for entry in roster:
        if entry.student_id in store.roster:
            raise ValueError(f"Duplicate student on roster: {entry.student_id}")
        store.roster[entry.student_id] = entry

    stored_by_student: Dict[str, PersistedMarks] = {}
    for row in persisted:
        if row.student_id not in store.roster:
            logger.warning(
                "Ignoring stored marks %s for student %s who is not on the roster of %s/%s",
                row.persisted_id,
                row.student_id,
                context.subject_id,
                context.term,
            )
            continue
        if row.student_id in stored_by_student:
            logger.warning("Ignoring duplicate stored marks %s for student %s", row.persisted_id, row.student_id)
            continue
        stored_by_student[row.student_id] = row

    for student_id in store.roster:
        percentage = float(attendance.get(student_id, 0.0))
        stored = stored_by_student.get(student_id)
        if stored is None:
            record = ScoreRecord(
                student_id=student_id,
                attendance_score=derive_attendance_score(percentage),
                attendance_percentage=percentage,
            )
        else:
            record = ScoreRecord(
                student_id=student_id,
                sessional_score=check_mark_range(SESSIONAL_FIELD, float(stored.sessional_score)),
                attendance_score=check_mark_range(ATTENDANCE_FIELD, float(stored.attendance_score)),
                attendance_percentage=percentage,
                persisted_id=stored.persisted_id,
            )
            if abs(record.total_score - float(stored.total_score)) > TOTAL_TOLERANCE:
                logger.warning(
                    "Stored total %s for student %s disagrees with its components; using %s",
                    stored.total_score,
                    student_id,
                    record.total_score,
                )
        store.records[student_id] = record

    logger.info(
        "Loaded %d students for %s/%s (%d with stored marks)",
        len(store),
        context.subject_id,
        context.term,
        len(stored_by_student),
    )
    return store
