from __future__ import annotations

import re
from typing import Mapping, Optional

import pandas as pd

EXPORT_COLUMNS = [
    "Enrollment ID",
    "Name",
    "Sessional Marks",
    "Attendance Marks",
    "Total Internal Marks",
    "Attendance %",
    "Semester",
]


def _format_percentage(value: float) -> str:
    return f"{float(value):g}%"


def export_csv(store, attendance_lookup: Optional[Mapping[str, float]] = None) -> str:
    rows = []
    for record in store:
        entry = store.roster[record.student_id]
        percentage = record.attendance_percentage
        if attendance_lookup is not None:
            percentage = attendance_lookup.get(record.student_id, percentage)
        rows.append(
            [
                entry.enrollment_id or record.student_id,
                entry.name,
                record.sessional_score,
                record.attendance_score,
                record.total_score,
                _format_percentage(percentage),
                store.context.term,
            ]
        )

    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    return df.to_csv(index=False, lineterminator="\n")


def export_filename(subject_name: str, term: str) -> str:
    def _safe(text: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]+", "_", text.strip()) or "Subject"

    return f"Internal_Marks_{_safe(subject_name)}_{_safe(term)}.csv"
