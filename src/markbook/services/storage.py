from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from markbook.state.marks_store import PersistedMarks, RosterEntry

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class Storage:
    """SQLite backend for rosters, attendance summaries and internal marks."""

    def __init__(self, db_path: str = "markbook.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        # Guards the shared connection; a transaction spans every thread using it.
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS students (
              id TEXT PRIMARY KEY,
              enrollment_id TEXT NOT NULL DEFAULT '',
              name TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS subject_enrollments (
              subject_id TEXT NOT NULL,
              student_id TEXT NOT NULL,
              PRIMARY KEY(subject_id, student_id),
              FOREIGN KEY(student_id) REFERENCES students(id)
            );

            CREATE TABLE IF NOT EXISTS attendance_summary (
              subject_id TEXT NOT NULL,
              student_id TEXT NOT NULL,
              attendance_percentage REAL NOT NULL,
              PRIMARY KEY(subject_id, student_id),
              FOREIGN KEY(student_id) REFERENCES students(id)
            );

            CREATE TABLE IF NOT EXISTS internal_marks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id TEXT NOT NULL,
              subject_id TEXT NOT NULL,
              term TEXT NOT NULL,
              faculty_id TEXT,
              sessional_mark REAL NOT NULL,
              attendance_mark REAL NOT NULL,
              total_mark REAL NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(student_id, subject_id, term),
              FOREIGN KEY(student_id) REFERENCES students(id)
            );
            """
        )
        self.conn.commit()

    def _write(self, sql: str, params: tuple) -> None:
        with self._lock:
            self.conn.execute(sql, params)
            self.conn.commit()

    def _fetch_all(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            return list(cur.fetchall())

    def add_student(self, student_id: str, enrollment_id: str = "", name: str = "") -> None:
        self._write(
            """INSERT INTO students(id, enrollment_id, name) VALUES(?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                   enrollment_id=excluded.enrollment_id,
                   name=excluded.name""",
            (student_id, enrollment_id, name),
        )

    def enroll_student(self, subject_id: str, student_id: str) -> None:
        self._write(
            "INSERT OR IGNORE INTO subject_enrollments(subject_id, student_id) VALUES(?, ?)",
            (subject_id, student_id),
        )

    def set_attendance_percentage(self, subject_id: str, student_id: str, percentage: float) -> None:
        self._write(
            """INSERT INTO attendance_summary(subject_id, student_id, attendance_percentage)
               VALUES(?,?,?)
               ON CONFLICT(subject_id, student_id) DO UPDATE SET
                   attendance_percentage=excluded.attendance_percentage""",
            (subject_id, student_id, percentage),
        )

    def list_roster(self, subject_id: str) -> list[RosterEntry]:
        rows = self._fetch_all(
            """SELECT s.id, s.enrollment_id, s.name
               FROM subject_enrollments e JOIN students s ON s.id=e.student_id
               WHERE e.subject_id=?
               ORDER BY s.enrollment_id, s.id""",
            (subject_id,),
        )
        return [RosterEntry(row["id"], row["enrollment_id"], row["name"]) for row in rows]

    def list_attendance(self, subject_id: str) -> dict[str, float]:
        rows = self._fetch_all(
            "SELECT student_id, attendance_percentage FROM attendance_summary WHERE subject_id=?",
            (subject_id,),
        )
        return {row["student_id"]: float(row["attendance_percentage"]) for row in rows}

    def list_internal_marks(self, subject_id: str, term: str) -> list[PersistedMarks]:
        rows = self._fetch_all(
            """SELECT * FROM internal_marks
               WHERE subject_id=? AND term=?
               ORDER BY updated_at DESC""",
            (subject_id, term),
        )
        return [
            PersistedMarks(
                student_id=row["student_id"],
                persisted_id=str(row["id"]),
                sessional_score=float(row["sessional_mark"]),
                attendance_score=float(row["attendance_mark"]),
                total_score=float(row["total_mark"]),
            )
            for row in rows
        ]

    def save_internal_marks(self, requests: Sequence) -> dict[str, str]:
        """Write a batch in one transaction; returns student_id -> record id."""
        now = datetime.now(timezone.utc).isoformat()
        assigned: dict[str, str] = {}
        try:
            with self._lock, self.conn:
                for req in requests:
                    if abs(req.sessional_score + req.attendance_score - req.total_score) > 1e-6:
                        raise StorageError(f"Total does not match components for student {req.student_id}")
                    if req.persisted_id is not None:
                        cur = self.conn.execute(
                            """UPDATE internal_marks
                               SET sessional_mark=?, attendance_mark=?, total_mark=?, faculty_id=?, updated_at=?
                               WHERE id=?""",
                            (
                                req.sessional_score,
                                req.attendance_score,
                                req.total_score,
                                req.faculty_id,
                                now,
                                int(req.persisted_id),
                            ),
                        )
                        if cur.rowcount == 0:
                            raise StorageError(f"Internal marks record {req.persisted_id} not found")
                        assigned[req.student_id] = str(req.persisted_id)
                        continue

                    self.conn.execute(
                        """INSERT INTO internal_marks(
                               student_id, subject_id, term, faculty_id,
                               sessional_mark, attendance_mark, total_mark, updated_at)
                           VALUES(?,?,?,?,?,?,?,?)
                           ON CONFLICT(student_id, subject_id, term) DO UPDATE SET
                               faculty_id=excluded.faculty_id,
                               sessional_mark=excluded.sessional_mark,
                               attendance_mark=excluded.attendance_mark,
                               total_mark=excluded.total_mark,
                               updated_at=excluded.updated_at""",
                        (
                            req.student_id,
                            req.subject_id,
                            req.term,
                            req.faculty_id,
                            req.sessional_score,
                            req.attendance_score,
                            req.total_score,
                            now,
                        ),
                    )
                    row = self.conn.execute(
                        "SELECT id FROM internal_marks WHERE student_id=? AND subject_id=? AND term=?",
                        (req.student_id, req.subject_id, req.term),
                    ).fetchone()
                    assigned[req.student_id] = str(row["id"])
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

        logger.debug("Wrote %d internal marks rows to %s", len(assigned), self.db_path)
        return assigned
