import unittest

from markbook.core.marks import InvalidMarkError, OutOfRangeError
from markbook.services.marks_service import (
    recalculate_attendance_scores,
    set_attendance_score,
    set_sessional_score,
)
from markbook.state.marks_store import (
    MarksContext,
    PersistedMarks,
    RosterEntry,
    StudentNotFoundError,
    build_store,
)


def _store(persisted=()):
    return build_store(
        MarksContext("SUB1", "Fall 2023", faculty_id="F1"),
        [RosterEntry("S1", "ENR001", "Asha Rao"), RosterEntry("S2", "ENR002", "Ben Ode"), RosterEntry("S3")],
        list(persisted),
        {"S1": 90, "S2": 40},
    )


def _snapshot(record):
    return (record.sessional_score, record.attendance_score, record.total_score, record.dirty, record.revision)


class BuildStoreTests(unittest.TestCase):
    def test_seeds_from_attendance(self):
        store = _store()
        self.assertEqual([r.student_id for r in store], ["S1", "S2", "S3"])
        self.assertEqual(store.get("S1").attendance_score, 27.0)
        self.assertEqual(store.get("S2").attendance_score, 12.0)
        self.assertEqual(store.get("S3").attendance_score, 0.0)
        self.assertEqual(store.get("S3").attendance_percentage, 0.0)
        self.assertFalse(store.has_unsaved_changes)

    def test_seeds_from_stored_marks(self):
        store = _store([PersistedMarks("S2", "7", 50.0, 20.0, 70.0)])
        record = store.get("S2")
        self.assertEqual(record.persisted_id, "7")
        self.assertEqual(record.attendance_score, 20.0)
        self.assertEqual(record.total_score, 70.0)
        self.assertEqual(record.attendance_percentage, 40)
        self.assertFalse(record.dirty)

    def test_stored_zero_attendance_is_kept(self):
        store = _store([PersistedMarks("S1", "3", 10.0, 0.0, 10.0)])
        self.assertEqual(store.get("S1").attendance_score, 0.0)

    def test_total_recomputed_from_components(self):
        with self.assertLogs("markbook.state.marks_store", level="WARNING"):
            store = _store([PersistedMarks("S1", "3", 10.0, 5.0, 99.0)])
        self.assertEqual(store.get("S1").total_score, 15.0)

    def test_orphan_stored_marks_ignored(self):
        with self.assertLogs("markbook.state.marks_store", level="WARNING"):
            store = _store([PersistedMarks("GONE", "9", 10.0, 5.0, 15.0)])
        self.assertNotIn("GONE", store.records)
        self.assertEqual(len(store), 3)

    def test_out_of_range_stored_marks_rejected(self):
        with self.assertRaises(OutOfRangeError):
            _store([PersistedMarks("S1", "3", 80.0, 5.0, 85.0)])

    def test_duplicate_roster_rejected(self):
        with self.assertRaises(ValueError):
            build_store(MarksContext("SUB1", "T"), [RosterEntry("S1"), RosterEntry("S1")], [], {})


class MutationTests(unittest.TestCase):
    def test_set_sessional_updates_total_and_dirty(self):
        store = _store()
        record = set_sessional_score(store, "S1", 65)
        self.assertEqual(record.total_score, 92.0)
        self.assertEqual(record.grade, "A+")
        self.assertTrue(record.dirty)
        self.assertFalse(store.get("S2").dirty)

    def test_set_attendance_override(self):
        store = _store()
        record = set_attendance_score(store, "S2", "29.5")
        self.assertEqual(record.attendance_score, 29.5)
        self.assertEqual(record.total_score, 29.5)
        self.assertTrue(record.dirty)

    def test_rejection_leaves_record_unchanged(self):
        store = _store()
        set_sessional_score(store, "S1", 20)
        before = _snapshot(store.get("S1"))
        for bad in (-1, 71):
            with self.assertRaises(OutOfRangeError):
                set_sessional_score(store, "S1", bad)
            self.assertEqual(_snapshot(store.get("S1")), before)
        with self.assertRaises(OutOfRangeError):
            set_attendance_score(store, "S1", 31)
        with self.assertRaises(InvalidMarkError):
            set_sessional_score(store, "S1", "sixty")
        self.assertEqual(_snapshot(store.get("S1")), before)

    def test_cleared_field_sets_zero(self):
        store = _store()
        set_sessional_score(store, "S1", 40)
        record = set_sessional_score(store, "S1", "")
        self.assertEqual(record.sessional_score, 0.0)
        self.assertEqual(record.total_score, 27.0)

    def test_same_value_edit_marks_dirty(self):
        store = _store()
        record = set_attendance_score(store, "S1", 27.0)
        self.assertTrue(record.dirty)

    def test_unknown_student(self):
        with self.assertRaises(StudentNotFoundError):
            set_sessional_score(_store(), "NOPE", 10)

    def test_recalculate_overwrites_and_marks_all_dirty(self):
        store = _store()
        set_attendance_score(store, "S1", 5)
        set_sessional_score(store, "S2", 30)
        updated = recalculate_attendance_scores(store)
        self.assertEqual(len(updated), 3)
        self.assertEqual(store.get("S1").attendance_score, 27.0)
        self.assertEqual(store.get("S2").total_score, 42.0)
        self.assertTrue(all(r.dirty for r in store))

    def test_total_invariant_holds_through_edits(self):
        store = _store()
        set_sessional_score(store, "S1", 70)
        set_attendance_score(store, "S2", 0)
        set_sessional_score(store, "S3", 33.3)
        recalculate_attendance_scores(store)
        for record in store:
            self.assertEqual(record.total_score, record.sessional_score + record.attendance_score)
            self.assertTrue(0 <= record.sessional_score <= 70)
            self.assertTrue(0 <= record.attendance_score <= 30)


if __name__ == "__main__":
    unittest.main()
