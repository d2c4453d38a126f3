import unittest

from fastapi.testclient import TestClient

from markbook.app import app, get_app_state, get_backend
from markbook.services.storage import Storage
from markbook.state.app_state import AppState

HEADERS = {"x-user-id": "F1"}


def _seeded_storage():
    storage = Storage(":memory:")
    for student_id, enrollment_id, name in (("S1", "ENR001", "Asha"), ("S2", "ENR002", "Ben")):
        storage.add_student(student_id, enrollment_id, name)
        storage.enroll_student("SUB1", student_id)
    storage.set_attendance_percentage("SUB1", "S1", 90)
    storage.set_attendance_percentage("SUB1", "S2", 40)
    return storage


class MarksApiTests(unittest.TestCase):
    def setUp(self):
        self.storage = _seeded_storage()
        self.state = AppState()
        app.dependency_overrides[get_backend] = lambda: self.storage
        app.dependency_overrides[get_app_state] = lambda: self.state
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()

    def _open(self, **extra):
        payload = {"subject_id": "SUB1", "term": "Fall 2023", **extra}
        return self.client.post("/marks/session", json=payload, headers=HEADERS)

    def test_requires_user(self):
        self.assertEqual(self.client.get("/marks").status_code, 401)
        self.assertEqual(self.client.get("/marks", headers=HEADERS).status_code, 404)

    def test_open_session_seeds_records(self):
        res = self._open()
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertFalse(body["has_unsaved_changes"])
        self.assertEqual([r["student_id"] for r in body["records"]], ["S1", "S2"])
        self.assertEqual(body["records"][0]["attendance_score"], 27.0)
        self.assertEqual(body["records"][0]["name"], "Asha")

    def test_edit_save_and_reload(self):
        self._open()
        res = self.client.patch("/marks/S1/sessional", json={"value": 65}, headers=HEADERS)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["total_score"], 92.0)
        self.assertEqual(res.json()["grade"], "A+")

        res = self.client.post("/marks/save", headers=HEADERS)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["saved"], ["S1"])
        self.assertEqual(res.json()["status"], "saved")

        res = self.client.post("/marks/save", headers=HEADERS)
        self.assertEqual(res.json()["status"], "no_changes")

        body = self._open().json()
        self.assertEqual(body["records"][0]["total_score"], 92.0)
        self.assertIsNotNone(body["records"][0]["persisted_id"])

    def test_validation_errors(self):
        self._open()
        res = self.client.patch("/marks/S1/sessional", json={"value": 71}, headers=HEADERS)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["detail"]["field"], "sessional_score")
        self.assertEqual(res.json()["detail"]["max"], 70)

        res = self.client.patch("/marks/S1/attendance", json={"value": "lots"}, headers=HEADERS)
        self.assertEqual(res.status_code, 400)

        res = self.client.patch("/marks/NOPE/attendance", json={"value": 3}, headers=HEADERS)
        self.assertEqual(res.status_code, 404)

        self.assertFalse(self.client.get("/marks", headers=HEADERS).json()["has_unsaved_changes"])

    def test_switching_with_unsaved_changes(self):
        self._open()
        self.client.patch("/marks/S2/attendance", json={"value": 20}, headers=HEADERS)
        self.assertEqual(self._open().status_code, 409)
        res = self._open(discard_unsaved=True)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["records"][1]["attendance_score"], 12.0)

    def test_recalculate_stats_and_export(self):
        self._open()
        self.client.patch("/marks/S1/attendance", json={"value": 1}, headers=HEADERS)
        res = self.client.post("/marks/recalculate-attendance", headers=HEADERS)
        self.assertTrue(all(r["dirty"] for r in res.json()["records"]))
        self.assertEqual(res.json()["records"][0]["attendance_score"], 27.0)

        stats = self.client.get("/marks/stats", headers=HEADERS).json()
        self.assertEqual(stats["count"], 2)
        self.assertEqual(stats["max"], 27.0)
        self.assertEqual(stats["grade_distribution"]["F"], 2)

        res = self.client.get("/marks/export", params={"subject_name": "Data Structures"}, headers=HEADERS)
        self.assertEqual(res.status_code, 200)
        self.assertIn("Internal_Marks_Data_Structures_Fall_2023.csv", res.headers["content-disposition"])
        self.assertTrue(res.text.startswith("Enrollment ID,Name,"))

    def test_empty_cohort_stats(self):
        self.client.post("/marks/session", json={"subject_id": "EMPTY", "term": "Fall 2023"}, headers=HEADERS)
        self.assertEqual(self.client.get("/marks/stats", headers=HEADERS).status_code, 400)

    def test_save_failure_reports_nothing_saved(self):
        self._open()
        self.client.patch("/marks/S1/sessional", json={"value": 10}, headers=HEADERS)
        self.state.get("F1").store.get("S1").persisted_id = "999"
        res = self.client.post("/marks/save", headers=HEADERS)
        self.assertEqual(res.status_code, 502)
        self.assertFalse(res.json()["detail"]["saved"])
        self.assertIn("remain pending", res.json()["detail"]["message"])
        self.assertTrue(self.client.get("/marks", headers=HEADERS).json()["has_unsaved_changes"])

    def test_concurrent_save_rejected(self):
        self._open()
        session = self.state.get("F1")
        session.save_lock.acquire()
        try:
            self.assertEqual(self.client.post("/marks/save", headers=HEADERS).status_code, 409)
        finally:
            session.save_lock.release()


if __name__ == "__main__":
    unittest.main()
