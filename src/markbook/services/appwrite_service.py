from datetime import datetime, timezone
import logging
import uuid
from typing import Dict, List, Optional, Sequence

from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.query import Query
from appwrite.services.databases import Databases

from markbook.config.settings import settings
from markbook.state.marks_store import PersistedMarks, RosterEntry

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class AppwriteServiceError(Exception):
    pass


class AppwriteService:
    def __init__(
        self,
        endpoint: str,
        project_id: str,
        api_key: str,
        database_id: str,
        students_collection_id: str,
        enrollments_collection_id: str,
        attendance_collection_id: str,
        marks_collection_id: str,
        db: Optional[Databases] = None,
    ) -> None:
        if not endpoint:
            raise AppwriteServiceError("Missing APPWRITE_ENDPOINT in environment")
        if not project_id:
            raise AppwriteServiceError("Missing APPWRITE_PROJECT_ID in environment")
        if not api_key:
            raise AppwriteServiceError("Missing APPWRITE_API_KEY in environment")
        if not database_id:
            raise AppwriteServiceError("Missing APPWRITE_DATABASE_ID in environment")

        self.database_id = database_id
        self.students_collection_id = students_collection_id
        self.enrollments_collection_id = enrollments_collection_id
        self.attendance_collection_id = attendance_collection_id
        self.marks_collection_id = marks_collection_id

        if db is None:
            client = Client()
            client.set_endpoint(endpoint.rstrip("/"))
            client.set_project(project_id)
            client.set_key(api_key)
            db = Databases(client)

        self.db = db

    @classmethod
    def from_settings(cls) -> "AppwriteService":
        return cls(
            endpoint=settings.appwrite_endpoint,
            project_id=settings.appwrite_project_id,
            api_key=settings.appwrite_api_key,
            database_id=settings.appwrite_database_id,
            students_collection_id=settings.appwrite_students_collection_id,
            enrollments_collection_id=settings.appwrite_enrollments_collection_id,
            attendance_collection_id=settings.appwrite_attendance_collection_id,
            marks_collection_id=settings.appwrite_marks_collection_id,
        )

    @staticmethod
    def _to_iso(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @staticmethod
    def marks_document_id(subject_id: str, term: str, student_id: str) -> str:
        # Stable per (subject, term, student) so a retried create cannot duplicate.
        return uuid.uuid5(uuid.NAMESPACE_URL, f"internal-marks/{subject_id}/{term}/{student_id}").hex

    def _list_documents(self, collection_id: str, queries: List[str]) -> List[Dict]:
        try:
            result = self.db.list_documents(self.database_id, collection_id, queries=queries)
            return list(result.get("documents", []))
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _list_all_documents(self, collection_id: str, queries: List[str]) -> List[Dict]:
        results: List[Dict] = []
        cursor: Optional[str] = None
        while True:
            page_queries = [*queries, Query.limit(PAGE_SIZE)]
            if cursor:
                page_queries.append(Query.cursor_after(cursor))
            docs = self._list_documents(collection_id, page_queries)
            results.extend(docs)
            if len(docs) < PAGE_SIZE:
                return results
            cursor = docs[-1]["$id"]

    def _update_document(self, collection_id: str, document_id: str, data: Dict) -> Dict:
        try:
            return self.db.update_document(self.database_id, collection_id, document_id, data)
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _create_or_update(self, collection_id: str, document_id: str, data: Dict) -> Dict:
        try:
            return self.db.create_document(self.database_id, collection_id, document_id, data)
        except AppwriteException as exc:
            if getattr(exc, "code", None) != 409:
                raise AppwriteServiceError(str(exc)) from exc
        return self._update_document(collection_id, document_id, data)

    def list_roster(self, subject_id: str) -> List[RosterEntry]:
        enrollments = self._list_all_documents(
            self.enrollments_collection_id,
            [
                Query.equal("subject_id", [subject_id]),
            ],
        )
        student_ids = []
        for doc in enrollments:
            student_id = str(doc.get("student_id", ""))
            if student_id and student_id not in student_ids:
                student_ids.append(student_id)

        students: Dict[str, Dict] = {}
        for start in range(0, len(student_ids), PAGE_SIZE):
            chunk = student_ids[start:start + PAGE_SIZE]
            for doc in self._list_all_documents(self.students_collection_id, [Query.equal("$id", chunk)]):
                students[doc["$id"]] = doc

        roster = []
        for student_id in student_ids:
            doc = students.get(student_id, {})
            roster.append(
                RosterEntry(
                    student_id=student_id,
                    enrollment_id=str(doc.get("enrollment_id", "") or ""),
                    name=str(doc.get("name", "") or ""),
                )
            )
        roster.sort(key=lambda entry: (entry.enrollment_id, entry.student_id))
        return roster

    def list_attendance(self, subject_id: str) -> Dict[str, float]:
        docs = self._list_all_documents(
            self.attendance_collection_id,
            [
                Query.equal("subject_id", [subject_id]),
            ],
        )
        results: Dict[str, float] = {}
        for doc in docs:
            if "student_id" in doc and doc.get("attendance_percentage") is not None:
                results[str(doc["student_id"])] = float(doc["attendance_percentage"])
        return results

    def list_internal_marks(self, subject_id: str, term: str) -> List[PersistedMarks]:
        docs = self._list_all_documents(
            self.marks_collection_id,
            [
                Query.equal("subject_id", [subject_id]),
                Query.equal("term", [term]),
            ],
        )
        return [
            PersistedMarks(
                student_id=str(doc["student_id"]),
                persisted_id=doc["$id"],
                sessional_score=float(doc.get("sessional_mark", 0)),
                attendance_score=float(doc.get("attendance_mark", 0)),
                total_score=float(doc.get("total_mark", 0)),
            )
            for doc in docs
        ]

    def save_internal_marks(self, requests: Sequence) -> Dict[str, str]:
        now = self._to_iso(datetime.now(timezone.utc))
        assigned: Dict[str, str] = {}
        for req in requests:
            payload = {**req.to_payload(), "updated_at": now}
            if req.persisted_id:
                document_id = req.persisted_id
                doc = self._update_document(self.marks_collection_id, document_id, payload)
            else:
                document_id = self.marks_document_id(req.subject_id, req.term, req.student_id)
                doc = self._create_or_update(self.marks_collection_id, document_id, payload)
            assigned[req.student_id] = str(doc.get("$id") or document_id)
        logger.debug("Wrote %d internal marks documents", len(assigned))
        return assigned
