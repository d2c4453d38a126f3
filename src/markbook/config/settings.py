from dataclasses import dataclass
import logging
import os
from dotenv import load_dotenv


load_dotenv()


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    marks_backend: str = os.getenv("MARKBOOK_BACKEND", "sqlite").strip().lower()
    db_path: str = os.getenv("MARKBOOK_DB_PATH", "markbook.db")
    terms: tuple[str, ...] = _split_csv(
        os.getenv("MARKBOOK_TERMS", "Winter 2023,Summer 2023,Fall 2023,Winter 2024,Summer 2024")
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8000"))

    appwrite_endpoint: str = os.getenv("APPWRITE_ENDPOINT", "")
    appwrite_project_id: str = os.getenv("APPWRITE_PROJECT_ID", "")
    appwrite_api_key: str = os.getenv("APPWRITE_API_KEY") or os.getenv("APPWRITE_FUNCTION_API_KEY", "")
    appwrite_database_id: str = os.getenv("APPWRITE_DATABASE_ID", "")

    appwrite_students_collection_id: str = os.getenv("APPWRITE_STUDENTS_COLLECTION_ID", "students")
    appwrite_enrollments_collection_id: str = os.getenv("APPWRITE_ENROLLMENTS_COLLECTION_ID", "subject_enrollments")
    appwrite_attendance_collection_id: str = os.getenv("APPWRITE_ATTENDANCE_COLLECTION_ID", "attendance_summary")
    appwrite_marks_collection_id: str = os.getenv("APPWRITE_MARKS_COLLECTION_ID", "internal_marks")

    cors_allowed_origins: tuple[str, ...] = _split_csv(
        os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    )


settings = Settings()


def configure_logging(level: str = settings.log_level) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
