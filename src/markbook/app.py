from functools import lru_cache
from typing import Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from markbook.config.settings import configure_logging, settings
from markbook.core.export import export_csv, export_filename
from markbook.core.marks import InvalidMarkError, OutOfRangeError
from markbook.core.stats import EmptyCohortError, summarize
from markbook.services.appwrite_service import AppwriteService, AppwriteServiceError
from markbook.services.marks_service import (
    load_marks_store,
    recalculate_attendance_scores,
    set_attendance_score,
    set_sessional_score,
)
from markbook.services.reconcile_service import MarksPersistenceError, reconcile
from markbook.services.storage import Storage, StorageError
from markbook.state.app_state import AppState, MarksSession, app_state
from markbook.state.marks_store import MarksContext, MarksStore, StudentNotFoundError


configure_logging()

app = FastAPI(title="Markbook API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

BACKEND_ERRORS = (StorageError, AppwriteServiceError)


class SelectionPayload(BaseModel):
    subject_id: str
    term: str
    discard_unsaved: bool = False


class MarkPayload(BaseModel):
    value: Union[float, str, None] = None


@lru_cache(maxsize=1)
def get_backend():
    if settings.marks_backend == "appwrite":
        return AppwriteService.from_settings()
    if settings.marks_backend == "sqlite":
        return Storage(settings.db_path)
    raise RuntimeError(f"Unsupported MARKBOOK_BACKEND: {settings.marks_backend}")


def get_app_state() -> AppState:
    return app_state


def _required_uid(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-user-id header")
    return x_user_id


def _active_session(state: AppState, x_user_id: Optional[str]) -> MarksSession:
    uid = _required_uid(x_user_id)
    session = state.get(uid)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active marks session")
    return session


def _store_payload(store: MarksStore) -> Dict:
    return {
        "subject_id": store.context.subject_id,
        "term": store.context.term,
        "has_unsaved_changes": store.has_unsaved_changes,
        "records": store.rows(),
    }


def _validation_error(exc: Union[InvalidMarkError, OutOfRangeError]) -> HTTPException:
    detail: Dict = {"message": str(exc), "field": exc.field}
    if isinstance(exc, OutOfRangeError):
        detail["min"] = exc.lower
        detail["max"] = exc.upper
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/terms")
def list_terms() -> List[str]:
    return list(settings.terms)


@app.post("/marks/session")
def open_session(
    payload: SelectionPayload,
    x_user_id: Optional[str] = Header(default=None),
    backend=Depends(get_backend),
    state: AppState = Depends(get_app_state),
) -> Dict:
    uid = _required_uid(x_user_id)
    current = state.get(uid)
    if current is not None:
        if current.save_lock.locked():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Save in progress")
        with current.store_lock:
            unsaved = current.store.has_unsaved_changes
        if unsaved and not payload.discard_unsaved:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="UNSAVED_CHANGES")

    context = MarksContext(subject_id=payload.subject_id, term=payload.term, faculty_id=uid)
    try:
        store = load_marks_store(backend, context)
    except OutOfRangeError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Stored marks are invalid: {exc}") from exc
    except BACKEND_ERRORS as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    state.open(uid, store)
    return _store_payload(store)


@app.get("/marks")
def get_marks(
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    with session.store_lock:
        return _store_payload(session.store)


@app.patch("/marks/{student_id}/sessional")
def update_sessional(
    student_id: str,
    payload: MarkPayload,
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    try:
        with session.store_lock:
            return set_sessional_score(session.store, student_id, payload.value).to_dict()
    except (InvalidMarkError, OutOfRangeError) as exc:
        raise _validation_error(exc) from exc
    except StudentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@app.patch("/marks/{student_id}/attendance")
def update_attendance(
    student_id: str,
    payload: MarkPayload,
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    try:
        with session.store_lock:
            return set_attendance_score(session.store, student_id, payload.value).to_dict()
    except (InvalidMarkError, OutOfRangeError) as exc:
        raise _validation_error(exc) from exc
    except StudentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@app.post("/marks/recalculate-attendance")
def recalculate_attendance(
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    with session.store_lock:
        recalculate_attendance_scores(session.store)
        return _store_payload(session.store)


@app.post("/marks/save")
def save_marks(
    x_user_id: Optional[str] = Header(default=None),
    backend=Depends(get_backend),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    if not session.save_lock.acquire(blocking=False):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Save in progress")
    try:
        return reconcile(session.store, backend, lock=session.store_lock).to_dict()
    except MarksPersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "saved": False, "student_ids": list(exc.student_ids)},
        ) from exc
    finally:
        session.save_lock.release()


@app.get("/marks/stats")
def marks_stats(
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Dict:
    session = _active_session(state, x_user_id)
    try:
        with session.store_lock:
            return summarize(session.store).to_dict()
    except EmptyCohortError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@app.get("/marks/export")
def export_marks(
    subject_name: Optional[str] = None,
    x_user_id: Optional[str] = Header(default=None),
    state: AppState = Depends(get_app_state),
) -> Response:
    session = _active_session(state, x_user_id)
    store = session.store
    filename = export_filename(subject_name or store.context.subject_id, store.context.term)
    with session.store_lock:
        content = export_csv(store)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
