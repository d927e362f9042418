from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from perfstat.api.deps import get_current_user, get_form_service, get_session_store, require_auth
from perfstat.api.session_store import FormSessionStore
from perfstat.domain.fields import FieldKey
from perfstat.domain.models import StatisticStatus, User
from perfstat.engine.recompute import RecomputeReport
from perfstat.engine.session import FormSession
from perfstat.exceptions import FieldError
from perfstat.services.forms import PerformanceFormService, SaveResult

router = APIRouter(prefix="/forms/sessions", tags=["sessions"], dependencies=[Depends(require_auth)])


class OpenSessionRequest(BaseModel):
    module_id: int
    topic_id: int
    companies: list[int] = Field(default_factory=list)
    month_year: Optional[str] = None


class FieldChange(BaseModel):
    key: str
    value: Optional[str] = None


class FieldChangesRequest(BaseModel):
    changes: list[FieldChange]


class CompaniesRequest(BaseModel):
    companies: list[int]


def _session_view(session_id: str, session: FormSession) -> dict:
    return {
        "session_id": session_id,
        "module_id": session.module_id,
        "topic_id": session.topic.id,
        "layout": session.topic.layout.value,
        "month_year": session.month_year,
        "companies": session.companies,
        "status": session.status.value,
        "dirty": session.dirty,
        "fields": {key.to_token(): value for key, value in session.values().items()},
        "failures": [
            {"question_id": f.question_id, "key": str(f.key) if f.key else None, "error": f.error}
            for f in session.last_report.failures
        ],
    }


def _report_view(report: RecomputeReport) -> dict:
    return {
        "updated": {key.to_token(): value for key, value in report.updated.items()},
        "dates_added": [key.to_token() for key in report.dates_added],
        "dates_removed": [key.to_token() for key in report.dates_removed],
    }


def _save_view(result: SaveResult) -> dict:
    return {"count": result.count, "status": result.status.value, "month_year": result.month_year}


def _load(session_id: str, user: User, sessions: FormSessionStore) -> FormSession:
    session = sessions.get(session_id)
    if session is None or session.user.id != user.id:
        raise HTTPException(status_code=404, detail="Form session not found")
    return session


def _parse_key(token: str) -> FieldKey:
    try:
        return FieldKey.parse(token)
    except ValueError as exc:
        raise FieldError(str(exc)) from exc


@router.post("", status_code=201)
def open_session(
    payload: OpenSessionRequest,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = svc.open_session(user, payload.module_id, payload.topic_id, payload.companies, payload.month_year)
    session_id = sessions.add(session)
    return _session_view(session_id, session)


@router.get("/{session_id}")
def get_session(
    session_id: str,
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    return _session_view(session_id, _load(session_id, user, sessions))


@router.patch("/{session_id}/fields")
def change_fields(
    session_id: str,
    payload: FieldChangesRequest,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    changes = {_parse_key(change.key): change.value for change in payload.changes}
    report = svc.apply_changes(session, changes)
    return {**_session_view(session_id, session), **_report_view(report)}


@router.put("/{session_id}/companies")
def select_companies(
    session_id: str,
    payload: CompaniesRequest,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    report = svc.select_companies(session, payload.companies)
    return {**_session_view(session_id, session), **_report_view(report)}


@router.post("/{session_id}/save")
def save_session(
    session_id: str,
    status: StatisticStatus = Query(StatisticStatus.SAVED),
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    return _save_view(svc.save(session, status))


@router.post("/{session_id}/submit")
def submit_session(
    session_id: str,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    return _save_view(svc.submit(session))


@router.post("/{session_id}/upload")
async def upload_document(
    session_id: str,
    key: str = Query(...),
    file: UploadFile = File(...),
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    content = await file.read()
    url = svc.upload(session, _parse_key(key), file.filename or "upload", content)
    return {"key": key, "file_url": url}


@router.get("/{session_id}/skip-next")
def skip_next(
    session_id: str,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    session = _load(session_id, user, sessions)
    position = svc.skip_to_next_available(user, session.module_id)
    return position.model_dump()


@router.delete("/{session_id}", status_code=204)
def close_session(
    session_id: str,
    svc: PerformanceFormService = Depends(get_form_service),
    sessions: FormSessionStore = Depends(get_session_store),
    user: User = Depends(get_current_user),
):
    _load(session_id, user, sessions)
    session = sessions.pop(session_id)
    if session is not None:
        svc.close_session(session)
