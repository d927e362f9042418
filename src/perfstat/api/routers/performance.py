from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile

from perfstat.api.deps import get_current_user, get_form_service, require_auth
from perfstat.domain.models import SaveStatisticsRequest, User
from perfstat.services.forms import PerformanceFormService

router = APIRouter(prefix="/performance-statistics", tags=["performance"], dependencies=[Depends(require_auth)])


def _ok(data: Any) -> dict:
    return {"status": "SUCCESS", "data": data}


@router.get("/performance")
def get_performance_form(
    module: int = Query(...),
    topic: Optional[int] = Query(None),
    ordinal: Optional[int] = Query(None, ge=1),
    month: Optional[str] = Query(None, description='Reporting month, e.g. "SEP 2026"'),
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    """
    Per-topic form envelope. Address the topic by id, or by its 1-based position
    within the module (used by navigation probes).
    """
    if topic is None and ordinal is None:
        raise HTTPException(status_code=422, detail="Either topic or ordinal is required")
    if topic is not None:
        response = svc.form_response(user, module, topic, month)
    else:
        response = svc.form_response_at(user, module, ordinal)
    return _ok(response.model_dump(mode="json", by_alias=True))


@router.post("/save-statistics")
def save_statistics(
    payload: SaveStatisticsRequest,
    month: Optional[str] = Query(None),
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    result = svc.save_records(user, payload.performance_statistics, month)
    return _ok({"count": result.count, "status": result.status.value, "monthYear": result.month_year})


@router.get("/next/{module_id}/{topic_id}")
def next_topic(
    module_id: int,
    topic_id: int,
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    return _ok(svc.next_position(user, module_id, topic_id).model_dump(by_alias=True))


@router.get("/previous/{module_id}/{topic_id}")
def previous_topic(
    module_id: int,
    topic_id: int,
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    return _ok(svc.previous_position(user, module_id, topic_id).model_dump(by_alias=True))


@router.get("/navigation-info/{module_id}/{topic_id}")
def navigation_info(
    module_id: int,
    topic_id: int,
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    return _ok(svc.navigation_info(user, module_id, topic_id).model_dump(mode="json", by_alias=True))


@router.post("/upload")
async def upload_document(
    file: UploadFile = File(...),
    svc: PerformanceFormService = Depends(get_form_service),
):
    content = await file.read()
    url = svc.store_upload(file.filename or "upload", content)
    return _ok({"fileUrl": url})


@router.get("/summary")
def status_summary(
    month: Optional[str] = Query(None),
    svc: PerformanceFormService = Depends(get_form_service),
    user: User = Depends(get_current_user),
):
    return _ok(svc.status_summary(user, month))
