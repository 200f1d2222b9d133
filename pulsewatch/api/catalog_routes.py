"""Pulsewatch — Target, Url & Baseline API Routes."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session

from pulsewatch.core.urls import InvalidUrl
from pulsewatch.database import get_session
from pulsewatch.orchestrator.baseline_engine import (
    get_baseline,
    list_statistics,
    statistic_output,
)
from pulsewatch.orchestrator.catalog import (
    TargetNotFound,
    TargetSlugTaken,
    create_target,
    get_target,
    list_targets,
    list_urls,
    register_url,
    soft_delete_target,
)
from pulsewatch.core.logging import get_logger

logger = get_logger("api.catalog")

router = APIRouter(tags=["Catalog"])


# ── Request Models ──


class CreateTargetRequest(BaseModel):
    name: str
    stage: int
    provider: int
    slug: Optional[str] = None
    worker_invoke_url: Optional[str] = None


class RegisterUrlRequest(BaseModel):
    url: str


def _require_target(session: Session, target_id: int):
    try:
        return get_target(session, target_id)
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# ── Targets ──


@router.get("/targets")
def get_targets(session: Session = Depends(get_session)):
    targets = list_targets(session)
    return {
        "status": "success",
        "count": len(targets),
        "targets": [t.model_dump(mode="json") for t in targets],
    }


@router.post("/targets", status_code=201)
def post_target(request: CreateTargetRequest, session: Session = Depends(get_session)):
    try:
        target = create_target(
            session,
            request.name,
            request.stage,
            request.provider,
            slug=request.slug,
            worker_invoke_url=request.worker_invoke_url,
        )
    except TargetSlugTaken as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "success", "target": target.model_dump(mode="json")}


@router.delete("/targets/{target_id}", status_code=204)
def delete_target(target_id: int, session: Session = Depends(get_session)):
    """Soft delete. Pulse history stays in storage but is hidden."""
    try:
        soft_delete_target(session, target_id)
    except TargetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/targets/{target_id}/urls", status_code=201)
def post_target_url(
    target_id: int,
    request: RegisterUrlRequest,
    session: Session = Depends(get_session),
):
    _require_target(session, target_id)
    try:
        url = register_url(session, target_id, request.url)
    except InvalidUrl as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "success", "url": {"id": url.id, "href": url.href}}


# ── Urls ──


@router.get("/urls")
def get_urls(
    target_id: Optional[int] = Query(None),
    session: Session = Depends(get_session),
):
    rows = list_urls(session, target_id)
    return {
        "status": "success",
        "count": len(rows),
        "urls": [{"id": u.id, "href": u.href, "target_id": tid} for u, tid in rows],
    }


# ── Baselines & Statistics ──


@router.get("/targets/{target_id}/urls/{url_id}/baseline")
def get_url_baseline(
    target_id: int, url_id: int, session: Session = Depends(get_session)
):
    _require_target(session, target_id)
    baseline = get_baseline(session, target_id, url_id)
    if baseline is None:
        return {"status": "no_data", "message": "No pulse has completed for this url yet."}
    return {
        "status": "success",
        "version": baseline.version,
        "window_size": baseline.window_size,
        "last_pulse_id": baseline.last_pulse_id,
        "reference": json.loads(baseline.reference_json),
        "window": json.loads(baseline.window_json),
        "updated_at": baseline.updated_at.isoformat(),
    }


@router.get("/targets/{target_id}/urls/{url_id}/statistics")
def get_url_statistics(
    target_id: int,
    url_id: int,
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
):
    _require_target(session, target_id)
    stats = list_statistics(session, target_id, url_id, limit=limit)
    return {
        "status": "success",
        "count": len(stats),
        "statistics": [statistic_output(s).model_dump(mode="json") for s in stats],
    }
