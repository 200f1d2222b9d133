"""Pulsewatch — Project & Schedule API Routes."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from pulsewatch.database import get_session
from pulsewatch.orchestrator.projects import (
    ProjectNotFound,
    ScheduleNotFound,
    create_project,
    create_schedule,
    delete_project,
    delete_schedule,
    get_project,
    list_projects,
    project_view,
    schedule_view,
    update_project,
    update_schedule,
)
from pulsewatch.orchestrator.pulse_store import PlaylistNotFound, UrlNotFound
from pulsewatch.core.logging import get_logger

logger = get_logger("api.projects")

router = APIRouter(tags=["Projects"])


# ── Request Models ──


class ProjectRequest(BaseModel):
    name: str
    description: str = ""


class ProjectPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ScheduleRequest(BaseModel):
    url_id: int
    playlist_id: int
    user_id: str
    interval_seconds: int
    start_at: Optional[datetime] = None


class SchedulePatch(BaseModel):
    interval_seconds: Optional[int] = None
    active: Optional[bool] = None


# ── Projects ──


@router.get("/projects")
def get_projects(session: Session = Depends(get_session)):
    rows, count = list_projects(session)
    return {
        "status": "success",
        "count": count,
        "projects": [project_view(session, p).model_dump() for p in rows],
    }


@router.post("/projects", status_code=201)
def post_project(request: ProjectRequest, session: Session = Depends(get_session)):
    project = create_project(session, request.name, request.description)
    return {"status": "success", "project": project_view(session, project).model_dump()}


@router.get("/projects/{project_id}")
def get_project_detail(project_id: int, session: Session = Depends(get_session)):
    try:
        project = get_project(session, project_id)
    except ProjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "project": project_view(session, project).model_dump()}


@router.patch("/projects/{project_id}")
def patch_project(
    project_id: int, request: ProjectPatch, session: Session = Depends(get_session)
):
    try:
        project = update_project(
            session, project_id, name=request.name, description=request.description
        )
    except ProjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "project": project_view(session, project).model_dump()}


@router.delete("/projects/{project_id}", status_code=204)
def remove_project(project_id: int, session: Session = Depends(get_session)):
    """Soft delete. Schedules stop firing."""
    try:
        delete_project(session, project_id)
    except ProjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# ── Schedules ──


@router.post("/projects/{project_id}/schedules", status_code=201)
def post_schedule(
    project_id: int, request: ScheduleRequest, session: Session = Depends(get_session)
):
    try:
        schedule = create_schedule(
            session,
            project_id,
            request.url_id,
            request.playlist_id,
            request.user_id,
            request.interval_seconds,
            start_at=request.start_at,
        )
    except (ProjectNotFound, UrlNotFound, PlaylistNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "success", "schedule": schedule_view(schedule).model_dump()}


@router.patch("/schedules/{schedule_id}")
def patch_schedule(
    schedule_id: int, request: SchedulePatch, session: Session = Depends(get_session)
):
    try:
        schedule = update_schedule(
            session,
            schedule_id,
            interval_seconds=request.interval_seconds,
            active=request.active,
        )
    except ScheduleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "success", "schedule": schedule_view(schedule).model_dump()}


@router.delete("/schedules/{schedule_id}", status_code=204)
def remove_schedule(schedule_id: int, session: Session = Depends(get_session)):
    try:
        delete_schedule(session, schedule_id)
    except ScheduleNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
