"""Pulsewatch — Pulse & Heartbeat API Routes."""

import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session

from pulsewatch.connectors.worker.base import WorkerInvoker
from pulsewatch.connectors.worker.client import HttpWorkerInvoker
from pulsewatch.core.urls import InvalidUrl
from pulsewatch.database import get_session
from pulsewatch.models.catalog_models import Target, Url
from pulsewatch.models.pulse_models import HeartbeatPayload, Pulse
from pulsewatch.orchestrator.baseline_engine import get_statistic, statistic_output
from pulsewatch.orchestrator.heartbeats import (
    IngestOutcome,
    RejectReason,
    ingest_by_slug,
    stray_payloads,
)
from pulsewatch.orchestrator.membership import MembershipNotFound
from pulsewatch.orchestrator.notifications import NotificationHub, hub
from pulsewatch.orchestrator.pulse_store import (
    PlaylistNotFound,
    PulseNotFound,
    SlugGenerationError,
    UrlNotFound,
    get_pulse,
    heartbeats_for,
    list_pulses,
)
from pulsewatch.orchestrator.trigger import dispatch_and_close, trigger_pulse
from pulsewatch.core.logging import get_logger

logger = get_logger("api.pulses")

router = APIRouter(prefix="/pulses", tags=["Pulses"])


def get_worker_invoker() -> WorkerInvoker:
    """Dependency — a fresh invoker per request, closed after dispatch."""
    return HttpWorkerInvoker()


def get_notifier() -> NotificationHub:
    return hub


# ── Request / Response Models ──


class CreatePulseRequest(BaseModel):
    """Request body for POST /pulses."""

    url: str
    """Any spelling of a registered url; canonicalised before lookup."""
    playlist_id: int

    model_config = {
        "json_schema_extra": {
            "examples": [{"url": "example.com/pricing", "playlist_id": 1}]
        }
    }


class CreatePulseResponse(BaseModel):
    status: str = "accepted"
    slug: str
    pulse_status: str
    expected_slots: int


class HeartbeatRequest(HeartbeatPayload):
    """Worker report for one slot. Metric fields as in HeartbeatPayload."""

    slot_id: int


class HeartbeatResponse(BaseModel):
    result: str
    pulse_status: Optional[str] = None


def _pulse_summary(pulse: Pulse) -> dict:
    return {
        "slug": pulse.slug,
        "status": pulse.status.value,
        "url_id": pulse.url_id,
        "target_id": pulse.target_id,
        "playlist_id": pulse.playlist_id,
        "expected_slots": pulse.expected_slots,
        "created_at": pulse.created_at.isoformat(),
        "updated_at": pulse.updated_at.isoformat(),
    }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


# ── Endpoints ──


@router.post("", status_code=202, response_model=CreatePulseResponse)
def create_pulse_endpoint(
    request: CreatePulseRequest,
    background_tasks: BackgroundTasks,
    x_user_id: str = Header(..., description="Requester identity from the auth gateway"),
    session: Session = Depends(get_session),
    invoker: WorkerInvoker = Depends(get_worker_invoker),
    notifier: NotificationHub = Depends(get_notifier),
):
    """Create a pulse and dispatch its workers in the background."""
    try:
        pulse, job = trigger_pulse(
            session, request.url, request.playlist_id, x_user_id, notifier=notifier
        )
    except MembershipNotFound as e:
        raise HTTPException(status_code=403, detail=str(e))
    except (UrlNotFound, PlaylistNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidUrl as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SlugGenerationError as e:
        logger.error(f"Pulse creation failed: {e}")
        raise HTTPException(status_code=503, detail="Could not allocate a pulse slug")

    background_tasks.add_task(dispatch_and_close, job, invoker)
    return CreatePulseResponse(
        slug=pulse.slug,
        pulse_status=pulse.status.value,
        expected_slots=pulse.expected_slots,
    )


@router.get("")
def list_pulses_endpoint(
    date_from: Optional[datetime] = Query(None, description="Created at or after"),
    date_to: Optional[datetime] = Query(None, description="Created at or before"),
    target_id: Optional[int] = Query(None),
    url_id: Optional[int] = Query(None),
    start_row: int = Query(0, ge=0),
    end_row: Optional[int] = Query(None, ge=0),
    sort: Optional[str] = Query(None, description="e.g. -created_at"),
    session: Session = Depends(get_session),
):
    """List pulses with date-range filtering and row-range pagination."""
    try:
        rows, count = list_pulses(
            session,
            date_from=_as_utc(date_from),
            date_to=_as_utc(date_to),
            target_id=target_id,
            url_id=url_id,
            start_row=start_row,
            end_row=end_row,
            sort=sort,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": "success",
        "count": count,
        "rows": [_pulse_summary(p) for p in rows],
    }


@router.get("/{slug}")
def get_pulse_endpoint(slug: str, session: Session = Depends(get_session)):
    """Full pulse state: heartbeats, url, target and statistic."""
    try:
        pulse = get_pulse(session, slug)
    except PulseNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    url = session.get(Url, pulse.url_id)
    target = session.get(Target, pulse.target_id)
    statistic = get_statistic(session, pulse.id)

    return {
        "status": "success",
        "pulse": _pulse_summary(pulse),
        "url": url.href if url else None,
        "target": {"id": target.id, "name": target.name, "slug": target.slug}
        if target
        else None,
        "heartbeats": [
            {
                "slot_id": hb.slot_id,
                "failed": hb.failed,
                "received_at": hb.received_at.isoformat(),
                "payload": json.loads(hb.payload_json),
            }
            for hb in heartbeats_for(session, pulse.id)
        ],
        "late_heartbeats": stray_payloads(session, pulse.id),
        "statistic": statistic_output(statistic).model_dump(mode="json")
        if statistic
        else None,
    }


@router.post("/{slug}/heartbeats", response_model=HeartbeatResponse)
def report_heartbeat(
    slug: str,
    request: HeartbeatRequest,
    session: Session = Depends(get_session),
    notifier: NotificationHub = Depends(get_notifier),
):
    """Worker callback. Redelivery is safe; duplicates answer 200."""
    payload = HeartbeatPayload(**request.model_dump(exclude={"slot_id"}))
    result = ingest_by_slug(session, slug, request.slot_id, payload, notifier=notifier)

    if result.outcome == IngestOutcome.REJECTED:
        if result.reason == RejectReason.PULSE_NOT_FOUND:
            raise HTTPException(status_code=404, detail=f"Pulse {slug} not found")
        if result.reason == RejectReason.UNKNOWN_SLOT:
            raise HTTPException(
                status_code=422, detail=f"Slot {request.slot_id} is not part of pulse {slug}"
            )
        raise HTTPException(
            status_code=409,
            detail=f"Pulse {slug} is already {result.status.value}; heartbeat kept for audit",
        )

    return HeartbeatResponse(
        result=result.outcome.value,
        pulse_status=result.status.value if result.status else None,
    )
