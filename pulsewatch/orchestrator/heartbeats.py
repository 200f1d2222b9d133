"""Pulsewatch — Heartbeat Aggregator.

Folds worker results into their pulse:
  lookup → unique insert → Pending→InProgress → count → terminal gate → finalize

Workers deliver at-least-once and in any order. The unique (pulse, slot)
insert absorbs redelivery, and the InProgress→terminal conditional update
lets exactly one caller observe "last one in".
"""

import json
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pulsewatch.models.catalog_models import PlaylistSlot
from pulsewatch.models.event_models import EventType
from pulsewatch.models.pulse_models import (
    TERMINAL_STATUSES,
    Heartbeat,
    HeartbeatPayload,
    Pulse,
    PulseStatus,
    StrayHeartbeat,
)
from pulsewatch.orchestrator.baseline_engine import finalize
from pulsewatch.orchestrator.notifications import NotificationHub, emit, hub
from pulsewatch.orchestrator.pulse_store import accepted_heartbeat_count, transition
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.heartbeats")


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    PULSE_NOT_FOUND = "pulse_not_found"
    PULSE_TERMINAL = "pulse_terminal"
    UNKNOWN_SLOT = "unknown_slot"


class IngestResult(BaseModel):
    """What happened to one delivered heartbeat."""

    outcome: IngestOutcome
    reason: Optional[RejectReason] = None
    status: Optional[PulseStatus] = None
    finalized: bool = False


def _record_stray(
    session: Session, pulse: Pulse, slot_id: int, payload: HeartbeatPayload
) -> None:
    session.add(
        StrayHeartbeat(
            pulse_id=pulse.id,
            slot_id=slot_id,
            pulse_status=pulse.status,
            payload_json=payload.model_dump_json(),
        )
    )
    session.commit()


def _demote_to_stray(
    session: Session, pulse: Pulse, slot_id: int, payload: HeartbeatPayload
) -> None:
    """Move an inserted heartbeat into the audit table, in one commit."""
    heartbeat = session.exec(
        select(Heartbeat).where(
            Heartbeat.pulse_id == pulse.id, Heartbeat.slot_id == slot_id
        )
    ).first()
    if heartbeat is not None:
        session.delete(heartbeat)
    _record_stray(session, pulse, slot_id, payload)


def _failed_count(session: Session, pulse_id: int) -> int:
    return session.exec(
        select(func.count())
        .select_from(Heartbeat)
        .where(Heartbeat.pulse_id == pulse_id, Heartbeat.failed == True)  # noqa: E712
    ).one()


def ingest(
    session: Session,
    pulse_id: int,
    slot_id: int,
    payload: HeartbeatPayload,
    notifier: NotificationHub = hub,
    finalizer: Callable = finalize,
) -> IngestResult:
    """Accept one worker result for ``(pulse_id, slot_id)``."""
    pulse = session.get(Pulse, pulse_id)
    if pulse is None:
        logger.warning(f"Heartbeat for unknown pulse {pulse_id}", extra={"slot_id": slot_id})
        return IngestResult(
            outcome=IngestOutcome.REJECTED, reason=RejectReason.PULSE_NOT_FOUND
        )
    # The identity map may hold a status another process has since changed
    session.refresh(pulse)

    slug = pulse.slug
    expected = pulse.expected_slots
    log_extra = {"pulse_slug": slug, "slot_id": slot_id}

    if pulse.status in TERMINAL_STATUSES:
        _record_stray(session, pulse, slot_id, payload)
        logger.info(
            f"Late heartbeat for {pulse.status.value} pulse kept for audit",
            extra=log_extra,
        )
        return IngestResult(
            outcome=IngestOutcome.REJECTED,
            reason=RejectReason.PULSE_TERMINAL,
            status=pulse.status,
        )

    slot = session.get(PlaylistSlot, slot_id)
    if slot is None or slot.playlist_id != pulse.playlist_id:
        logger.warning("Heartbeat for a slot outside the pulse playlist", extra=log_extra)
        return IngestResult(
            outcome=IngestOutcome.REJECTED,
            reason=RejectReason.UNKNOWN_SLOT,
            status=pulse.status,
        )

    session.add(
        Heartbeat(
            pulse_id=pulse_id,
            slot_id=slot_id,
            failed=payload.error is not None,
            payload_json=payload.model_dump_json(),
        )
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info("Duplicate heartbeat discarded", extra=log_extra)
        return IngestResult(
            outcome=IngestOutcome.DUPLICATE,
            status=session.get(Pulse, pulse_id).status,
        )

    transition(session, pulse_id, {PulseStatus.PENDING}, PulseStatus.IN_PROGRESS)

    won_terminal: Optional[PulseStatus] = None
    received = accepted_heartbeat_count(session, pulse_id)
    if received >= expected:
        to_status = (
            PulseStatus.PARTIAL_FAILURE
            if _failed_count(session, pulse_id)
            else PulseStatus.COMPLETED
        )
        if transition(session, pulse_id, {PulseStatus.IN_PROGRESS}, to_status):
            won_terminal = to_status

    pulse = session.get(Pulse, pulse_id)
    status = pulse.status

    if won_terminal is None and status == PulseStatus.TIMED_OUT:
        # Reaper expired the pulse while this heartbeat was in flight
        _demote_to_stray(session, pulse, slot_id, payload)
        logger.info("Heartbeat landed on a timed out pulse, kept for audit", extra=log_extra)
        return IngestResult(
            outcome=IngestOutcome.REJECTED,
            reason=RejectReason.PULSE_TERMINAL,
            status=status,
        )

    logger.info(f"Heartbeat accepted ({received}/{expected})", extra=log_extra)
    emit(notifier, EventType.HEARTBEAT_RECEIVED, slug, status.value, slot_id)

    finalized = False
    if won_terminal == PulseStatus.COMPLETED:
        try:
            finalized = finalizer(session, pulse) is not None
        except Exception:
            session.rollback()
            # Left for the reaper's repair sweep
            logger.exception("Finalize failed", extra=log_extra)
    if won_terminal is not None:
        emit(notifier, EventType.PULSE_COMPLETED, slug, won_terminal.value)

    return IngestResult(
        outcome=IngestOutcome.ACCEPTED, status=status, finalized=finalized
    )


def ingest_by_slug(
    session: Session,
    slug: str,
    slot_id: int,
    payload: HeartbeatPayload,
    notifier: NotificationHub = hub,
) -> IngestResult:
    """Same as ``ingest`` for callers that only know the public slug."""
    pulse = session.exec(select(Pulse).where(Pulse.slug == slug)).first()
    if pulse is None:
        logger.warning(f"Heartbeat for unknown pulse {slug}", extra={"slot_id": slot_id})
        return IngestResult(
            outcome=IngestOutcome.REJECTED, reason=RejectReason.PULSE_NOT_FOUND
        )
    return ingest(session, pulse.id, slot_id, payload, notifier=notifier)


def stray_payloads(session: Session, pulse_id: int) -> list[dict]:
    """Audit view of late heartbeats for a pulse."""
    rows = session.exec(
        select(StrayHeartbeat)
        .where(StrayHeartbeat.pulse_id == pulse_id)
        .order_by(StrayHeartbeat.received_at, StrayHeartbeat.id)  # type: ignore
    ).all()
    return [
        {
            "slot_id": r.slot_id,
            "pulse_status": r.pulse_status.value,
            "received_at": r.received_at.isoformat(),
            "payload": json.loads(r.payload_json),
        }
        for r in rows
    ]
