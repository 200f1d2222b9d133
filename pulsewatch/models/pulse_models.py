"""Pulsewatch — Pulse & Heartbeat Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel
from sqlmodel import SQLModel, Field, UniqueConstraint


class PulseStatus(str, Enum):
    """Lifecycle of a pulse. Transitions only move forward."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset(
    {PulseStatus.COMPLETED, PulseStatus.PARTIAL_FAILURE, PulseStatus.TIMED_OUT}
)

# Allowed successors of each status
LEGAL_TRANSITIONS: Dict[PulseStatus, frozenset] = {
    PulseStatus.PENDING: frozenset({PulseStatus.IN_PROGRESS} | TERMINAL_STATUSES),
    PulseStatus.IN_PROGRESS: TERMINAL_STATUSES,
    PulseStatus.COMPLETED: frozenset(),
    PulseStatus.PARTIAL_FAILURE: frozenset(),
    PulseStatus.TIMED_OUT: frozenset(),
}


class Pulse(SQLModel, table=True):
    """One assessment run against a url.

    ``expected_slots`` is copied from the playlist at creation and never
    changes afterwards.
    """

    __tablename__ = "pulses"

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(index=True, unique=True)
    url_id: int = Field(foreign_key="urls.id", index=True)
    target_id: int = Field(foreign_key="targets.id", index=True)
    playlist_id: int = Field(foreign_key="playlists.id")
    schedule_id: Optional[int] = Field(
        default=None, foreign_key="schedules.id", index=True, description="Unset when on demand"
    )
    expected_slots: int
    status: PulseStatus = Field(default=PulseStatus.PENDING, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Heartbeat(SQLModel, table=True):
    """One worker's result for one slot of a pulse. Immutable once stored.

    The unique constraint on (pulse_id, slot_id) is what makes redelivery
    from an unreliable transport idempotent.
    """

    __tablename__ = "heartbeats"
    __table_args__ = (
        UniqueConstraint("pulse_id", "slot_id", name="uq_heartbeat_pulse_slot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_id: int = Field(foreign_key="pulses.id", index=True)
    slot_id: int = Field(foreign_key="playlist_slots.id")
    failed: bool = Field(default=False, description="Worker reported an error")
    payload_json: str = Field(description="Full HeartbeatPayload as JSON")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StrayHeartbeat(SQLModel, table=True):
    """Audit trail of heartbeats that arrived after their pulse had ended."""

    __tablename__ = "stray_heartbeats"

    id: Optional[int] = Field(default=None, primary_key=True)
    pulse_id: int = Field(foreign_key="pulses.id", index=True)
    slot_id: int
    pulse_status: PulseStatus
    payload_json: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS — Worker report
# ─────────────────────────────────────────────


class HeartbeatPayload(BaseModel):
    """Raw measurement reported by a worker for one slot."""

    lcp: Optional[float] = None
    fcp: Optional[float] = None
    cls: Optional[float] = None
    inp: Optional[float] = None
    ttfb: Optional[float] = None
    tbt: Optional[float] = None
    speed_index: Optional[float] = None
    performance: Optional[float] = None
    accessibility: Optional[float] = None
    best_practices: Optional[float] = None
    seo: Optional[float] = None
    error: Optional[str] = None
    """Set by the worker when the run failed; the slot still counts as reported."""

    def metrics(self) -> Dict[str, float]:
        """Measured values, skipping the ones the worker did not report."""
        return {
            k: v
            for k, v in self.model_dump(exclude={"error"}).items()
            if v is not None
        }
