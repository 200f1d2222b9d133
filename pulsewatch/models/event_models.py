"""Pulsewatch — Lifecycle Event Models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class EventType(str, Enum):
    PULSE_CREATED = "pulse_created"
    HEARTBEAT_RECEIVED = "heartbeat_received"
    PULSE_COMPLETED = "pulse_completed"
    PULSE_TIMED_OUT = "pulse_timed_out"


class PulseEvent(BaseModel):
    """A changed-state signal. Consumers re-fetch the pulse by slug."""

    type: EventType
    slug: str
    status: str = ""
    slot_id: Optional[int] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
