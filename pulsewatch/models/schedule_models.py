"""Pulsewatch — Project & Schedule Models.

A project groups recurring assessments. Each of its schedules fires a pulse
for one url and playlist every ``interval_seconds``.
"""

from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel
from sqlmodel import SQLModel, Field


class Project(SQLModel, table=True):
    """Owner of schedules. Soft-deleted via ``deleted_at``."""

    __tablename__ = "projects"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255)
    description: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = Field(default=None, index=True)


class Schedule(SQLModel, table=True):
    """Recurring trigger for one (target, url, playlist).

    ``next_run_at`` doubles as the claim token: a runner advances it with a
    conditional update, so a due schedule fires once per period.
    """

    __tablename__ = "schedules"

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)
    target_id: int = Field(foreign_key="targets.id", index=True)
    url_id: int = Field(foreign_key="urls.id")
    playlist_id: int = Field(foreign_key="playlists.id")
    user_id: str = Field(description="Requester the pulses are attributed to")
    interval_seconds: int
    active: bool = True
    next_run_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    last_run_at: Optional[datetime] = None
    last_pulse_id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class ScheduleView(BaseModel):
    id: int
    target_id: int
    url_id: int
    playlist_id: int
    user_id: str
    interval_seconds: int
    active: bool
    next_run_at: str
    last_run_at: Optional[str] = None
    last_pulse_id: Optional[int] = None


class ProjectView(BaseModel):
    """API view of a project with its schedules."""

    id: int
    name: str
    description: str = ""
    created_at: str
    schedules: List[ScheduleView] = []
