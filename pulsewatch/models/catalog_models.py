"""Pulsewatch — Catalog Models.

Targets, their URLs, the playlists describing which device/location slots a
pulse must be evaluated under, and the memberships used to attribute a
dispatch to an account.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


class Target(SQLModel, table=True):
    """A monitored site. Soft-deleted via ``deleted_at``; history is kept."""

    __tablename__ = "targets"

    id: Optional[int] = Field(default=None, primary_key=True)
    stage: int = Field(description="Deployment stage code")
    provider: int = Field(description="Hosting provider code")
    name: str = Field(max_length=255)
    slug: str = Field(index=True, unique=True)
    worker_invoke_url: Optional[str] = Field(
        default=None, max_length=512, description="Overrides the global worker endpoint"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = Field(default=None, index=True)


class Url(SQLModel, table=True):
    """A canonical, fully-qualified URL."""

    __tablename__ = "urls"

    id: Optional[int] = Field(default=None, primary_key=True)
    href: str = Field(index=True, unique=True, description="Canonical form")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TargetUrl(SQLModel, table=True):
    """Join between targets and urls."""

    __tablename__ = "target_urls"

    target_id: int = Field(foreign_key="targets.id", primary_key=True)
    url_id: int = Field(foreign_key="urls.id", primary_key=True)


class Playlist(SQLModel, table=True):
    """Named set of slots a pulse is expected to report."""

    __tablename__ = "playlists"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PlaylistSlot(SQLModel, table=True):
    """One device × location combination of a playlist."""

    __tablename__ = "playlist_slots"
    __table_args__ = (
        UniqueConstraint(
            "playlist_id", "device", "location", name="uq_playlist_slot"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    playlist_id: int = Field(foreign_key="playlists.id", index=True)
    device: str = Field(description="mobile | desktop")
    location: str = Field(description="Worker region, e.g. eu-west-1")


class Membership(SQLModel, table=True):
    """Links a user identity to the account a dispatch is billed to."""

    __tablename__ = "memberships"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    account_id: str
    is_primary: bool = False
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
