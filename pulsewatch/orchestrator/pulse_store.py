"""Pulsewatch — Pulse Store.

Durable record of pulses. Every status change goes through ``transition``,
a single conditional UPDATE: it succeeds only while the row still holds one
of the expected statuses.
"""

import secrets
import string
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pulsewatch.config import settings
from pulsewatch.models.catalog_models import Playlist, PlaylistSlot, Target, TargetUrl, Url
from pulsewatch.models.pulse_models import (
    LEGAL_TRANSITIONS,
    Heartbeat,
    Pulse,
    PulseStatus,
)
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.pulse_store")

SLUG_ALPHABET = string.ascii_letters + string.digits + "_-"
SORTABLE_FIELDS = {"created_at", "updated_at", "status", "slug"}


class PulseNotFound(Exception):
    """Raised when no pulse matches the given identity."""


class UrlNotFound(Exception):
    """Raised when a url is unknown or not attached to a live target."""


class PlaylistNotFound(Exception):
    """Raised when a playlist is unknown or has no slots."""


class SlugGenerationError(Exception):
    """Raised when every slug attempt collided with an existing pulse."""


class IllegalTransition(ValueError):
    """Raised when asked for a status change the lifecycle does not allow."""


def generate_slug(length: Optional[int] = None) -> str:
    """URL-safe random slug (nanoid alphabet)."""
    size = length or settings.slug_length
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(size))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def target_for_url(session: Session, url_id: int) -> Target:
    """The live target a url belongs to."""
    target = session.exec(
        select(Target)
        .join(TargetUrl, TargetUrl.target_id == Target.id)  # type: ignore
        .where(TargetUrl.url_id == url_id, Target.deleted_at.is_(None))  # type: ignore
        .order_by(Target.id)  # type: ignore
    ).first()
    if target is None:
        raise UrlNotFound(f"Url {url_id} is not attached to an active target")
    return target


def playlist_slots(session: Session, playlist_id: int) -> List[PlaylistSlot]:
    """Slots of a playlist, in a stable order."""
    if session.get(Playlist, playlist_id) is None:
        raise PlaylistNotFound(f"Playlist {playlist_id} not found")
    return list(
        session.exec(
            select(PlaylistSlot)
            .where(PlaylistSlot.playlist_id == playlist_id)
            .order_by(PlaylistSlot.id)  # type: ignore
        ).all()
    )


def create_pulse(
    session: Session,
    url_id: int,
    playlist_id: int,
    slug_factory: Callable[[], str] = generate_slug,
    max_attempts: Optional[int] = None,
    schedule_id: Optional[int] = None,
) -> Pulse:
    """Persist a new Pending pulse under a fresh unique slug."""
    if session.get(Url, url_id) is None:
        raise UrlNotFound(f"Url {url_id} not found")
    target = target_for_url(session, url_id)
    slots = playlist_slots(session, playlist_id)
    if not slots:
        raise PlaylistNotFound(f"Playlist {playlist_id} has no slots")

    attempts = max_attempts or settings.slug_max_attempts
    for attempt in range(1, attempts + 1):
        pulse = Pulse(
            slug=slug_factory(),
            url_id=url_id,
            target_id=target.id,
            playlist_id=playlist_id,
            schedule_id=schedule_id,
            expected_slots=len(slots),
        )
        session.add(pulse)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning(
                f"Slug collision on attempt {attempt}/{attempts}, regenerating"
            )
            continue
        session.refresh(pulse)
        logger.info(
            f"Created pulse {pulse.id} with slug {pulse.slug}",
            extra={"pulse_slug": pulse.slug, "target_id": target.id},
        )
        return pulse

    raise SlugGenerationError(f"No unique slug after {attempts} attempts")


def transition(
    session: Session,
    pulse_id: int,
    from_statuses: Iterable[PulseStatus],
    to_status: PulseStatus,
) -> bool:
    """Move a pulse to ``to_status`` only if it is currently in ``from_statuses``.

    Returns False, without changing anything, when another writer got there
    first.
    """
    sources = frozenset(from_statuses)
    illegal = [s for s in sources if to_status not in LEGAL_TRANSITIONS[s]]
    if not sources or illegal:
        raise IllegalTransition(
            f"Cannot move {sorted(s.value for s in sources)} to {to_status.value}"
        )

    result = session.connection().execute(
        update(Pulse)
        .where(Pulse.id == pulse_id, Pulse.status.in_(list(sources)))  # type: ignore
        .values(status=to_status, updated_at=_now())
    )
    session.commit()
    return result.rowcount == 1


def get_pulse(session: Session, slug: str) -> Pulse:
    pulse = session.exec(select(Pulse).where(Pulse.slug == slug)).first()
    if pulse is None:
        raise PulseNotFound(f"Pulse {slug} not found")
    return pulse


def get_pulse_by_id(session: Session, pulse_id: int) -> Pulse:
    pulse = session.get(Pulse, pulse_id)
    if pulse is None:
        raise PulseNotFound(f"Pulse {pulse_id} not found")
    return pulse


def heartbeats_for(session: Session, pulse_id: int) -> List[Heartbeat]:
    """Accepted heartbeats of a pulse, in arrival order."""
    return list(
        session.exec(
            select(Heartbeat)
            .where(Heartbeat.pulse_id == pulse_id)
            .order_by(Heartbeat.received_at, Heartbeat.id)  # type: ignore
        ).all()
    )


def accepted_heartbeat_count(session: Session, pulse_id: int) -> int:
    return session.exec(
        select(func.count()).select_from(Heartbeat).where(Heartbeat.pulse_id == pulse_id)
    ).one()


def _sort_clause(sort: Optional[str]):
    """``created_at`` ascending, ``-created_at`` descending. Default newest first."""
    if not sort:
        return Pulse.created_at.desc()  # type: ignore
    field = sort.lstrip("-")
    if field not in SORTABLE_FIELDS:
        raise ValueError(f"Cannot sort pulses by {field}")
    column = getattr(Pulse, field)
    return column.desc() if sort.startswith("-") else column.asc()


def list_pulses(
    session: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    target_id: Optional[int] = None,
    url_id: Optional[int] = None,
    start_row: int = 0,
    end_row: Optional[int] = None,
    sort: Optional[str] = None,
) -> Tuple[List[Pulse], int]:
    """Pulses of live targets, filtered by creation date, with row-range paging."""
    conditions = [Target.deleted_at.is_(None)]  # type: ignore
    if date_from is not None:
        conditions.append(Pulse.created_at >= date_from)
    if date_to is not None:
        conditions.append(Pulse.created_at <= date_to)
    if target_id is not None:
        conditions.append(Pulse.target_id == target_id)
    if url_id is not None:
        conditions.append(Pulse.url_id == url_id)

    count = session.exec(
        select(func.count())
        .select_from(Pulse)
        .join(Target, Target.id == Pulse.target_id)  # type: ignore
        .where(*conditions)
    ).one()

    query = (
        select(Pulse)
        .join(Target, Target.id == Pulse.target_id)  # type: ignore
        .where(*conditions)
        .order_by(_sort_clause(sort), Pulse.id)  # type: ignore
        .offset(max(start_row, 0))
    )
    if end_row is not None:
        query = query.limit(max(end_row - start_row, 0))

    return list(session.exec(query).all()), count
