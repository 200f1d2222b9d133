"""Pulsewatch — Target, Url & Playlist catalog."""

import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from pulsewatch.config import settings
from pulsewatch.core.urls import canonicalize_url
from pulsewatch.models.catalog_models import (
    Playlist,
    PlaylistSlot,
    Target,
    TargetUrl,
    Url,
)
from pulsewatch.orchestrator.pulse_store import UrlNotFound
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.catalog")


class TargetNotFound(Exception):
    """Raised when a target is unknown or soft-deleted."""


class TargetSlugTaken(Exception):
    """Raised when no free slug could be found for a new target."""


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "target"


def create_target(
    session: Session,
    name: str,
    stage: int,
    provider: int,
    slug: Optional[str] = None,
    worker_invoke_url: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> Target:
    """Create a target. A slug derived from the name gets a numeric suffix
    when taken; an explicitly requested slug must be free.
    """
    base = slug or _slugify(name)
    attempts = max_attempts or settings.slug_max_attempts
    candidates = [base] if slug else [base] + [f"{base}-{n}" for n in range(2, attempts + 1)]

    for candidate in candidates:
        target = Target(
            name=name,
            stage=stage,
            provider=provider,
            slug=candidate,
            worker_invoke_url=worker_invoke_url,
        )
        session.add(target)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"Target slug {candidate} taken")
            continue
        session.refresh(target)
        logger.info(f"Created target {target.slug}", extra={"target_id": target.id})
        return target

    raise TargetSlugTaken(f"Target slug {base} is already taken")


def get_target(session: Session, target_id: int) -> Target:
    target = session.get(Target, target_id)
    if target is None or target.deleted_at is not None:
        raise TargetNotFound(f"Target {target_id} not found")
    return target


def list_targets(session: Session) -> List[Target]:
    return list(
        session.exec(
            select(Target).where(Target.deleted_at.is_(None)).order_by(Target.name)  # type: ignore
        ).all()
    )


def soft_delete_target(session: Session, target_id: int) -> None:
    """Hide a target. Its pulses, baselines and statistics are kept."""
    target = get_target(session, target_id)
    now = datetime.now(timezone.utc)
    target.deleted_at = now
    target.updated_at = now
    session.add(target)
    session.commit()
    logger.info(f"Soft-deleted target {target.slug}", extra={"target_id": target_id})


def get_url_by_href(session: Session, href: str) -> Url:
    """Look up a url by any spelling of it."""
    canonical = canonicalize_url(href)
    url = session.exec(select(Url).where(Url.href == canonical)).first()
    if url is None:
        raise UrlNotFound(f"Url {canonical} is not registered")
    return url


def register_url(session: Session, target_id: int, href: str) -> Url:
    """Attach a url to a target, creating the url record if needed."""
    get_target(session, target_id)
    canonical = canonicalize_url(href)

    url = session.exec(select(Url).where(Url.href == canonical)).first()
    if url is None:
        url = Url(href=canonical)
        session.add(url)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            url = session.exec(select(Url).where(Url.href == canonical)).first()
        session.refresh(url)

    if session.get(TargetUrl, (target_id, url.id)) is None:
        session.add(TargetUrl(target_id=target_id, url_id=url.id))
        session.commit()
    return url


def list_urls(session: Session, target_id: Optional[int] = None) -> List[Tuple[Url, int]]:
    """(url, target_id) pairs for live targets."""
    query = (
        select(Url, TargetUrl.target_id)
        .join(TargetUrl, TargetUrl.url_id == Url.id)  # type: ignore
        .join(Target, Target.id == TargetUrl.target_id)  # type: ignore
        .where(Target.deleted_at.is_(None))  # type: ignore
        .order_by(Url.href)  # type: ignore
    )
    if target_id is not None:
        query = query.where(TargetUrl.target_id == target_id)
    return [(url, tid) for url, tid in session.exec(query).all()]


def create_playlist(
    session: Session, name: str, slots: List[Tuple[str, str]]
) -> Playlist:
    """Create a playlist from (device, location) pairs."""
    playlist = Playlist(name=name)
    session.add(playlist)
    session.flush()
    for device, location in slots:
        session.add(PlaylistSlot(playlist_id=playlist.id, device=device, location=location))
    session.commit()
    session.refresh(playlist)
    return playlist
