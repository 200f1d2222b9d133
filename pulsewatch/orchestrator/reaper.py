"""Pulsewatch — Reaper.

Expires pulses whose workers never (fully) reported. Uses the same
conditional transition as the heartbeat path, so a pulse completing at the
same moment is simply left alone.

Also re-runs finalize for Completed pulses that have no Statistic, which
happens when the heartbeat that completed them failed to finalize.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlmodel import Session, select

from pulsewatch.config import settings
from pulsewatch.models.baseline_models import Statistic
from pulsewatch.models.event_models import EventType
from pulsewatch.models.pulse_models import Pulse, PulseStatus
from pulsewatch.orchestrator.baseline_engine import finalize
from pulsewatch.orchestrator.notifications import NotificationHub, emit, hub
from pulsewatch.orchestrator.pulse_store import transition
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.reaper")

OPEN_STATUSES = (PulseStatus.PENDING, PulseStatus.IN_PROGRESS)


def reap_stalled_pulses(
    session: Session,
    now: Optional[datetime] = None,
    timeout_seconds: Optional[int] = None,
    notifier: NotificationHub = hub,
) -> List[str]:
    """Time out every open pulse created before ``now - timeout``.

    Returns the slugs this sweep expired.
    """
    now = now or datetime.now(timezone.utc)
    timeout = timeout_seconds if timeout_seconds is not None else settings.pulse_timeout_seconds
    cutoff = now - timedelta(seconds=timeout)

    stalled = session.exec(
        select(Pulse.id, Pulse.slug).where(
            Pulse.status.in_(OPEN_STATUSES),  # type: ignore
            Pulse.created_at < cutoff,
        )
    ).all()

    expired: List[str] = []
    for pulse_id, slug in stalled:
        if transition(session, pulse_id, OPEN_STATUSES, PulseStatus.TIMED_OUT):
            expired.append(slug)
            logger.info("Pulse timed out", extra={"pulse_slug": slug})
            emit(notifier, EventType.PULSE_TIMED_OUT, slug, PulseStatus.TIMED_OUT.value)

    if stalled:
        logger.info(f"Reaper sweep: {len(expired)}/{len(stalled)} stalled pulses expired")
    return expired


def repair_unfinalized_pulses(
    session: Session,
    finalizer: Callable = finalize,
) -> List[str]:
    """Finalize Completed pulses that never got their Statistic.

    Oldest completion first, so baseline windows fold in completion order.
    Returns the slugs that now have a Statistic.
    """
    orphans = session.exec(
        select(Pulse)
        .outerjoin(Statistic, Statistic.pulse_id == Pulse.id)  # type: ignore
        .where(Pulse.status == PulseStatus.COMPLETED, Statistic.id.is_(None))  # type: ignore
        .order_by(Pulse.updated_at, Pulse.id)  # type: ignore
    ).all()

    repaired: List[str] = []
    for pulse in orphans:
        slug = pulse.slug
        try:
            statistic = finalizer(session, pulse)
        except Exception:
            session.rollback()
            logger.exception("Finalize repair failed", extra={"pulse_slug": slug})
            continue
        if statistic is not None:
            repaired.append(slug)
            logger.info("Finalize repaired", extra={"pulse_slug": slug})

    if orphans:
        logger.info(f"Repair sweep: {len(repaired)}/{len(orphans)} pulses finalized")
    return repaired
