"""Pulsewatch — Pulse Trigger.

Entry points that start a pulse: on demand from the API, or from a due
schedule. Both resolve who pays for the run, create the pulse, announce it,
and hand back the dispatch job. Dispatch itself runs after the caller has
its answer.
"""

from typing import List, Optional, Tuple

from sqlmodel import Session

from pulsewatch.connectors.worker.base import WorkerInvoker
from pulsewatch.models.catalog_models import Target, Url
from pulsewatch.models.event_models import EventType
from pulsewatch.models.pulse_models import Pulse
from pulsewatch.orchestrator.catalog import get_url_by_href
from pulsewatch.orchestrator.dispatch import DispatchJob, DispatchResult, SlotRef, dispatch
from pulsewatch.orchestrator.membership import MembershipPolicy, resolve_membership
from pulsewatch.orchestrator.notifications import NotificationHub, emit, hub
from pulsewatch.orchestrator.pulse_store import create_pulse, playlist_slots
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.trigger")


def build_dispatch_job(session: Session, pulse: Pulse, account_id: str) -> DispatchJob:
    """Everything the background dispatch needs, read while the session is open."""
    url = session.get(Url, pulse.url_id)
    target = session.get(Target, pulse.target_id)
    return DispatchJob(
        pulse_slug=pulse.slug,
        url=url.href,
        account_id=account_id,
        slots=[
            SlotRef(id=s.id, device=s.device, location=s.location)
            for s in playlist_slots(session, pulse.playlist_id)
        ],
        invoke_url=target.worker_invoke_url if target else None,
    )


def start_pulse(
    session: Session,
    url_id: int,
    playlist_id: int,
    account_id: str,
    notifier: NotificationHub = hub,
    schedule_id: Optional[int] = None,
) -> Tuple[Pulse, DispatchJob]:
    """Create and announce a pulse for a known url."""
    pulse = create_pulse(session, url_id, playlist_id, schedule_id=schedule_id)
    job = build_dispatch_job(session, pulse, account_id)
    emit(notifier, EventType.PULSE_CREATED, pulse.slug, pulse.status.value)
    return pulse, job


def trigger_pulse(
    session: Session,
    url: str,
    playlist_id: int,
    user_id: str,
    notifier: NotificationHub = hub,
    policy: Optional[MembershipPolicy] = None,
) -> Tuple[Pulse, DispatchJob]:
    """On-demand trigger by url in any spelling."""
    membership = resolve_membership(session, user_id, policy)
    url_record = get_url_by_href(session, url)
    return start_pulse(
        session, url_record.id, playlist_id, membership.account_id, notifier=notifier
    )


async def dispatch_and_close(
    job: DispatchJob, invoker: WorkerInvoker
) -> List[DispatchResult]:
    """Background-task wrapper: fire the job, then release the invoker."""
    try:
        return await dispatch(job, invoker)
    finally:
        await invoker.close()
