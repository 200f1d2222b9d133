"""Pulsewatch — Projects & Schedules.

Projects own schedules; a schedule turns into one pulse per period.
Firing is claimed with a conditional update on ``next_run_at`` so that two
runners sweeping at once never start the same period twice.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, update
from sqlmodel import Session, select

from pulsewatch.models.schedule_models import Project, ProjectView, Schedule, ScheduleView
from pulsewatch.orchestrator.dispatch import DispatchJob
from pulsewatch.orchestrator.membership import (
    MembershipNotFound,
    MembershipPolicy,
    resolve_membership,
)
from pulsewatch.orchestrator.notifications import NotificationHub, hub
from pulsewatch.orchestrator.pulse_store import (
    PlaylistNotFound,
    SlugGenerationError,
    UrlNotFound,
    playlist_slots,
    target_for_url,
)
from pulsewatch.orchestrator.trigger import start_pulse
from pulsewatch.core.logging import get_logger

logger = get_logger("orchestrator.projects")


class ProjectNotFound(Exception):
    """Raised when a project is unknown or soft-deleted."""


class ScheduleNotFound(Exception):
    """Raised when a schedule is unknown or belongs to a deleted project."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Projects ──


def create_project(session: Session, name: str, description: str = "") -> Project:
    project = Project(name=name, description=description)
    session.add(project)
    session.commit()
    session.refresh(project)
    logger.info(f"Created project {project.id} ({name})")
    return project


def get_project(session: Session, project_id: int) -> Project:
    project = session.get(Project, project_id)
    if project is None or project.deleted_at is not None:
        raise ProjectNotFound(f"Project {project_id} not found")
    return project


def list_projects(session: Session) -> Tuple[List[Project], int]:
    live = Project.deleted_at.is_(None)  # type: ignore
    rows = session.exec(select(Project).where(live).order_by(Project.name)).all()  # type: ignore
    count = session.exec(select(func.count()).select_from(Project).where(live)).one()
    return list(rows), count


def update_project(
    session: Session,
    project_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Project:
    project = get_project(session, project_id)
    if name is not None:
        project.name = name
    if description is not None:
        project.description = description
    project.updated_at = _now()
    session.add(project)
    session.commit()
    session.refresh(project)
    return project


def delete_project(session: Session, project_id: int) -> None:
    """Soft delete. Its schedules stop firing; pulses they created stay."""
    project = get_project(session, project_id)
    now = _now()
    project.deleted_at = now
    project.updated_at = now
    session.add(project)
    for schedule in project_schedules(session, project_id):
        schedule.active = False
        session.add(schedule)
    session.commit()
    logger.info(f"Soft-deleted project {project_id}")


def project_schedules(session: Session, project_id: int) -> List[Schedule]:
    return list(
        session.exec(
            select(Schedule)
            .where(Schedule.project_id == project_id)
            .order_by(Schedule.id)  # type: ignore
        ).all()
    )


def project_view(session: Session, project: Project) -> ProjectView:
    return ProjectView(
        id=project.id,
        name=project.name,
        description=project.description,
        created_at=project.created_at.isoformat(),
        schedules=[schedule_view(s) for s in project_schedules(session, project.id)],
    )


# ── Schedules ──


def _check_interval(interval_seconds: int) -> None:
    if interval_seconds <= 0:
        raise ValueError("Schedule interval must be a positive number of seconds")


def create_schedule(
    session: Session,
    project_id: int,
    url_id: int,
    playlist_id: int,
    user_id: str,
    interval_seconds: int,
    start_at: Optional[datetime] = None,
) -> Schedule:
    """Add a schedule. The first pulse fires at ``start_at`` (default: now)."""
    _check_interval(interval_seconds)
    get_project(session, project_id)
    target = target_for_url(session, url_id)
    if not playlist_slots(session, playlist_id):
        raise PlaylistNotFound(f"Playlist {playlist_id} has no slots")

    schedule = Schedule(
        project_id=project_id,
        target_id=target.id,
        url_id=url_id,
        playlist_id=playlist_id,
        user_id=user_id,
        interval_seconds=interval_seconds,
        next_run_at=start_at or _now(),
    )
    session.add(schedule)
    session.commit()
    session.refresh(schedule)
    logger.info(
        f"Created schedule {schedule.id} every {interval_seconds}s",
        extra={"target_id": target.id},
    )
    return schedule


def get_schedule(session: Session, schedule_id: int) -> Schedule:
    schedule = session.get(Schedule, schedule_id)
    if schedule is None:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    project = session.get(Project, schedule.project_id)
    if project is None or project.deleted_at is not None:
        raise ScheduleNotFound(f"Schedule {schedule_id} not found")
    return schedule


def update_schedule(
    session: Session,
    schedule_id: int,
    interval_seconds: Optional[int] = None,
    active: Optional[bool] = None,
) -> Schedule:
    schedule = get_schedule(session, schedule_id)
    if interval_seconds is not None:
        _check_interval(interval_seconds)
        schedule.interval_seconds = interval_seconds
    if active is not None:
        schedule.active = active
    session.add(schedule)
    session.commit()
    session.refresh(schedule)
    return schedule


def delete_schedule(session: Session, schedule_id: int) -> None:
    """Remove a schedule that never fired; deactivate one that has pulses."""
    schedule = get_schedule(session, schedule_id)
    if schedule.last_pulse_id is None:
        session.delete(schedule)
    else:
        schedule.active = False
        session.add(schedule)
    session.commit()


def schedule_view(schedule: Schedule) -> ScheduleView:
    return ScheduleView(
        id=schedule.id,
        target_id=schedule.target_id,
        url_id=schedule.url_id,
        playlist_id=schedule.playlist_id,
        user_id=schedule.user_id,
        interval_seconds=schedule.interval_seconds,
        active=schedule.active,
        next_run_at=schedule.next_run_at.isoformat(),
        last_run_at=schedule.last_run_at.isoformat() if schedule.last_run_at else None,
        last_pulse_id=schedule.last_pulse_id,
    )


# ── Firing ──


def due_schedules(session: Session, now: Optional[datetime] = None) -> List[Schedule]:
    """Active schedules of live projects whose next run has come."""
    now = now or _now()
    return list(
        session.exec(
            select(Schedule)
            .join(Project, Project.id == Schedule.project_id)  # type: ignore
            .where(
                Schedule.active == True,  # noqa: E712
                Schedule.next_run_at <= now,
                Project.deleted_at.is_(None),  # type: ignore
            )
            .order_by(Schedule.next_run_at, Schedule.id)  # type: ignore
        ).all()
    )


def claim_schedule(session: Session, schedule: Schedule, now: datetime) -> bool:
    """Advance ``next_run_at`` past ``now`` if nobody else did since it was read.

    Missed periods are skipped rather than replayed.
    """
    result = session.connection().execute(
        update(Schedule)
        .where(
            Schedule.id == schedule.id,
            Schedule.next_run_at == schedule.next_run_at,
            Schedule.next_run_at <= now,
        )
        .values(
            next_run_at=now + timedelta(seconds=schedule.interval_seconds),
            last_run_at=now,
        )
    )
    session.commit()
    return result.rowcount == 1


def run_due_schedules(
    session: Session,
    now: Optional[datetime] = None,
    notifier: NotificationHub = hub,
    policy: Optional[MembershipPolicy] = None,
) -> List[DispatchJob]:
    """Create a pulse for every due schedule this runner claims.

    Returns the dispatch jobs; the caller fires them.
    """
    now = now or _now()
    jobs: List[DispatchJob] = []
    for schedule in due_schedules(session, now):
        schedule_id, user_id = schedule.id, schedule.user_id
        url_id, playlist_id = schedule.url_id, schedule.playlist_id
        if not claim_schedule(session, schedule, now):
            continue
        try:
            membership = resolve_membership(session, user_id, policy)
            pulse, job = start_pulse(
                session,
                url_id,
                playlist_id,
                membership.account_id,
                notifier=notifier,
                schedule_id=schedule_id,
            )
        except (MembershipNotFound, UrlNotFound, PlaylistNotFound, SlugGenerationError) as e:
            logger.warning(f"Schedule {schedule_id} skipped this period: {e}")
            continue

        claimed = session.get(Schedule, schedule_id)
        claimed.last_pulse_id = pulse.id
        session.add(claimed)
        session.commit()
        jobs.append(job)

    if jobs:
        logger.info(f"Schedules fired {len(jobs)} pulses")
    return jobs
