"""
Pytest configuration for Pulsewatch.

Provides fixtures for:
- A throwaway SQLite database per test
- A seeded catalog (target, url, playlist, membership)
- A notification hub that records every published event
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generator, List

import pytest
from sqlmodel import Session

from pulsewatch.database import build_engine, init_db
from pulsewatch.models.catalog_models import Membership, Playlist, Target, Url
from pulsewatch.models.event_models import PulseEvent
from pulsewatch.orchestrator.catalog import create_playlist, create_target, register_url
from pulsewatch.orchestrator.notifications import NotificationHub


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite so that threads see each other's commits."""
    eng = build_engine(f"sqlite:///{tmp_path / 'pulsewatch.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture(scope="function")
def notifier() -> NotificationHub:
    return NotificationHub()


@pytest.fixture(scope="function")
def events(notifier: NotificationHub) -> List[PulseEvent]:
    """Every event published on ``notifier`` during the test."""
    received: List[PulseEvent] = []
    notifier.subscribe(received.append)
    return received


@dataclass
class Catalog:
    target: Target
    url: Url
    membership: Membership
    make_playlist: Callable[[int], Playlist]


@pytest.fixture(scope="function")
def catalog(session: Session) -> Catalog:
    """One target with one url, a membership, and a playlist factory."""
    target = create_target(session, "Example Shop", stage=1, provider=2)
    url = register_url(session, target.id, "example.com/pricing")

    membership = Membership(user_id="user-1", account_id="acct-1", is_primary=True)
    session.add(membership)
    session.commit()
    session.refresh(membership)

    devices = ["mobile", "desktop"]
    locations = ["eu-west-1", "us-east-1", "ap-south-1"]

    def make_playlist(slot_count: int) -> Playlist:
        pairs = [(d, loc) for loc in locations for d in devices][:slot_count]
        return create_playlist(session, f"{slot_count}-slot playlist", pairs)

    return Catalog(target=target, url=url, membership=membership, make_playlist=make_playlist)
