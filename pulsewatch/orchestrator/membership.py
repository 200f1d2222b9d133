"""Pulsewatch — Membership Resolver.

Picks the account a dispatch is attributed to. Users may belong to several
accounts; ``primary`` prefers the membership flagged primary, ``first``
takes the oldest active one.
"""

from enum import Enum
from typing import Optional

from sqlmodel import Session, select

from pulsewatch.config import settings
from pulsewatch.models.catalog_models import Membership


class MembershipPolicy(str, Enum):
    PRIMARY = "primary"
    FIRST = "first"


class MembershipNotFound(Exception):
    """Raised when a user has no active membership to dispatch under."""


def resolve_membership(
    session: Session,
    user_id: str,
    policy: Optional[MembershipPolicy] = None,
) -> Membership:
    policy = policy or MembershipPolicy(settings.membership_policy)
    memberships = session.exec(
        select(Membership)
        .where(Membership.user_id == user_id, Membership.active == True)  # noqa: E712
        .order_by(Membership.created_at, Membership.id)  # type: ignore
    ).all()
    if not memberships:
        raise MembershipNotFound(f"User {user_id} has no active membership")

    if policy == MembershipPolicy.PRIMARY:
        for membership in memberships:
            if membership.is_primary:
                return membership
    return memberships[0]
