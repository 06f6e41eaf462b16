"""
User domain service.
- ensure_user(user_id, email)
- get_user(user_id)
- profile / subscription loading (lazy profile creation)

Rows are converted into frozen pydantic records here; nothing past this
module sees raw result rows.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from studio_quota.core.database import (
    get_db_session,
    insert_ignore,
    store_operation,
    subscriptions,
    user_profiles,
    users as app_users,
)
from studio_quota.models.profile import UserProfile
from studio_quota.models.subscription import Subscription
from studio_quota.models.user import User


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def user_from_row(row) -> User:
    return User(user_id=row.user_id, email=row.email, created_at=as_utc(row.created_at))


def profile_from_row(row) -> UserProfile:
    return UserProfile(
        user_id=row.user_id,
        base_used=int(row.base_used or 0),
        base_limit_override=row.base_limit_override,
        last_monthly_reset=as_utc(row.last_monthly_reset),
    )


def subscription_from_row(row) -> Subscription:
    return Subscription(
        user_id=row.user_id,
        plan_tier=row.plan_tier,
        status=row.status,
        limit_override=row.limit_override,
    )


def load_user(session: Session, user_id: str) -> Optional[User]:
    row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
    return user_from_row(row) if row else None


def load_profile(session: Session, user_id: str) -> Optional[UserProfile]:
    row = session.execute(
        select(user_profiles).where(user_profiles.c.user_id == user_id)
    ).first()
    return profile_from_row(row) if row else None


def load_or_create_profile(session: Session, user_id: str) -> UserProfile:
    """Return the user's profile, creating an empty one on first lookup."""
    profile = load_profile(session, user_id)
    if profile is not None:
        return profile
    insert_ignore(
        session,
        user_profiles,
        {"user_id": user_id, "base_used": 0},
        index_elements=["user_id"],
    )
    return load_profile(session, user_id)


def load_subscription(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.user_id == user_id)
    ).first()
    return subscription_from_row(row) if row else None


def get_user(user_id: str) -> Optional[User]:
    with store_operation("get_user", user_id=user_id):
        with get_db_session() as session:
            return load_user(session, user_id)


def ensure_user(user_id: str, email: Optional[str] = None) -> User:
    """
    Create the user (and an empty profile) if missing. Idempotent.

    A supplied email replaces a missing one but never overwrites an existing
    address; identity changes belong to the auth provider sync.
    """
    normalized = User.normalized_email(email)
    now = datetime.now(timezone.utc)
    with store_operation("ensure_user", user_id=user_id):
        with get_db_session() as session:
            insert_ignore(
                session,
                app_users,
                {"user_id": user_id, "email": normalized, "created_at": now},
                index_elements=["user_id"],
            )
            if normalized:
                session.execute(
                    update(app_users)
                    .where(app_users.c.user_id == user_id)
                    .where(app_users.c.email.is_(None))
                    .values(email=normalized)
                )
            load_or_create_profile(session, user_id)
            return load_user(session, user_id)


def get_user_by_email(email: str) -> Optional[User]:
    normalized = User.normalized_email(email)
    if not normalized:
        return None
    with store_operation("get_user_by_email"):
        with get_db_session() as session:
            row = session.execute(
                select(app_users).where(app_users.c.email == normalized)
            ).first()
            return user_from_row(row) if row else None
