"""Scheduled job: start a new monthly upload cycle for every user.

Intended to run from cron on the first day of each month. Per-user resets
also happen lazily on the next allowance check, so a missed run only delays
the refresh until each user returns.
"""
from datetime import datetime
import logging
import sys

from sqlalchemy import func, select

from studio_quota.core.database import get_db_session, purchase_grants, store_operation, user_profiles
from studio_quota.features.allowance.reset import normalize_now, reset_all_allowances
from studio_quota.models.grant import GrantStatus

logger = logging.getLogger("studio_quota.workers.monthly_reset")


def run_monthly_reset(*, now: datetime | None = None, dry_run: bool = False) -> dict:
    now = normalize_now(now)

    if dry_run:
        # Same rows reset_all_allowances() updates
        with store_operation("monthly_reset_dry_run"):
            with get_db_session() as session:
                profiles = session.execute(
                    select(func.count()).select_from(user_profiles)
                ).scalar() or 0
                grants = session.execute(
                    select(func.count())
                    .select_from(purchase_grants)
                    .where(purchase_grants.c.status == GrantStatus.COMPLETED.value)
                ).scalar() or 0
        result = {"dry_run": True, "profiles_reset": profiles, "grants_reset": grants, "reset_at": now.isoformat()}
    else:
        summary = reset_all_allowances(now=now)
        result = {
            "dry_run": False,
            "profiles_reset": summary.profiles_reset,
            "grants_reset": summary.grants_reset,
            "reset_at": summary.reset_at.isoformat(),
        }

    logger.info("[monthly_reset] cycle complete", extra=result)
    return result


if __name__ == "__main__":
    print(run_monthly_reset(dry_run="--dry-run" in sys.argv[1:]))
