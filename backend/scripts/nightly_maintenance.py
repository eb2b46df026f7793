"""CLI script for the nightly maintenance pass.

Refreshes the lifecycle status of every membership (active, upcoming
expiry, expired) for all active gyms and prunes audit entries older
than the retention window.

Usage: python scripts/nightly_maintenance.py [--date YYYY-MM-DD] [--retention-days N] [--skip-audit]
"""
import sys
import argparse
import logging
import pathlib
from datetime import date
from typing import Optional
# Ensure `backend/` is on sys.path so `gymdesk` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from gymdesk import repositories, services
from gymdesk.config import settings
from gymdesk.database import engine, create_db_and_tables

logger = logging.getLogger("gymdesk.maintenance")


def main(today: Optional[date] = None, retention_days: Optional[int] = None, skip_audit: bool = False) -> dict:
    """Run the maintenance pass and return per-run totals.

    Each gym is processed in its own transaction so one failing gym does
    not stop the others; failures are logged and counted.
    """
    today = today or date.today()
    create_db_and_tables()
    totals = {"gyms": 0, "memberships_changed": 0, "audit_deleted": 0, "failed": 0}
    with Session(engine, expire_on_commit=False) as session:
        gyms = repositories.GymRepository(session).list_active()
        for gym in gyms:
            try:
                changed = services.MembershipService(session, None, gym_id=gym.id).refresh_statuses(today)
                deleted = 0
                if not skip_audit:
                    deleted = services.AuditService(session, gym.id).cleanup(retention_days)
            except Exception:
                session.rollback()
                totals["failed"] += 1
                logger.exception("maintenance failed for gym %s", gym.id)
                continue
            totals["gyms"] += 1
            totals["memberships_changed"] += changed
            totals["audit_deleted"] += deleted
            print(f"Gym {gym.id} ({gym.name}): {changed} membership status change(s), {deleted} audit entr(ies) pruned")
    print(
        f"Processed {totals['gyms']} gym(s): {totals['memberships_changed']} status change(s), "
        f"{totals['audit_deleted']} audit entr(ies) pruned, {totals['failed']} failure(s)"
    )
    return totals


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    parser = argparse.ArgumentParser()
    parser.add_argument('--date', type=date.fromisoformat, help='Evaluate statuses as of this date (default: today)')
    parser.add_argument('--retention-days', type=int, help=f'Audit retention window (default: {settings.AUDIT_LOG_RETENTION_DAYS})')
    parser.add_argument('--skip-audit', action='store_true', help='Do not prune audit entries')
    args = parser.parse_args()
    result = main(today=args.date, retention_days=args.retention_days, skip_audit=args.skip_audit)
    sys.exit(1 if result["failed"] else 0)
