"""Periodic maintenance sweeps.

Every sweep is safe to re-run and never raises: a failure is logged and the
next scheduled run tries again.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import select

from models import Account

logger = logging.getLogger(__name__)


def purge_expired_shares(services):
    logger.info("Starting expired shares cleanup")
    try:
        count = services.shares.purge_expired()
    except Exception:
        logger.exception("Expired shares cleanup failed")
        return None
    logger.info("Expired shares cleanup completed: %d deleted", count)
    return count


def reconcile_quota(services, account_id):
    with services.Session() as session:
        used = services.ledger.reconcile(session, account_id)
        session.commit()
    return used


def reconcile_all_quotas(services):
    logger.info("Starting quota reconciliation")
    with services.Session() as session:
        account_ids = session.execute(select(Account.id)).scalars().all()

    reconciled = 0
    for account_id in account_ids:
        try:
            reconcile_quota(services, account_id)
            reconciled += 1
        except Exception:
            logger.exception("Quota reconciliation failed for account %s", account_id)
    logger.info("Quota reconciliation completed for %d accounts", reconciled)
    return reconciled


def purge_old_trash(services):
    logger.info("Starting trash cleanup")
    try:
        result = services.trash.purge_expired()
    except Exception:
        logger.exception("Trash cleanup failed")
        return None
    logger.info("Trash cleanup completed: %s", result)
    return result


def reap_stale_uploads(services):
    try:
        return services.uploads.reap_stale()
    except Exception:
        logger.exception("Stale upload cleanup failed")
        return None


def requeue_stalled_scans(services):
    try:
        return services.queue.requeue_stalled()
    except Exception:
        logger.exception("Requeueing stalled scan jobs failed")
        return None


def build_scheduler(services):
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=purge_expired_shares,
        args=[services],
        trigger="interval",
        hours=1,
        id="purge_expired_shares",
        name="Delete expired shares",
        replace_existing=True,
    )
    scheduler.add_job(
        func=reconcile_all_quotas,
        args=[services],
        trigger="cron",
        hour=0,
        minute=0,
        id="reconcile_all_quotas",
        name="Reconcile storage quotas",
        replace_existing=True,
    )
    scheduler.add_job(
        func=purge_old_trash,
        args=[services],
        trigger="cron",
        hour=2,
        minute=0,
        id="purge_old_trash",
        name="Purge old trash",
        replace_existing=True,
    )
    scheduler.add_job(
        func=reap_stale_uploads,
        args=[services],
        trigger="interval",
        minutes=15,
        id="reap_stale_uploads",
        name="Abort stale upload sessions",
        replace_existing=True,
    )
    scheduler.add_job(
        func=requeue_stalled_scans,
        args=[services],
        trigger="interval",
        minutes=5,
        id="requeue_stalled_scans",
        name="Requeue stalled scan jobs",
        replace_existing=True,
    )
    return scheduler
