"""
Subscription maintenance tasks.

Runs via Celery Beat scheduler (see celerybeat_schedule.py).
"""

from typing import Dict
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.entitlements import reconcile_subscriptions
from services.payment_events import purge_processed_events
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.reconcile_subscriptions", bind=True)
def reconcile_subscriptions_task(self: Task) -> Dict:
    """
    Cancel subscriptions whose period ended with cancel-at-period-end set, or
    that stayed past_due beyond the grace window.

    Covers provider deletions whose webhook never arrived.
    """
    db: Session = get_db_sync()
    try:
        counts = reconcile_subscriptions(db)
        logger.info(
            f"Subscription reconciliation complete: {counts}",
            extra={"extra_fields": {"task": "reconcile_subscriptions", **counts}},
        )
        return {"status": "success", **counts}
    except Exception:
        db.rollback()
        logger.error("Subscription reconciliation failed", exc_info=True)
        raise
    finally:
        db.close()


@celery_app.task(name="tasks.purge_processed_events", bind=True)
def purge_processed_events_task(self: Task) -> Dict:
    """Drop processed payment-event rows past their retention window."""
    db: Session = get_db_sync()
    try:
        deleted = purge_processed_events(db)
        logger.info(
            f"Purged {deleted} processed payment events",
            extra={"extra_fields": {"task": "purge_processed_events", "deleted": deleted}},
        )
        return {"status": "success", "deleted": deleted}
    except Exception:
        db.rollback()
        logger.error("Processed-event purge failed", exc_info=True)
        raise
    finally:
        db.close()
