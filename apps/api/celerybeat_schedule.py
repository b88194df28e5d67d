"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Close subscriptions whose period ended without a provider event.
    'reconcile-subscriptions': {
        'task': 'tasks.reconcile_subscriptions',
        'schedule': crontab(minute=5),  # Hourly, 5 past
    },
    # Processed webhook events are kept 30 days for idempotency.
    'purge-processed-events': {
        'task': 'tasks.purge_processed_events',
        'schedule': crontab(hour=3, minute=30),  # Daily, 03:30 UTC
    },
}
