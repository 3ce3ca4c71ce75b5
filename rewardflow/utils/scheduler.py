"""
Background scheduler for automated tasks.

Handles:
- Referral expiry sweep (daily at 2 AM UTC)
- Replay of parked webhook events (every 15 minutes)

Expiry is also applied lazily when a referral is completed, so a missed
sweep never lets an expired referral complete.
"""
import os
import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Flask app reference for job app contexts


def init_scheduler(app):
    """
    Start the background scheduler.

    Only runs in production or when ENABLE_SCHEDULER=true, never in testing.
    Only one process per host starts it (gunicorn preloads the app).
    """
    global _scheduler, _flask_app

    _flask_app = app

    if app.config.get('TESTING'):
        logger.debug('[Scheduler] Disabled in testing mode')
        return

    if not (os.getenv('FLASK_ENV') == 'production' or os.getenv('ENABLE_SCHEDULER') == 'true'):
        logger.info('[Scheduler] Disabled (set FLASK_ENV=production or ENABLE_SCHEDULER=true)')
        return

    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,  # Combine missed runs
            'max_instances': 1,  # Prevent concurrent runs
            'misfire_grace_time': 3600
        }
    )

    _scheduler.add_job(
        run_referral_expiry,
        trigger=CronTrigger(hour=2, minute=0),
        id='referral_expiry',
        name='Expire stale pending referrals',
        replace_existing=True
    )

    _scheduler.add_job(
        run_parked_replay,
        trigger=IntervalTrigger(minutes=15),
        id='parked_webhook_replay',
        name='Replay parked webhook events',
        replace_existing=True
    )

    _scheduler.start()
    os.environ['SCHEDULER_RUNNING'] = 'true'
    logger.info('[Scheduler] Started: referral expiry daily 2:00 UTC, parked webhook replay every 15 min')

    atexit.register(shutdown_scheduler)


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def run_referral_expiry():
    """Expire every pending referral past its expires_at."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        from ..extensions import db
        from ..services.referral_service import ReferralService
        try:
            expired = ReferralService.expire_stale_referrals()
            logger.info(f'[Scheduler] Referral expiry complete: {expired} expired')
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'[Scheduler] Referral expiry failed: {e}')


def run_parked_replay():
    """Retry webhook events that were parked after repeated transient failures."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        from ..extensions import db
        from ..services.ingestion_service import replay_parked
        try:
            counts = replay_parked()
            if counts['processed'] or counts['parked']:
                logger.info(
                    f"[Scheduler] Parked replay: {counts['processed']} processed, "
                    f"{counts['parked']} still parked"
                )
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'[Scheduler] Parked replay failed: {e}')
