"""
Scheduled Tasks Module
Runs the heartbeat sweep and broadcast reconciliation in the background
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

logger = logging.getLogger(__name__)
scheduler = None


def scheduled_health_sweep_task(app):
    """
    Scheduled task to mark stale screens offline and alert their owners
    Runs every HEALTH_SWEEP_INTERVAL_SECONDS
    """
    with app.app_context():
        try:
            result = app.control_plane.health.sweep()
            logger.debug(f"Health sweep completed: {result['checked_at']}")
            if result['errors']:
                logger.warning(f"Health sweep finished with {result['errors']} failed record(s)")
        except Exception as e:
            logger.error(f"Error in health sweep task: {e}")


def scheduled_reconcile_task(app):
    """
    Scheduled task to align broadcast sessions with the booking schedule
    Runs every RECONCILE_INTERVAL_SECONDS
    """
    with app.app_context():
        try:
            result = app.control_plane.broadcasts.reconcile_all()
            if result['changed']:
                logger.info(f"Reconcile changed {len(result['changed'])} screen(s): {result['changed']}")
        except Exception as e:
            logger.error(f"Error in reconcile task: {e}")


def init_scheduler(app):
    """
    Initialize and start the background scheduler

    Args:
        app: Flask application instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return

    if not app.config.get('SCHEDULER_ENABLED'):
        logger.info("Scheduler disabled by configuration")
        return

    try:
        scheduler = BackgroundScheduler()

        sweep_interval = app.config['HEALTH_SWEEP_INTERVAL_SECONDS']
        scheduler.add_job(
            func=scheduled_health_sweep_task,
            trigger=IntervalTrigger(seconds=sweep_interval),
            args=[app],
            id='health_sweep',
            name='Heartbeat staleness sweep',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"Health monitoring started - Sweeps every {sweep_interval} seconds")

        reconcile_interval = app.config['RECONCILE_INTERVAL_SECONDS']
        scheduler.add_job(
            func=scheduled_reconcile_task,
            trigger=IntervalTrigger(seconds=reconcile_interval),
            args=[app],
            id='broadcast_reconcile',
            name='Broadcast schedule reconciliation',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"Broadcast reconciliation started - Every {reconcile_interval} seconds")

        scheduler.start()
        logger.info("Scheduler started successfully")

    except Exception as e:
        scheduler = None
        logger.error(f"Failed to initialize scheduler: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler, letting an in-flight job finish"""
    global scheduler

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=True)
            logger.info("Scheduler shut down")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        finally:
            scheduler = None
