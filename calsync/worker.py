"""
Celery worker entry point
Runs calendar synchronization jobs
"""
import logging
from celery.signals import worker_ready, worker_shutdown

from calsync.config.celery_config import celery_app
from calsync.utils.my_logging import setup_logging

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    """Handle worker startup"""
    logger.info("🚀 Calendar sync worker ready!")
    logger.info(f"📋 Registered tasks: {sorted(name for name in celery_app.tasks.keys() if name.startswith('calsync.'))}")


@worker_shutdown.connect
def worker_shutdown_handler(sender=None, **kwargs):
    """Handle worker shutdown"""
    logger.info("🛑 Calendar sync worker shutting down...")


if __name__ == "__main__":
    # Run worker directly (add --beat for the periodic schedule in development)
    celery_app.start([
        'worker',
        '--loglevel=info',
        '--concurrency=4',
        '--max-tasks-per-child=1000',
        '-Q', 'calendar-sync',
    ])
