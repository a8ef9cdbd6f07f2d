import asyncio
import logging
from celery import Celery
from celery.signals import worker_process_init

from bodega import config

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

celery_app = Celery(
    'bodega',
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=['bodega.tasks.transactions', 'bodega.tasks.assets']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='America/Santiago',
    enable_utc=True,
    beat_schedule={
        'drain-pending-transactions': {
            'task': 'drain_pending_transactions',
            'schedule': config.SYNC_INTERVAL,
        },
    }
)


async def _bootstrap():
    from bodega.db import close_db_pool, init_db_pool, init_schema

    await init_db_pool()
    try:
        await init_schema()
    finally:
        await close_db_pool()


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Makes sure the tables exist before the first task runs."""
    logger.info("Worker process initializing... Checking DB schema.")
    try:
        asyncio.run(_bootstrap())
    except Exception:
        logger.exception("Schema bootstrap failed; tasks will report store errors.")


if __name__ == '__main__':
    celery_app.start()
