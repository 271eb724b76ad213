import asyncio
import logging
from celery import Celery
from celery.schedules import crontab

from config import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

TOKEN_REFRESH_INTERVAL_SECONDS = 300

# Create Celery app
redis_url = get_settings().redis_url
app = Celery("ghl_provisioning", broker=redis_url, backend=redis_url)

# Load celery config
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_concurrency=2,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
)

# Define periodic tasks
app.conf.beat_schedule = {
    "refresh-agency-tokens": {
        "task": "celery_worker.refresh_agency_tokens",
        "schedule": crontab(minute="*/5"),  # Every 5 minutes
        # A tick still queued when the next one is due is dropped
        "options": {"expires": TOKEN_REFRESH_INTERVAL_SECONDS - 10},
    },
}


@app.task(name="celery_worker.refresh_agency_tokens")
def refresh_agency_tokens():
    """Refresh every stored GHL token that expires within the grace window."""
    logger.info("Starting scheduled task: refresh_agency_tokens")
    try:
        from services.token_refresh import run_token_refresh

        result = asyncio.run(run_token_refresh())
        logger.info(f"Task refresh_agency_tokens completed: {result}")
        return result

    except Exception as e:
        # Left for the next tick; no retry or backoff
        logger.error(f"Error in task refresh_agency_tokens: {str(e)}")
        return {"error": str(e)}
