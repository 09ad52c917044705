"""
Dramatiq Background Worker
Processes long-running PracticePanther syncs and token refreshes

Usage:
    dramatiq worker -p 2 -t 2

Keep process/thread counts low: every sync flow shares the provider's rate
limit, and a wider pool only produces more 429 cooldowns.
"""
import logging

from app.core.config import settings
from app.core.observability import configure_logging, init_sentry

configure_logging(settings)
logger = logging.getLogger(__name__)

init_sentry(settings, component="worker")

# Importing the actors registers them with the broker the Dramatiq CLI loads
try:
    from app.services.jobs.broker import broker  # noqa: F401
    from app.services.jobs.tasks import (  # noqa: F401
        full_sync_task,
        refresh_token_task,
        sync_entity_task,
    )
except Exception as e:
    logger.error(f"❌ Failed to initialize worker: {e}", exc_info=True)
    raise

logger.info(f"✅ PracticePanther sync worker ready ({type(broker).__name__})")
logger.info("📋 Actors: sync_entity_task, full_sync_task, refresh_token_task")
