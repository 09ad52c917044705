"""
Background Job Queue
Dramatiq-based async task processing
"""
from app.services.jobs.broker import broker
from app.services.jobs.tasks import full_sync_task, refresh_token_task, sync_entity_task

__all__ = ["broker", "sync_entity_task", "full_sync_task", "refresh_token_task"]
