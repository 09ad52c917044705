"""
Health Check Schemas
Models for system health endpoints
"""
from typing import Optional
from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    record_store: str
    token_status: Optional[str] = None
    queue: Optional[str] = None
