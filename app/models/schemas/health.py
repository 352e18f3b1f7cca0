"""
Health Check Schemas
Models for system health endpoints
"""
from typing import Dict, List

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    queue: str
    connectors: List[str] = []
    apps: Dict[str, str] = {}  # app_key -> connector
