from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    success: bool
    message: str
    client: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[list[str]] = None


class RouteStatusResponse(BaseModel):
    status: str
    client: str
    configured: bool
    message: str
    mode: Optional[str] = None
    extra: Optional[dict[str, Any]] = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
