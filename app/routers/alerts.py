"""Operator endpoint that fires a test alert."""

import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from app.services.alert_service import LEVEL_MARKS, send_alert
from app.services.tenant_service import TenantRegistry, get_tenant_registry

router = APIRouter(prefix="/alerts")


class AlertTestResponse(BaseModel):
    success: bool
    message: str
    level: str


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = os.environ.get("ALERTS_ADMIN_TOKEN")
    if not expected:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "ALERTS_ADMIN_TOKEN not configured")
    if x_admin_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid admin token")


@router.post("/test", response_model=AlertTestResponse, dependencies=[Depends(require_admin_token)])
def alerts_test(
    level: str = Query(default="INFO"),
    registry: TenantRegistry = Depends(get_tenant_registry),
):
    level = level.upper()
    if level not in LEVEL_MARKS:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, f"Unknown alert level: {level}")

    context = {"source": "alerts.test", "clients": ", ".join(registry.client_ids) or "-"}
    if send_alert(level, "Alerts test", context):
        return AlertTestResponse(success=True, message="Alert sent", level=level)
    return AlertTestResponse(success=False, message="Alert not sent (check ALERT_BOT_TOKEN/ALERT_CHAT_ID)", level=level)
