"""Purchase reporting when a lead reaches the transferred stage."""

from fastapi import APIRouter, Depends, status

from app.dependencies import (
    AttributionFactory,
    KommoFactory,
    WebhookBody,
    error_response,
    get_attribution_factory,
    get_kommo_factory,
    read_webhook_body,
    resolve_config_for_lead,
    route_status,
    tenant_not_found,
    undecodable_body,
)
from app.logging_config import get_logger
from app.schemas.tenant import TenantConfig
from app.schemas.webhook import WebhookResponse
from app.services.attribution_service import report_purchase
from app.services.payload_parser import parse_lead_trigger
from app.services.tenant_service import TenantRegistry, get_tenant_registry

logger = get_logger("conversion_router")

router = APIRouter(prefix="/api")


@router.post("/{client_id}/meta-conversion", response_model=WebhookResponse)
def meta_conversion(
    client_id: str,
    body: WebhookBody = Depends(read_webhook_body),
    registry: TenantRegistry = Depends(get_tenant_registry),
    kommo_factory: KommoFactory = Depends(get_kommo_factory),
    attribution_factory: AttributionFactory = Depends(get_attribution_factory),
):
    if not registry.is_known(client_id):
        return tenant_not_found(client_id)
    if registry.base_config(client_id).meta is None:
        return error_response(status.HTTP_400_BAD_REQUEST, "Attribution not configured")
    if body.payload is None:
        return undecodable_body(client_id, body)

    lead_id = parse_lead_trigger(body.payload, actions=("status", "update"))
    if lead_id is None:
        return WebhookResponse(success=False, message="Could not extract lead id", client=client_id)

    resolved = resolve_config_for_lead(registry, client_id, lead_id, kommo_factory)
    if not isinstance(resolved, TenantConfig):
        return resolved
    if resolved.meta is None:
        return error_response(status.HTTP_400_BAD_REQUEST, "Attribution not configured")

    outcome = report_purchase(resolved, kommo_factory(resolved.kommo), attribution_factory(resolved.meta), lead_id)
    logger.info(
        outcome.message,
        extra={"context": {"client_id": resolved.client_id, "lead_id": lead_id, "success": outcome.success}},
    )
    return WebhookResponse(
        success=outcome.success,
        message=outcome.message,
        client=resolved.client_id,
        data=outcome.data,
        error=outcome.error,
    )


@router.get("/{client_id}/meta-conversion")
def meta_conversion_status(client_id: str, registry: TenantRegistry = Depends(get_tenant_registry)):
    return route_status(
        registry,
        client_id,
        "Meta conversion endpoint ready",
        lambda config: {"meta": config.meta is not None},
    )
