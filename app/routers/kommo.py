"""Kommo message webhooks: payment-proof flow and tracking-id capture."""

from fastapi import APIRouter, Depends, status

from app.dependencies import (
    KommoFactory,
    WebhookBody,
    error_response,
    get_classifier,
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
from app.services.attribution_service import extract_tracking_id
from app.services.payload_parser import parse_lead_trigger, parse_message_event
from app.services.proof_service import handle_message_event
from app.services.tenant_service import TenantRegistry, get_tenant_registry
from app.services.vision_service import VisionClassifier

logger = get_logger("kommo_router")

router = APIRouter(prefix="/api")


@router.post("/{client_id}/kommo-message-received", response_model=WebhookResponse)
def kommo_message_received(
    client_id: str,
    body: WebhookBody = Depends(read_webhook_body),
    registry: TenantRegistry = Depends(get_tenant_registry),
    kommo_factory: KommoFactory = Depends(get_kommo_factory),
    classifier: VisionClassifier = Depends(get_classifier),
):
    if not registry.is_known(client_id):
        return tenant_not_found(client_id)
    if body.payload is None:
        return undecodable_body(client_id, body)

    event = parse_message_event(body.payload)
    if event is None:
        logger.info("Unrecognized webhook payload", extra={"context": {"client_id": client_id}})
        return WebhookResponse(success=True, message="Unrecognized payload - ignored", client=client_id)
    if event.lead_id is None:
        logger.info("Message without lead id", extra={"context": {"client_id": client_id, "strategy": event.source}})
        return WebhookResponse(success=True, message="No lead id - ignored", client=client_id)

    logger.info(
        "Message event received",
        extra={"context": {"client_id": client_id, "lead_id": event.lead_id, "strategy": event.source}},
    )
    resolved = resolve_config_for_lead(registry, client_id, event.lead_id, kommo_factory)
    if not isinstance(resolved, TenantConfig):
        return resolved

    outcome = handle_message_event(event, resolved, kommo_factory(resolved.kommo), classifier)
    return WebhookResponse(
        success=outcome.success,
        message=outcome.message,
        client=resolved.client_id,
        data=outcome.response_data(),
    )


@router.get("/{client_id}/kommo-message-received")
def kommo_message_received_status(client_id: str, registry: TenantRegistry = Depends(get_tenant_registry)):
    return route_status(
        registry,
        client_id,
        "Ready to receive message webhooks",
        lambda config: {
            "waiting_for_proof stage": config.kommo.stages.waiting_for_proof is not None,
            "proof_received stage": config.kommo.stages.proof_received is not None,
        },
    )


@router.post("/{client_id}/save-tracking-id", response_model=WebhookResponse)
def save_tracking_id(
    client_id: str,
    body: WebhookBody = Depends(read_webhook_body),
    registry: TenantRegistry = Depends(get_tenant_registry),
    kommo_factory: KommoFactory = Depends(get_kommo_factory),
):
    if not registry.is_known(client_id):
        return tenant_not_found(client_id)
    if body.payload is None:
        return undecodable_body(client_id, body)

    event = parse_message_event(body.payload)
    lead_id = event.lead_id if event is not None else parse_lead_trigger(body.payload)
    if lead_id is None:
        return WebhookResponse(success=True, message="No lead id - ignored", client=client_id)

    tracking_id = extract_tracking_id(event.message_text if event is not None else None)
    if tracking_id is None:
        logger.info("No tracking id in message", extra={"context": {"client_id": client_id, "lead_id": lead_id}})
        return WebhookResponse(
            success=True, message="No tracking id in message - ignored", client=client_id, data={"lead_id": lead_id}
        )

    resolved = resolve_config_for_lead(registry, client_id, lead_id, kommo_factory)
    if not isinstance(resolved, TenantConfig):
        return resolved
    data = {"lead_id": lead_id, "tracking_id": tracking_id}
    if resolved.kommo.tracking_id_field_id is None:
        return error_response(status.HTTP_400_BAD_REQUEST, "Tracking id field not configured")

    if not kommo_factory(resolved.kommo).write_lead_state(lead_id, tracking_id=tracking_id):
        return WebhookResponse(
            success=False,
            message="Failed to save tracking id",
            client=resolved.client_id,
            error="Failed to save tracking id to lead",
            data=data,
        )

    logger.info("Tracking id saved", extra={"context": {"client_id": resolved.client_id, **data}})
    return WebhookResponse(success=True, message="Tracking id saved", client=resolved.client_id, data=data)


@router.get("/{client_id}/save-tracking-id")
def save_tracking_id_status(client_id: str, registry: TenantRegistry = Depends(get_tenant_registry)):
    return route_status(
        registry,
        client_id,
        "Save tracking id endpoint ready",
        lambda config: {"tracking_id_field_id": config.kommo.tracking_id_field_id is not None},
    )
