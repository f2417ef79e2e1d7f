"""Player account provisioning triggered by a CRM stage change."""

from fastapi import APIRouter, Depends, status

from app.dependencies import (
    AttributionFactory,
    BackendFactory,
    KommoFactory,
    WebhookBody,
    error_response,
    get_attribution_factory,
    get_backend_factory,
    get_kommo_factory,
    read_webhook_body,
    resolve_config_for_lead,
    route_status,
    tenant_not_found,
    undecodable_body,
)
from app.schemas.tenant import TenantConfig
from app.schemas.webhook import WebhookResponse
from app.services.payload_parser import extract_contact_hints, parse_lead_trigger
from app.services.player_service import PlayerService
from app.services.tenant_service import TenantRegistry, get_tenant_registry, validate_backend

router = APIRouter(prefix="/api")


@router.post("/{client_id}/create-player-from-kommo", response_model=WebhookResponse)
def create_player_from_kommo(
    client_id: str,
    body: WebhookBody = Depends(read_webhook_body),
    registry: TenantRegistry = Depends(get_tenant_registry),
    kommo_factory: KommoFactory = Depends(get_kommo_factory),
    backend_factory: BackendFactory = Depends(get_backend_factory),
    attribution_factory: AttributionFactory = Depends(get_attribution_factory),
):
    if not registry.is_known(client_id):
        return tenant_not_found(client_id)
    if body.payload is None:
        return undecodable_body(client_id, body)

    lead_id = parse_lead_trigger(body.payload)
    if lead_id is None:
        return WebhookResponse(success=False, message="Lead id not found in payload", client=client_id)

    resolved = resolve_config_for_lead(registry, client_id, lead_id, kommo_factory)
    if not isinstance(resolved, TenantConfig):
        return resolved
    errors = validate_backend(resolved)
    if errors:
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid configuration", errors)

    service = PlayerService(
        resolved,
        kommo_factory(resolved.kommo),
        backend_factory(resolved),
        attribution_factory(resolved.meta) if resolved.meta is not None else None,
    )
    outcome = service.provision(lead_id, extract_contact_hints(body.payload))
    return WebhookResponse(
        success=outcome.success,
        message=outcome.message,
        client=resolved.client_id,
        data=outcome.data,
        error=outcome.error,
    )


@router.get("/{client_id}/create-player-from-kommo")
def create_player_status(client_id: str, registry: TenantRegistry = Depends(get_tenant_registry)):
    return route_status(
        registry,
        client_id,
        "Ready to receive webhooks",
        lambda config: {error: False for error in validate_backend(config)},
    )
