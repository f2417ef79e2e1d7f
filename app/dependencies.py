"""Request-scoped dependencies shared by the webhook routers."""

from dataclasses import dataclass
from typing import Callable, Optional, Union

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from app.logging_config import get_logger
from app.schemas.tenant import KommoConfig, MetaConfig, TenantConfig
from app.schemas.webhook import ErrorResponse, RouteStatusResponse, WebhookResponse
from app.services.attribution_service import AttributionClient, create_attribution_client
from app.services.kommo_service import KommoClient, create_kommo_client
from app.services.payload_parser import PayloadError, decode_body
from app.services.player_service import BackendClient
from app.services.tenant_service import TenantRegistry, resolve_tenant_for_lead, validate_tenant
from app.services.vision_service import VisionClassifier, get_vision_classifier

logger = get_logger("dependencies")

KommoFactory = Callable[[KommoConfig], KommoClient]
AttributionFactory = Callable[[MetaConfig], AttributionClient]
BackendFactory = Callable[[TenantConfig], BackendClient]


@dataclass
class WebhookBody:
    payload: Optional[dict]
    error: Optional[str] = None
    disconnected: bool = False


async def read_webhook_body(request: Request) -> WebhookBody:
    """Read and decode the raw body so sync endpoints get a plain dict."""
    try:
        raw = await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during body read", extra={"context": {"path": request.url.path}})
        return WebhookBody(None, "Client disconnected", disconnected=True)

    try:
        payload = decode_body(raw, request.headers.get("content-type"))
    except PayloadError as exc:
        logger.warning(
            "Webhook payload could not be decoded",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookBody(None, str(exc))
    return WebhookBody(payload)


def get_kommo_factory() -> KommoFactory:
    return create_kommo_client


def get_classifier() -> VisionClassifier:
    return get_vision_classifier()


def get_attribution_factory() -> AttributionFactory:
    return create_attribution_client


def create_backend_client(config: TenantConfig) -> BackendClient:
    return BackendClient(config.backend, config.proxy)


def get_backend_factory() -> BackendFactory:
    return create_backend_client


def error_response(status_code: int, error: str, details: Optional[list[str]] = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def tenant_not_found(client_id: str) -> JSONResponse:
    return error_response(status.HTTP_404_NOT_FOUND, f"Client '{client_id}' not found")


def undecodable_body(client_id: str, body: WebhookBody) -> WebhookResponse:
    return WebhookResponse(success=body.disconnected, message=body.error or "Empty payload", client=client_id)


def resolve_config_for_lead(
    registry: TenantRegistry,
    client_id: str,
    lead_id: int,
    kommo_factory: KommoFactory,
) -> Union[TenantConfig, WebhookResponse, JSONResponse]:
    """Tenant config for a lead, or the response to send instead."""
    errors = validate_tenant(registry.base_config(client_id))
    if errors:
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid configuration", errors)

    resolved = resolve_tenant_for_lead(registry, client_id, lead_id, kommo_factory)
    if resolved.ok:
        errors = validate_tenant(resolved.value)
        if errors:
            return error_response(status.HTTP_400_BAD_REQUEST, "Invalid configuration", errors)
        return resolved.value
    if resolved.error_code == "pipeline_not_configured":
        return WebhookResponse(
            success=True,
            message=f"{resolved.error} - event ignored",
            client=client_id,
            data={"lead_id": lead_id},
        )
    return WebhookResponse(success=False, message=resolved.error, client=client_id, data={"lead_id": lead_id})


def route_status(
    registry: TenantRegistry,
    client_id: str,
    ready_message: str,
    requirements: Optional[Callable[[TenantConfig], dict[str, bool]]] = None,
):
    """Configuration status of one route for one tenant or pipeline group."""
    if not registry.is_known(client_id):
        body = RouteStatusResponse(
            status="error", client=client_id, configured=False, message=f"Client '{client_id}' not found"
        )
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body.model_dump(exclude_none=True))

    base = registry.base_config(client_id)
    required = requirements(base) if requirements else {}
    missing = [name for name, ok in required.items() if not ok] + validate_tenant(base)
    extra = {"missing": missing} if missing else None
    mode = "single"
    if registry.is_pipeline_group(client_id):
        mode = "pipeline_group"
        extra = {**(extra or {}), "base": base.client_id}
    return RouteStatusResponse(
        status="ok" if not missing else "incomplete",
        client=client_id,
        configured=not missing,
        message=ready_message if not missing else "Route not fully configured for this client",
        mode=mode,
        extra=extra,
    )
