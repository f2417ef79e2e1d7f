from app.schemas.tenant import BackendConfig, KommoConfig, MetaConfig, ProxyConfig, StageMap, TenantConfig
from app.schemas.webhook import ErrorResponse, RouteStatusResponse, WebhookResponse

__all__ = [
    "BackendConfig",
    "KommoConfig",
    "MetaConfig",
    "ProxyConfig",
    "StageMap",
    "TenantConfig",
    "ErrorResponse",
    "RouteStatusResponse",
    "WebhookResponse",
]
