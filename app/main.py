import os

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.logging_config import get_logger, setup_logging
from app.routers import alerts, conversion, kommo, players
from app.schemas.webhook import ErrorResponse
from app.services.alert_service import alert_error
from app.services.tenant_service import TenantRegistry, get_tenant_registry

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Kommo Proof Relay",
    description="Multi-tenant webhook relay between Kommo, a vision classifier, ad attribution and a player backend",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(kommo.router)
app.include_router(conversion.router)
app.include_router(players.router)
app.include_router(alerts.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error: {exc}",
        exc_info=exc,
        extra={"context": {"path": request.url.path, "method": request.method}},
    )
    alert_error("Unhandled webhook error", {"path": request.url.path, "error": str(exc)})
    body = ErrorResponse(error="Internal server error")
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


@app.get("/health")
def health(registry: TenantRegistry = Depends(get_tenant_registry)):
    return {"status": "ok", "clients": registry.client_ids, "pipeline_groups": registry.group_ids}
