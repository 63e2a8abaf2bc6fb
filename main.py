"""OAuth Gateway - authorization-server proxy in front of an enterprise IdP.

It handles:
- Discovery metadata (/.well-known/*)
- Dynamic client registration (/register)
- Authorization flow (/authorize, /consent, /oauth-callback)
- Token endpoint (/token)

Run with `python main.py` or `uvicorn main:get_app --factory`.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import GatewayConfig, load_config
from gateway.authorize import router as authorize_router
from gateway.callback import router as callback_router
from gateway.consent import router as consent_router
from gateway.context import Gateway
from gateway.errors import GatewayError
from gateway.metadata import router as metadata_router
from gateway.middleware import CorrelationIdMiddleware, with_cors
from gateway.models import FederatedCredentialBinding
from gateway.redirects import NO_STORE_HEADERS
from gateway.registry import router as registry_router
from gateway.state_codec import StateCodec
from gateway.stores import GatewayStore, create_store
from gateway.token_exchange import router as token_router
from gateway.upstream import (
    FederatedCredentialAuthenticator,
    UpstreamAuthenticator,
    UpstreamClient,
)
from logging_config import flush_logs, setup_logging

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_app(
    config: GatewayConfig,
    store: Optional[GatewayStore] = None,
    authenticator: Optional[UpstreamAuthenticator] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the gateway app from injected collaborators.

    Args:
        config: Deployment configuration
        store: Storage backend; chosen from config when omitted
        authenticator: Upstream client authentication; federated credential when omitted
        http_client: Client for upstream calls; owned and closed by the app when omitted
    """
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.upstream_timeout_seconds)

    if authenticator is None:
        binding = FederatedCredentialBinding(
            managed_identity_client_id=config.managed_identity_client_id,
            target_application_id=config.application_id,
            audience=config.federated_audience,
        )
        authenticator = FederatedCredentialAuthenticator(
            binding,
            http_client,
            identity_endpoint=config.identity_endpoint,
            identity_header=config.identity_header,
        )

    gateway = Gateway(
        config=config,
        store=store or create_store(config),
        codec=StateCodec.from_config(config),
        upstream=UpstreamClient(config, authenticator, http_client),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[STARTUP] Gateway {VERSION} serving {config.base_url}")
        logger.info(f"[STARTUP] Upstream tenant: {config.tenant_id}, exchange mode: {config.token_exchange_mode}")
        yield
        flush_logs()
        if owns_http_client:
            await http_client.aclose()

    app = FastAPI(
        title="OAuth Gateway",
        description="OAuth 2.0 authorization-server proxy with dynamic client registration",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(level, f"[ERROR] {request.url.path}: {type(exc).__name__}: {exc.description}")
        return with_cors(JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=NO_STORE_HEADERS))

    app.include_router(metadata_router)
    app.include_router(registry_router)
    app.include_router(authorize_router)
    app.include_router(consent_router)
    app.include_router(callback_router)
    app.include_router(token_router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": config.service_name, "version": VERSION}

    @app.get("/")
    async def root():
        return {
            "name": "OAuth Gateway",
            "version": VERSION,
            "authorization_server": f"{config.base_url}/.well-known/oauth-authorization-server",
        }

    return app


def get_app() -> FastAPI:
    """App factory for uvicorn: configuration and logging come from the environment."""
    config = load_config()

    supabase_client = None
    if config.supabase_url and config.supabase_key:
        from supabase import create_client
        supabase_client = create_client(config.supabase_url, config.supabase_key)

    setup_logging(service_name=config.service_name, level=config.log_level, supabase_client=supabase_client)
    return create_app(config)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn

    _config = load_config()
    uvicorn.run("main:get_app", factory=True, host=_config.host, port=_config.port)
