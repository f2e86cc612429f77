"""OAuth Service - Main FastAPI application.

Connects provider calendars, keeps their tokens encrypted and fresh, and
screens inbound provider webhooks.
"""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel

from .config import get_settings
from .container import ServiceContainer
from .errors import (
    ErrorKind,
    IntegrationError,
    ProviderError,
    RefreshError,
    TokenDecryptionError,
    TokenMissingError,
)
from .providers import parse_provider
from .schemas import IntegrationStatus, Provider
from .webhooks import WebhookRequest

settings = get_settings()

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="OAuth Service",
    description="OAuth token lifecycle and webhook security for PharmaDOC calendar integrations",
    version="1.0.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

RECONNECT_MESSAGE = "Please reconnect this integration."


# ============================================
# Schemas
# ============================================

class IntegrationSummary(BaseModel):
    """Integration connection status."""
    provider: str
    connected: bool
    integration_id: Optional[str] = None
    status: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None


class AllIntegrationsResponse(BaseModel):
    """Response with all integration statuses."""
    integrations: list[IntegrationSummary]


class TokenRequest(BaseModel):
    """Request to get a token for a calendar sync worker."""
    provider: str
    user_id: str


class TokenResponse(BaseModel):
    """Response with decrypted token."""
    access_token: str
    provider: str
    expires_at: Optional[datetime] = None


class SweepResponse(BaseModel):
    total: int
    succeeded: int
    failed: int


# ============================================
# Startup / Shutdown
# ============================================

@app.on_event("startup")
async def startup():
    """Build the service container and start background sweeps."""
    if getattr(app.state, "container", None) is None:
        app.state.container = await ServiceContainer.build(settings)
    await app.state.container.start()
    logger.info(f"{settings.service_name} started")


@app.on_event("shutdown")
async def shutdown():
    container = getattr(app.state, "container", None)
    if container is not None:
        await container.close()
        app.state.container = None


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return container


def resolve_provider(provider: str) -> Provider:
    try:
        return parse_provider(provider)
    except ProviderError:
        raise HTTPException(status_code=400, detail=f"Unknown provider: {provider}")


# ============================================
# Health Check
# ============================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "oauth"}


# ============================================
# Integration Status Endpoints
# ============================================

@app.get("/api/integrations/{user_id}", response_model=AllIntegrationsResponse)
async def get_integrations(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """Get all integration statuses for a user."""
    existing = {i.provider: i for i in await container.integrations.list_for_user(user_id)}

    integrations = []
    for provider_name in container.providers.names():
        integration = existing.get(provider_name)
        if integration is None:
            integrations.append(IntegrationSummary(provider=provider_name, connected=False))
            continue

        integrations.append(IntegrationSummary(
            provider=provider_name,
            connected=integration.status == IntegrationStatus.CONNECTED.value and integration.has_tokens,
            integration_id=integration.id,
            status=integration.status,
            email=integration.provider_email,
            name=integration.provider_name,
            expires_at=integration.token_expires_at,
            last_error=integration.last_error,
            connected_at=integration.created_at,
        ))

    return AllIntegrationsResponse(integrations=integrations)


@app.delete("/api/integrations/{integration_id}")
async def disconnect_integration(
    integration_id: str,
    container: ServiceContainer = Depends(get_container),
):
    """Revoke an integration's tokens and mark it disconnected."""
    if not await container.connections.disconnect(integration_id):
        raise HTTPException(status_code=404, detail="Integration not found")
    return {"status": IntegrationStatus.DISCONNECTED.value, "integration_id": integration_id}


# ============================================
# OAuth Flow Endpoints
# ============================================

@app.get("/api/oauth/{provider}/connect")
async def start_oauth(
    provider: str,
    user_id: str = Query(..., description="User ID from auth system"),
    redirect_url: Optional[str] = Query(None, description="URL to redirect after completion"),
    container: ServiceContainer = Depends(get_container),
):
    """Start OAuth flow - redirects to provider's authorization page."""
    provider_enum = resolve_provider(provider)
    if provider_enum not in container.providers:
        raise HTTPException(status_code=400, detail=f"Provider {provider} does not use OAuth")

    auth_url = await container.connections.begin(provider_enum, user_id, redirect_url)
    return RedirectResponse(url=auth_url)


@app.get("/api/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
):
    """OAuth callback - exchanges code for tokens and stores them."""
    fallback_url = container.connections.default_redirect_url()

    # Handle error from provider
    if error:
        return RedirectResponse(url=f"{fallback_url}?{urlencode({'error': error})}")
    if not code or not state:
        return RedirectResponse(url=f"{fallback_url}?error=invalid_request")

    try:
        integration, redirect_url = await container.connections.complete(provider, code, state)
    except IntegrationError as e:
        logger.warning(f"OAuth callback failed for {provider}: {e}")
        return RedirectResponse(url=f"{fallback_url}?{urlencode({'error': e.kind.value})}")

    return RedirectResponse(
        url=f"{redirect_url}?{urlencode({'success': 'true', 'provider': integration.provider})}"
    )


# ============================================
# Token Retrieval for Calendar Workers
# ============================================

@app.post("/api/tokens/get", response_model=TokenResponse)
async def get_token(
    request: TokenRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Get a fresh decrypted token for an internal caller.

    Should be protected in production (internal network only).
    """
    provider = resolve_provider(request.provider)
    integration = await container.integrations.find(request.user_id, provider)
    if integration is None:
        raise HTTPException(
            status_code=404,
            detail=f"No {provider.value} integration for user",
        )
    if integration.status != IntegrationStatus.CONNECTED.value:
        raise HTTPException(status_code=401, detail=RECONNECT_MESSAGE)

    try:
        tokens = await container.coordinator.ensure_fresh(integration.id)
    except (TokenMissingError, RefreshError, TokenDecryptionError) as e:
        logger.warning(f"Token unavailable for integration {integration.id}: {e.kind.value}")
        raise HTTPException(status_code=401, detail=RECONNECT_MESSAGE)

    return TokenResponse(
        access_token=tokens.access_token,
        provider=provider.value,
        expires_at=tokens.expires_at,
    )


@app.post("/api/tokens/refresh-expiring", response_model=SweepResponse)
async def refresh_expiring_tokens(container: ServiceContainer = Depends(get_container)):
    """Run one refresh sweep now."""
    result = await container.coordinator.refresh_expiring()
    return SweepResponse(**result.to_dict())


@app.get("/api/tokens/health")
async def token_health(container: ServiceContainer = Depends(get_container)):
    return await container.coordinator.token_health()


# ============================================
# Webhooks
# ============================================

@app.get("/api/webhooks/security-metrics")
async def webhook_security_metrics(container: ServiceContainer = Depends(get_container)):
    """Webhook security violations over the last 24 hours."""
    return await container.audit.security_metrics()


@app.post("/webhooks/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    """Validate an inbound provider webhook.

    Rejections carry no detail; the reason is only in the security log.
    """
    try:
        provider_enum = parse_provider(provider)
    except ProviderError:
        raise HTTPException(status_code=404, detail="Not Found")

    webhook = await WebhookRequest.from_request(request, provider_enum)
    result = await container.validator.validate(webhook)

    if not result.valid:
        if result.kind == ErrorKind.RATE_LIMITED:
            raise HTTPException(status_code=429, detail="Too Many Requests")
        raise HTTPException(status_code=403, detail="Forbidden")

    # Subscription handshakes
    if result.validation_token is not None:
        return PlainTextResponse(result.validation_token)
    if result.challenge is not None:
        return result.challenge

    logger.debug(f"Accepted {provider_enum.value} webhook from {result.client_ip}")
    return {"status": "accepted"}


# ============================================
# Available Providers
# ============================================

@app.get("/api/providers")
async def list_providers(container: ServiceContainer = Depends(get_container)):
    """List all available OAuth providers."""
    providers = []
    for name in container.providers.names():
        provider = container.providers.get(name)
        providers.append({
            "name": name,
            "display_name": name.replace("_", " ").title(),
            "scopes": provider.scopes,
        })
    return {"providers": providers}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
