"""
OAuth endpoints: authorize, callback, refresh, revoke

Thin translation of HTTP requests onto the OAuth lifecycle manager. Errors
are ETLExceptions and are turned into responses by the handler in api.main.
"""

from fastapi import APIRouter, Depends, Query, Request
from api.dependencies import get_current_user_id, get_oauth_manager
from api.middleware import request_meta
from core.exceptions import ConfigError
from credentials.oauth_manager import OAuthManager
from schemas.api import (
    APIResponse,
    AuthorizationUrlResponse,
    OAuthCallbackResponse,
    TokenStatusResponse,
    RevokeResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oauth", tags=["OAuth"])


async def _owned_destination(manager: OAuthManager, destination_id: int, user_id: int):
    destination = await manager.store.get_destination(destination_id)
    if destination.user_id != user_id:
        raise ConfigError("Destination not found", context={"destination_id": destination_id})
    return destination


@router.get("/authorize/{destination_id}", response_model=APIResponse[AuthorizationUrlResponse])
async def authorize(
    request: Request,
    destination_id: int,
    user_id: int = Depends(get_current_user_id),
    manager: OAuthManager = Depends(get_oauth_manager)
):
    """Issue a provider authorization URL for the caller's destination."""
    url = await manager.get_authorization_url(user_id, destination_id)

    request_id, latency = request_meta(request)
    return APIResponse(
        request_id=request_id,
        api_latency_ms=latency,
        data=AuthorizationUrlResponse(destination_id=destination_id, authorization_url=url),
    )


@router.get("/callback", response_model=APIResponse[OAuthCallbackResponse])
async def callback(
    request: Request,
    code: str = Query("", description="Authorization code from the provider"),
    state: str = Query("", description="State issued with the authorization URL"),
    manager: OAuthManager = Depends(get_oauth_manager)
):
    """
    Provider redirect target. Identity comes from the state, not a header:
    the browser arrives here straight from the provider.
    """
    result = await manager.handle_callback(code, state)

    request_id, latency = request_meta(request)
    return APIResponse(
        request_id=request_id,
        api_latency_ms=latency,
        data=OAuthCallbackResponse(**result),
    )


@router.post("/refresh/{destination_id}", response_model=APIResponse[TokenStatusResponse])
async def refresh(
    request: Request,
    destination_id: int,
    user_id: int = Depends(get_current_user_id),
    manager: OAuthManager = Depends(get_oauth_manager)
):
    await _owned_destination(manager, destination_id, user_id)
    credentials = await manager.refresh_tokens(destination_id)

    request_id, latency = request_meta(request)
    return APIResponse(
        request_id=request_id,
        api_latency_ms=latency,
        data=TokenStatusResponse(
            destination_id=destination_id,
            status=credentials.status,
            token_expires_at=credentials.token_expires_at,
        ),
    )


@router.post("/revoke/{destination_id}", response_model=APIResponse[RevokeResponse])
async def revoke(
    request: Request,
    destination_id: int,
    user_id: int = Depends(get_current_user_id),
    manager: OAuthManager = Depends(get_oauth_manager)
):
    await _owned_destination(manager, destination_id, user_id)
    result = await manager.revoke_tokens(destination_id)

    request_id, latency = request_meta(request)
    return APIResponse(
        request_id=request_id,
        api_latency_ms=latency,
        data=RevokeResponse(**result),
    )
