from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.auth import TenantContext, get_bridge_service, get_bridge_store, get_current_tenant
from src.bridge.service import BridgeService
from src.bridge.store import BridgeStore
from src.config import settings
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.models.bridge import (
    BridgeConfigRequest,
    BridgeConfigResponse,
    BridgeConfigSaveResponse,
    TenantBridgeConfig,
)
from src.observability import log_event
from src.providers.chatwoot.client import ChatwootProviderError


router = APIRouter(prefix="/api/bridge", tags=["bridge"])

_DEFAULT_SIGN_DELIMITER = "\\n"


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _base_url(request: Request) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    scheme = "https" if request.headers.get("X-Forwarded-Proto") == "https" else request.url.scheme
    host = request.headers.get("X-Forwarded-Host") or request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}"


def _webhook_url(request: Request, tenant: TenantContext) -> str:
    return f"{_base_url(request)}/chatwoot/webhook/{tenant.token}"


@router.get("/config", response_model=BridgeConfigResponse)
async def get_bridge_config(
    request: Request,
    tenant: TenantContext = Depends(get_current_tenant),
    store: BridgeStore = Depends(get_bridge_store),
):
    config = store.get_config(tenant.tenant_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bridge not configured")
    return BridgeConfigResponse.from_config(config, _webhook_url(request, tenant))


@router.put("/config", response_model=BridgeConfigSaveResponse, response_model_exclude_none=True)
async def save_bridge_config(
    data: BridgeConfigRequest,
    request: Request,
    tenant: TenantContext = Depends(get_current_tenant),
    store: BridgeStore = Depends(get_bridge_store),
    bridge: BridgeService = Depends(get_bridge_service),
):
    if not data.account_id or not data.token or not data.url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="account_id, token, and url are required",
        )

    name_inbox = data.name_inbox or settings.default_inbox_name
    sign_delimiter = data.sign_delimiter or _DEFAULT_SIGN_DELIMITER
    existing = store.get_config(tenant.tenant_id)
    inbox_id = existing.inbox_id if existing else None

    log_event(
        "bridge_config_saving",
        request_id=_request_id(request),
        tenant_id=tenant.tenant_id,
        account_id=data.account_id,
        url=data.url,
        auto_create=data.auto_create,
        api_token=data.token,
    )

    if data.auto_create and inbox_id is None:
        provisioning = TenantBridgeConfig(
            tenant_id=tenant.tenant_id,
            account_id=data.account_id,
            api_token=data.token,
            url=data.url,
            name_inbox=name_inbox,
            organization=data.organization,
            logo=data.logo,
        )
        try:
            inbox_id = bridge.initialize_inbox(provisioning, _webhook_url(request, tenant))
        except ChatwootProviderError as exc:
            log_event(
                "bridge_inbox_auto_create_failed",
                level=logging.ERROR,
                request_id=_request_id(request),
                tenant_id=tenant.tenant_id,
                error=str(exc),
            )
            raise HTTPException(
                status_code=provider_error_http_status(exc),
                detail=provider_error_detail(provider="chatwoot", operation="create_inbox", exc=exc),
            ) from exc

    store.save_config(
        tenant.tenant_id,
        {
            "account_id": data.account_id,
            "api_token": data.token,
            "url": data.url,
            "inbox_id": inbox_id,
            "name_inbox": name_inbox,
            "enabled": data.enabled,
            "auto_create": data.auto_create,
            "sign_msg": data.sign_msg,
            "sign_delimiter": sign_delimiter,
            "reopen_conversation": data.reopen_conversation,
            "conversation_pending": data.conversation_pending,
            "merge_brazil_contacts": data.merge_brazil_contacts,
            "organization": data.organization,
            "logo": data.logo,
        },
    )
    log_event("bridge_config_saved", request_id=_request_id(request), tenant_id=tenant.tenant_id, inbox_id=inbox_id)
    return BridgeConfigSaveResponse(message="Bridge configuration saved successfully", inbox_id=inbox_id)


@router.delete("/config", response_model=BridgeConfigSaveResponse, response_model_exclude_none=True)
async def delete_bridge_config(
    request: Request,
    tenant: TenantContext = Depends(get_current_tenant),
    store: BridgeStore = Depends(get_bridge_store),
):
    if not store.delete_config(tenant.tenant_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Configuration not found")
    log_event("bridge_config_deleted", request_id=_request_id(request), tenant_id=tenant.tenant_id)
    return BridgeConfigSaveResponse(message="Bridge configuration deleted successfully")
