from fastapi import Depends, Header, HTTPException, Request, status
from src.auth.context import TenantContext
from src.bridge.service import BridgeService
from src.bridge.store import BridgeStore


def get_bridge_store(request: Request) -> BridgeStore:
    return request.app.state.store


def get_bridge_service(request: Request) -> BridgeService:
    return request.app.state.bridge


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def get_current_tenant(
    authorization: str | None = Header(None),
    token: str | None = Header(None),
    store: BridgeStore = Depends(get_bridge_store),
) -> TenantContext:
    """
    Resolve the tenant from `Authorization: Bearer <token>`, falling back to a
    bare `Token` header.
    """
    raw_token = _extract_bearer_token(authorization) or (token.strip() if token else None)
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    tenant = store.get_tenant_by_token(raw_token)
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid tenant token",
        )

    return TenantContext(
        tenant_id=str(tenant["id"]),
        name=tenant.get("name") or "",
        token=raw_token,
    )
