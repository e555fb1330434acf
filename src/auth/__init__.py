from src.auth.context import TenantContext
from src.auth.dependencies import (
    get_bridge_service,
    get_bridge_store,
    get_current_tenant,
)

__all__ = [
    "TenantContext",
    "get_bridge_service",
    "get_bridge_store",
    "get_current_tenant",
]
