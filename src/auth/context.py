from dataclasses import dataclass, field


@dataclass
class TenantContext:
    """Identity context for tenant-authenticated requests."""
    tenant_id: str
    name: str = ""
    # Raw bearer token; the inbound webhook URL is keyed by it.
    token: str = field(default="", repr=False)
