from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from src.observability import mask_secret


class TenantBridgeConfig(BaseModel):
    tenant_id: str
    account_id: str
    api_token: str
    url: str
    inbox_id: int | None = None
    name_inbox: str = ""
    enabled: bool = False
    auto_create: bool = False
    sign_msg: bool = False
    reopen_conversation: bool = False
    conversation_pending: bool = False
    merge_brazil_contacts: bool = False
    sign_delimiter: str = "\\n"
    organization: str | None = None
    logo: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"TenantBridgeConfig(tenant_id={self.tenant_id!r}, account_id={self.account_id!r}, "
            f"api_token={mask_secret(self.api_token)!r}, url={self.url!r}, inbox_id={self.inbox_id!r})"
        )

    __str__ = __repr__


class BridgeConfigRequest(BaseModel):
    account_id: str = ""
    token: str = ""
    url: str = ""
    name_inbox: str | None = None
    enabled: bool = False
    auto_create: bool = False
    sign_msg: bool = False
    sign_delimiter: str | None = None
    reopen_conversation: bool = False
    conversation_pending: bool = False
    merge_brazil_contacts: bool = False
    organization: str | None = None
    logo: str | None = None

    @field_validator("account_id", "token", "url", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class BridgeConfigResponse(BaseModel):
    tenant_id: str
    account_id: str
    token: str = Field(description="Masked remote API token")
    url: str
    inbox_id: int | None = None
    name_inbox: str
    enabled: bool
    auto_create: bool
    sign_msg: bool
    sign_delimiter: str | None = None
    reopen_conversation: bool
    conversation_pending: bool
    merge_brazil_contacts: bool
    organization: str | None = None
    logo: str | None = None
    webhook_url: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_config(cls, config: TenantBridgeConfig, webhook_url: str) -> "BridgeConfigResponse":
        return cls(
            tenant_id=config.tenant_id,
            account_id=config.account_id,
            token=mask_secret(config.api_token),
            url=config.url,
            inbox_id=config.inbox_id,
            name_inbox=config.name_inbox,
            enabled=config.enabled,
            auto_create=config.auto_create,
            sign_msg=config.sign_msg,
            sign_delimiter=config.sign_delimiter,
            reopen_conversation=config.reopen_conversation,
            conversation_pending=config.conversation_pending,
            merge_brazil_contacts=config.merge_brazil_contacts,
            organization=config.organization,
            logo=config.logo,
            webhook_url=webhook_url,
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


class BridgeConfigSaveResponse(BaseModel):
    status: str = "success"
    message: str
    inbox_id: int | None = None


class ConversationMapping(BaseModel):
    tenant_id: str
    chat_jid: str
    conversation_id: int
    contact_id: int | None = None
    inbox_id: int | None = None
