from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any

from src.models.bridge import ConversationMapping, TenantBridgeConfig


CONFIG_TABLE = "bridge_configs"
CONVERSATION_TABLE = "bridge_conversations"
MESSAGE_TABLE = "bridge_messages"
TENANT_TABLE = "tenants"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class BridgeStore:
    """Row-level access to the bridge tables through a Supabase client."""

    def __init__(self, client: Any):
        self.client = client

    def get_tenant_by_token(self, token: str) -> dict[str, Any] | None:
        if not token:
            return None
        result = self.client.table(TENANT_TABLE).select("*").eq("token_hash", hash_token(token)).execute()
        return result.data[0] if result.data else None

    def get_tenant(self, tenant_id: str) -> dict[str, Any] | None:
        result = self.client.table(TENANT_TABLE).select("*").eq("id", tenant_id).execute()
        return result.data[0] if result.data else None

    def get_config(self, tenant_id: str) -> TenantBridgeConfig | None:
        result = self.client.table(CONFIG_TABLE).select("*").eq("tenant_id", tenant_id).execute()
        if not result.data:
            return None
        return TenantBridgeConfig.model_validate(result.data[0])

    def save_config(self, tenant_id: str, fields: dict[str, Any]) -> TenantBridgeConfig:
        now_iso = _now_iso()
        existing = self.client.table(CONFIG_TABLE).select("tenant_id").eq("tenant_id", tenant_id).execute()
        if existing.data:
            result = self.client.table(CONFIG_TABLE).update(
                {**fields, "updated_at": now_iso}
            ).eq("tenant_id", tenant_id).execute()
        else:
            result = self.client.table(CONFIG_TABLE).insert(
                {**fields, "tenant_id": tenant_id, "created_at": now_iso, "updated_at": now_iso}
            ).execute()
        return TenantBridgeConfig.model_validate(result.data[0])

    def delete_config(self, tenant_id: str) -> bool:
        result = self.client.table(CONFIG_TABLE).delete().eq("tenant_id", tenant_id).execute()
        return bool(result.data)

    def get_conversation(self, tenant_id: str, chat_jid: str) -> ConversationMapping | None:
        result = self.client.table(CONVERSATION_TABLE).select("*").eq(
            "tenant_id", tenant_id
        ).eq("chat_jid", chat_jid).execute()
        if not result.data:
            return None
        return ConversationMapping.model_validate(result.data[0])

    def insert_conversation(self, mapping: ConversationMapping) -> None:
        now_iso = _now_iso()
        self.client.table(CONVERSATION_TABLE).insert(
            {**mapping.model_dump(), "created_at": now_iso, "updated_at": now_iso}
        ).execute()

    def upsert_conversation(self, mapping: ConversationMapping) -> None:
        now_iso = _now_iso()
        updated = self.client.table(CONVERSATION_TABLE).update(
            {
                "conversation_id": mapping.conversation_id,
                "contact_id": mapping.contact_id,
                "inbox_id": mapping.inbox_id,
                "updated_at": now_iso,
            }
        ).eq("tenant_id", mapping.tenant_id).eq("chat_jid", mapping.chat_jid).execute()
        if not updated.data:
            self.insert_conversation(mapping)

    def insert_message_mapping(
        self,
        *,
        tenant_id: str,
        whatsapp_message_id: str,
        remote_message_id: int,
        conversation_id: int,
    ) -> None:
        self.client.table(MESSAGE_TABLE).insert(
            {
                "tenant_id": tenant_id,
                "whatsapp_message_id": whatsapp_message_id,
                "remote_message_id": remote_message_id,
                "conversation_id": conversation_id,
                "created_at": _now_iso(),
            }
        ).execute()
