from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from src.bridge.conversation_cache import ConversationCache
from src.bridge.dedup import DedupGuard
from src.bridge.store import BridgeStore
from src.bridge.whatsapp import (
    MediaPayload,
    MessageEvent,
    OutgoingContent,
    WhatsAppClient,
    WhatsAppClientDirectory,
)
from src.domain.phone import brazil_number_variants, format_e164, jid_user, user_jid
from src.models.bridge import ConversationMapping, TenantBridgeConfig
from src.models.chatwoot_webhook import ChatwootWebhookPayload
from src.observability import incr_metric, log_event
from src.providers.chatwoot import client as chatwoot_client


# Marks remote messages the bridge created itself; the reverse path ignores them.
MESSAGE_SOURCE_PREFIX = "WAID:"
CONVERSATION_SOURCE_PREFIX = "wa:"
BOT_CONTACT_IDENTIFIER = "123456"


class BridgeError(Exception):
    """Base class for bridge failures surfaced to the event producer."""


class BridgeConfigurationError(BridgeError):
    pass


class BridgeCancelledError(BridgeError):
    pass


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _ignored(reason: str) -> WebhookResult:
    return WebhookResult(200, {"status": "ignored", "reason": reason})


def _error(status_code: int, message: str) -> WebhookResult:
    return WebhookResult(status_code, {"error": message})


def _ensure_not_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise BridgeCancelledError("Bridge operation cancelled")


def should_skip_message(event: MessageEvent) -> bool:
    message = event.message
    if (
        message.protocol_message
        or message.reaction
        or message.poll_creation
        or message.poll_update
        or message.keep_in_chat
    ):
        return True
    return not message.text and message.media is None


def media_file_name(message_id: str, media: MediaPayload) -> str:
    if media.kind == "image":
        return f"{message_id}.png" if media.mimetype == "image/png" else f"{message_id}.jpg"
    if media.kind == "video":
        return f"{message_id}.mp4"
    if media.kind == "audio":
        return f"{message_id}.mp3" if media.mimetype == "audio/mpeg" else f"{message_id}.ogg"
    if media.kind == "document":
        return media.file_name or f"{message_id}.pdf"
    return f"{message_id}.webp"


def sign_content(content: str, agent_name: str | None, delimiter: str | None) -> str:
    if not content or not agent_name:
        return content
    separator = (delimiter or "\\n").replace("\\n", "\n")
    return f"*{agent_name}*{separator}{content}"


class BridgeService:
    """Keeps WhatsApp chats and Chatwoot conversations in step, in both directions."""

    def __init__(
        self,
        *,
        store: BridgeStore,
        clients: WhatsAppClientDirectory,
        dedup: DedupGuard | None = None,
        conversations: ConversationCache | None = None,
        timeout_seconds: float = 30.0,
        default_inbox_name: str = "WhatsApp Bridge",
        bot_organization: str = "WhatsApp Bridge",
        bot_logo_url: str | None = None,
    ):
        self.store = store
        self.clients = clients
        self.dedup = dedup or DedupGuard()
        self.conversations = conversations or ConversationCache(store)
        self.timeout_seconds = timeout_seconds
        self.default_inbox_name = default_inbox_name
        self.bot_organization = bot_organization
        self.bot_logo_url = bot_logo_url

    def start(self) -> None:
        self.dedup.start()

    def stop(self) -> None:
        self.dedup.stop()

    # WhatsApp -> Chatwoot

    def handle_incoming_message(
        self,
        tenant_id: str,
        event: MessageEvent,
        wa_client: WhatsAppClient,
        cancel: threading.Event | None = None,
    ) -> None:
        if not self.dedup.check_and_set(event.id):
            incr_metric("bridge.inbound.duplicate")
            log_event("inbound_duplicate_skipped", level=logging.DEBUG, tenant_id=tenant_id, message_id=event.id)
            return

        if should_skip_message(event):
            incr_metric("bridge.inbound.skipped", reason="noise")
            log_event("inbound_noise_skipped", level=logging.DEBUG, tenant_id=tenant_id, message_id=event.id)
            return

        config = self.store.get_config(tenant_id)
        if config is None or not config.enabled:
            incr_metric("bridge.inbound.skipped", reason="not_configured")
            return

        chat_jid = event.chat
        contact_jid = event.sender if event.is_group else chat_jid
        contact_name = event.push_name or jid_user(contact_jid)
        message_type = "outgoing" if event.is_from_me else "incoming"
        log_event(
            "inbound_processing",
            tenant_id=tenant_id,
            message_id=event.id,
            chat_jid=chat_jid,
            contact_jid=contact_jid,
            message_type=message_type,
            is_group=event.is_group,
        )

        try:
            phone = format_e164(jid_user(contact_jid))
            # Concurrent first messages for one chat must resolve one contact and one conversation.
            with self.conversations.lock_for(tenant_id, chat_jid):
                contact_id = self._ensure_contact(config, phone, contact_name, contact_jid, cancel)

                def _create_conversation() -> ConversationMapping:
                    _ensure_not_cancelled(cancel)
                    inbox_id = self._require_inbox(config)
                    conversation_id = chatwoot_client.create_conversation(
                        config.url,
                        config.account_id,
                        config.api_token,
                        contact_id=contact_id,
                        inbox_id=inbox_id,
                        source_id=f"{CONVERSATION_SOURCE_PREFIX}{chat_jid}",
                        pending=config.conversation_pending,
                        timeout_seconds=self.timeout_seconds,
                    )
                    return ConversationMapping(
                        tenant_id=tenant_id,
                        chat_jid=chat_jid,
                        conversation_id=conversation_id,
                        contact_id=contact_id,
                        inbox_id=inbox_id,
                    )

                mapping = self.conversations.get_or_create(tenant_id, chat_jid, _create_conversation)
            remote_message_id = self._forward_content(config, event, wa_client, mapping.conversation_id, message_type, cancel)
        except Exception:
            incr_metric("bridge.inbound.failed")
            raise

        try:
            self.store.insert_message_mapping(
                tenant_id=tenant_id,
                whatsapp_message_id=event.id,
                remote_message_id=remote_message_id,
                conversation_id=mapping.conversation_id,
            )
        except Exception as exc:
            log_event(
                "message_mapping_persist_failed",
                level=logging.WARNING,
                tenant_id=tenant_id,
                message_id=event.id,
                error=str(exc),
            )

        incr_metric("bridge.inbound.forwarded", message_type=message_type)
        log_event(
            "inbound_forwarded",
            tenant_id=tenant_id,
            message_id=event.id,
            conversation_id=mapping.conversation_id,
            remote_message_id=remote_message_id,
        )

    def _require_inbox(self, config: TenantBridgeConfig) -> int:
        if not config.inbox_id:
            raise BridgeConfigurationError("inbox_id not configured")
        return config.inbox_id

    def _ensure_contact(
        self,
        config: TenantBridgeConfig,
        phone: str,
        name: str,
        identifier: str,
        cancel: threading.Event | None,
    ) -> int:
        candidates = brazil_number_variants(phone) if config.merge_brazil_contacts else [phone]
        for candidate in candidates:
            _ensure_not_cancelled(cancel)
            contact_id = chatwoot_client.find_contact_by_phone(
                config.url,
                config.account_id,
                config.api_token,
                candidate,
                timeout_seconds=self.timeout_seconds,
            )
            if contact_id is not None:
                return contact_id

        inbox_id = self._require_inbox(config)
        _ensure_not_cancelled(cancel)
        log_event("contact_creating", tenant_id=config.tenant_id, phone=phone, name=name)
        return chatwoot_client.create_contact(
            config.url,
            config.account_id,
            config.api_token,
            inbox_id=inbox_id,
            name=name,
            phone=phone,
            identifier=identifier,
            timeout_seconds=self.timeout_seconds,
        )

    def _forward_content(
        self,
        config: TenantBridgeConfig,
        event: MessageEvent,
        wa_client: WhatsAppClient,
        conversation_id: int,
        message_type: str,
        cancel: threading.Event | None,
    ) -> int:
        source_id = f"{MESSAGE_SOURCE_PREFIX}{event.id}"
        media = event.message.media
        if media is not None:
            _ensure_not_cancelled(cancel)
            data = wa_client.download(media.downloadable)
            file_name = media_file_name(event.id, media)
            log_event(
                "media_downloaded",
                tenant_id=config.tenant_id,
                media_type=media.kind,
                size_bytes=len(data),
                file_name=file_name,
            )
            _ensure_not_cancelled(cancel)
            return chatwoot_client.send_media_message(
                config.url,
                config.account_id,
                config.api_token,
                conversation_id=conversation_id,
                message_type=message_type,
                file_bytes=data,
                file_name=file_name,
                mime_type=media.mimetype,
                caption=media.caption or None,
                source_id=source_id,
                timeout_seconds=self.timeout_seconds,
            )

        _ensure_not_cancelled(cancel)
        return chatwoot_client.create_message(
            config.url,
            config.account_id,
            config.api_token,
            conversation_id=conversation_id,
            message_type=message_type,
            content=event.message.text,
            source_id=source_id,
            timeout_seconds=self.timeout_seconds,
        )

    # Chatwoot -> WhatsApp

    def handle_outgoing_webhook(
        self,
        tenant_token: str | None,
        payload: bytes | str | dict[str, Any],
        cancel: threading.Event | None = None,
        request_id: str | None = None,
    ) -> WebhookResult:
        if not tenant_token:
            log_event("chatwoot_webhook_missing_token", level=logging.WARNING, request_id=request_id)
            return _error(401, "missing token")
        tenant = self.store.get_tenant_by_token(tenant_token)
        if not tenant:
            log_event("chatwoot_webhook_unknown_token", level=logging.WARNING, request_id=request_id, token=tenant_token)
            return _error(401, "invalid token")
        tenant_id = str(tenant["id"])

        try:
            if isinstance(payload, (bytes, str)):
                payload = json.loads(payload)
            webhook = ChatwootWebhookPayload.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            log_event("chatwoot_webhook_invalid_payload", level=logging.WARNING, request_id=request_id, error=str(exc))
            return _error(400, "invalid payload")

        log_event(
            "chatwoot_webhook_received",
            request_id=request_id,
            tenant_id=tenant_id,
            chatwoot_event=webhook.event,
            message_type=webhook.message_type,
            conversation_id=webhook.conversation.id,
        )

        if webhook.event != "message_created":
            return _ignored("not message_created")
        if webhook.message_type != "outgoing":
            return _ignored("not outgoing")
        if webhook.private:
            return _ignored("private note")

        messages = webhook.conversation.messages
        if messages:
            lead = messages[0]
            if (lead.source_id or "").startswith(MESSAGE_SOURCE_PREFIX) and lead.id == webhook.id:
                incr_metric("bridge.outbound.loop_prevented")
                log_event("chatwoot_webhook_loop_prevented", level=logging.DEBUG, request_id=request_id, message_id=webhook.id)
                return _ignored("loop prevention")

        sender = webhook.conversation.meta.sender
        if sender.identifier:
            destination = jid_user(sender.identifier)
        else:
            destination = (sender.phone_number or "").lstrip("+")
        if not destination:
            log_event("chatwoot_webhook_no_destination", level=logging.WARNING, request_id=request_id, tenant_id=tenant_id)
            return _error(400, "no destination")
        recipient = user_jid(destination)

        if webhook.conversation.id:
            try:
                self.conversations.remember(
                    ConversationMapping(
                        tenant_id=tenant_id,
                        chat_jid=recipient,
                        conversation_id=webhook.conversation.id,
                        contact_id=sender.id,
                        inbox_id=webhook.inbox.id,
                    )
                )
            except Exception as exc:
                log_event(
                    "conversation_mapping_from_webhook_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    tenant_id=tenant_id,
                    error=str(exc),
                )

        wa_client = self.clients.get(tenant_id)
        if wa_client is None:
            return _error(503, "whatsapp client not ready")
        if not wa_client.is_logged_in():
            return _error(503, "whatsapp not logged in")
        if not wa_client.is_connected():
            return _error(503, "whatsapp disconnected")

        content = webhook.content or ""
        config = self.store.get_config(tenant_id)
        if config is not None and config.sign_msg:
            agent_name = webhook.sender.available_name or webhook.sender.name
            content = sign_content(content, agent_name, config.sign_delimiter)

        trigger = webhook.triggering_message()
        outgoing: list[OutgoingContent] = []
        if trigger and trigger.attachments:
            for attachment in trigger.attachments:
                if not attachment.data_url:
                    continue
                outgoing.append(
                    OutgoingContent(
                        text=content or attachment.data_url,
                        media_url=attachment.data_url,
                        media_type=attachment.file_type,
                    )
                )
        elif content:
            outgoing.append(OutgoingContent(text=content))

        sent_ids: list[str] = []
        for item in outgoing:
            try:
                _ensure_not_cancelled(cancel)
                whatsapp_message_id = wa_client.send_message(recipient, item)
            except BridgeCancelledError:
                raise
            except Exception as exc:
                incr_metric("bridge.outbound.failed")
                log_event(
                    "whatsapp_send_failed",
                    level=logging.ERROR,
                    request_id=request_id,
                    tenant_id=tenant_id,
                    recipient=recipient,
                    has_media=bool(item.media_url),
                    error=str(exc),
                )
                return _error(500, "failed to send media" if item.media_url else "failed to send message")
            # Suppress the echo of this message on the WhatsApp event stream.
            self.dedup.mark(whatsapp_message_id)
            sent_ids.append(whatsapp_message_id)

        incr_metric("bridge.outbound.sent", value=len(sent_ids))
        log_event(
            "chatwoot_webhook_delivered",
            request_id=request_id,
            tenant_id=tenant_id,
            recipient=recipient,
            chatwoot_message_id=webhook.id,
            whatsapp_message_ids=sent_ids,
        )
        return WebhookResult(200, {"status": "success", "message_ids": sent_ids})

    # Provisioning

    def initialize_inbox(self, config: TenantBridgeConfig, webhook_url: str) -> int:
        name = config.name_inbox or self.default_inbox_name
        log_event("chatwoot_inbox_creating", tenant_id=config.tenant_id, name=name, webhook_url=webhook_url)
        inbox_id = chatwoot_client.create_inbox(
            config.url,
            config.account_id,
            config.api_token,
            name=name,
            webhook_url=webhook_url,
            timeout_seconds=self.timeout_seconds,
        )
        try:
            chatwoot_client.create_contact(
                config.url,
                config.account_id,
                config.api_token,
                inbox_id=inbox_id,
                name=config.organization or self.bot_organization,
                identifier=BOT_CONTACT_IDENTIFIER,
                avatar_url=config.logo or self.bot_logo_url,
                timeout_seconds=self.timeout_seconds,
            )
        except chatwoot_client.ChatwootProviderError as exc:
            log_event(
                "chatwoot_bot_contact_failed",
                level=logging.WARNING,
                tenant_id=config.tenant_id,
                inbox_id=inbox_id,
                error=str(exc),
            )
        log_event("chatwoot_inbox_created", tenant_id=config.tenant_id, inbox_id=inbox_id)
        return inbox_id
