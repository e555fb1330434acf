"""
Contracts for the WhatsApp protocol client.

The protocol client itself lives outside this package; the bridge only needs the
narrow surface below plus a plain-data view of an inbound message event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Literal, Protocol


MediaKind = Literal["image", "video", "audio", "document", "sticker"]
MEDIA_KINDS: tuple[MediaKind, ...] = ("image", "video", "audio", "document", "sticker")


@dataclass
class MediaPayload:
    kind: MediaKind
    mimetype: str = ""
    caption: str = ""
    file_name: str = ""
    # Opaque handle handed back to WhatsAppClient.download().
    downloadable: Any = None


@dataclass
class MessageContent:
    conversation: str = ""
    extended_text: str = ""
    image: MediaPayload | None = None
    video: MediaPayload | None = None
    audio: MediaPayload | None = None
    document: MediaPayload | None = None
    sticker: MediaPayload | None = None
    protocol_message: bool = False
    reaction: bool = False
    poll_creation: bool = False
    poll_update: bool = False
    keep_in_chat: bool = False

    @property
    def text(self) -> str:
        return self.conversation or self.extended_text

    @property
    def media(self) -> MediaPayload | None:
        for kind in MEDIA_KINDS:
            payload = getattr(self, kind)
            if payload is not None:
                return payload
        return None


@dataclass
class MessageEvent:
    id: str
    chat: str
    sender: str
    is_group: bool = False
    is_from_me: bool = False
    push_name: str = ""
    message: MessageContent = field(default_factory=MessageContent)


@dataclass
class OutgoingContent:
    text: str = ""
    media_url: str | None = None
    media_type: str | None = None


class WhatsAppClient(Protocol):
    def is_logged_in(self) -> bool: ...

    def is_connected(self) -> bool: ...

    def send_message(self, address: str, content: OutgoingContent) -> str: ...

    def download(self, downloadable: Any) -> bytes: ...


class WhatsAppClientDirectory(Protocol):
    def get(self, tenant_id: str) -> WhatsAppClient | None: ...


class ClientRegistry:
    """In-process directory of live WhatsApp clients, one per tenant."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._clients: dict[str, WhatsAppClient] = {}

    def register(self, tenant_id: str, client: WhatsAppClient) -> None:
        with self._lock:
            self._clients[tenant_id] = client

    def unregister(self, tenant_id: str) -> None:
        with self._lock:
            self._clients.pop(tenant_id, None)

    def get(self, tenant_id: str) -> WhatsAppClient | None:
        with self._lock:
            return self._clients.get(tenant_id)
