from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ChatwootAttachment(_Lenient):
    data_url: str | None = None
    file_type: str | None = None


class ChatwootSnapshotMessage(_Lenient):
    id: int | None = None
    source_id: str | None = None
    attachments: list[ChatwootAttachment] = Field(default_factory=list)


class ChatwootMetaSender(_Lenient):
    id: int | None = None
    identifier: str | None = None
    phone_number: str | None = None


class ChatwootConversationMeta(_Lenient):
    sender: ChatwootMetaSender = Field(default_factory=ChatwootMetaSender)


class ChatwootConversation(_Lenient):
    id: int | None = None
    status: str | None = None
    meta: ChatwootConversationMeta = Field(default_factory=ChatwootConversationMeta)
    messages: list[ChatwootSnapshotMessage] = Field(default_factory=list)


class ChatwootInbox(_Lenient):
    id: int | None = None
    name: str | None = None


class ChatwootSender(_Lenient):
    name: str | None = None
    available_name: str | None = None


class ChatwootWebhookPayload(_Lenient):
    """Chatwoot account webhook body; only `message_created` is acted upon."""

    event: str = ""
    message_type: str | None = None
    id: int | None = None
    content: str | None = None
    private: bool | None = False
    conversation: ChatwootConversation = Field(default_factory=ChatwootConversation)
    inbox: ChatwootInbox = Field(default_factory=ChatwootInbox)
    sender: ChatwootSender = Field(default_factory=ChatwootSender)

    def triggering_message(self) -> ChatwootSnapshotMessage | None:
        for message in self.conversation.messages:
            if message.id is not None and message.id == self.id:
                return message
        return None
