from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WhatsAppText(BaseModel):
    body: str


class WhatsAppReplyRef(BaseModel):
    id: str
    title: Optional[str] = None


class WhatsAppInteractive(BaseModel):
    type: str  # button_reply, list_reply
    button_reply: Optional[WhatsAppReplyRef] = None
    list_reply: Optional[WhatsAppReplyRef] = None


class WhatsAppQuickReply(BaseModel):
    payload: Optional[str] = None
    text: Optional[str] = None


class WhatsAppMedia(BaseModel):
    id: str
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field(alias="from")
    id: str
    timestamp: Optional[str] = None
    type: str
    text: Optional[WhatsAppText] = None
    interactive: Optional[WhatsAppInteractive] = None
    button: Optional[WhatsAppQuickReply] = None
    audio: Optional[WhatsAppMedia] = None
    voice: Optional[WhatsAppMedia] = None
    image: Optional[WhatsAppMedia] = None


class WhatsAppMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class WhatsAppValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[WhatsAppMetadata] = None
    messages: list[WhatsAppMessage] = []
    statuses: list[dict] = []


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: WhatsAppValue


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = []


class WhatsAppWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = []

    def iter_messages(self):
        for entry in self.entry:
            for change in entry.changes:
                yield from change.value.messages
