from typing import Optional

from pydantic import BaseModel, Field


class MetaParticipant(BaseModel):
    id: str


class MetaAttachmentPayload(BaseModel):
    url: Optional[str] = None
    sticker_id: Optional[int] = None


class MetaAttachment(BaseModel):
    type: str  # image, audio, video, file, sticker, fallback
    payload: MetaAttachmentPayload = Field(default_factory=MetaAttachmentPayload)


class MetaMessage(BaseModel):
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    attachments: list[MetaAttachment] = Field(default_factory=list)


class MetaMessagingEvent(BaseModel):
    sender: MetaParticipant
    recipient: Optional[MetaParticipant] = None
    timestamp: Optional[int] = None
    message: Optional[MetaMessage] = None


class MetaEntry(BaseModel):
    id: Optional[str] = None
    time: Optional[int] = None
    messaging: list[MetaMessagingEvent] = Field(default_factory=list)


class MetaWebhookPayload(BaseModel):
    object: str  # page, instagram
    entry: list[MetaEntry] = Field(default_factory=list)
