from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WhatsAppMessageKey(BaseModel):
    remoteJid: str
    fromMe: bool = False
    id: Optional[str] = None


class WhatsAppMessage(BaseModel):
    key: WhatsAppMessageKey
    pushName: Optional[str] = None
    message: Optional[dict[str, Any]] = None
    mediaUrl: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mediaUrl", "media_url"),
    )


class WhatsAppUpsert(BaseModel):
    type: str = "notify"
    messages: list[WhatsAppMessage] = Field(default_factory=list)


class WhatsAppConnectionUpdate(BaseModel):
    connection: Optional[str] = None  # connecting, open, close
    qr: Optional[str] = None
    statusCode: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("statusCode", "status_code"),
    )
    phone: Optional[str] = None
    name: Optional[str] = None


class WhatsAppBridgeEvent(BaseModel):
    event: str  # messages.upsert, connection.update
    data: dict[str, Any] = Field(default_factory=dict)


class WhatsAppStatusResponse(BaseModel):
    status: str
    qr: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
