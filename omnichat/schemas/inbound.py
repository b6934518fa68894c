from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

MEDIA_PLACEHOLDER = "[Media]"


class InboundKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    VIDEO = "video"
    STICKER = "sticker"
    UNSUPPORTED = "unsupported"


class Profile(BaseModel):
    first_name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    platform_link: Optional[str] = None


class InboundEvent(BaseModel):
    """Platform event after adapter normalization."""

    tenant_key: Optional[str] = None
    channel: str
    external_id: str
    kind: InboundKind
    text: str = ""
    media_url: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    message_id: Optional[str] = None
    profile: Profile = Field(default_factory=Profile)

    def to_fragment(self) -> "Fragment":
        """Map a non-audio event onto the debounce fragment contract."""
        if self.kind == InboundKind.IMAGE:
            return Fragment(
                text=self.text or "[Image]",
                content_type="image",
                media_url=self.media_url,
                profile=self.profile,
            )
        if self.kind == InboundKind.DOCUMENT:
            return Fragment(text=f"[Document: {self.file_name or 'file'}]", profile=self.profile)
        if self.kind == InboundKind.VIDEO:
            return Fragment(text=self.text or "[Video]", profile=self.profile)
        if self.kind == InboundKind.STICKER:
            return Fragment(text="[Sticker]", profile=self.profile)
        if self.kind == InboundKind.TEXT:
            return Fragment(text=self.text, profile=self.profile)
        raise ValueError(f"{self.kind.value} events do not enter the debounce buffer")


class Fragment(BaseModel):
    text: str = ""
    content_type: str = "text"  # text, image, audio
    media_url: Optional[str] = None
    profile: Profile = Field(default_factory=Profile)


class ReplyButton(BaseModel):
    label: str
    url: str


class ReplyPhoto(BaseModel):
    name: str
    url: str


class Reply(BaseModel):
    """Structured answer produced by the pipeline. text=None means stay silent."""

    text: Optional[str] = None
    photos: list[ReplyPhoto] = Field(default_factory=list)
    buttons: list[ReplyButton] = Field(default_factory=list)

    @classmethod
    def silent(cls) -> "Reply":
        return cls(text=None)

    @property
    def is_silent(self) -> bool:
        return self.text is None and not self.photos and not self.buttons
