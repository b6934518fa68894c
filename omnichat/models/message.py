import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from omnichat.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)
    session_id = Column(Uuid, ForeignKey("sessions.id"), nullable=False)
    role = Column(Text, nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    content_type = Column(Text, nullable=False, default="text")  # text, image, audio
    media_url = Column(Text)
    buttons = Column(JSON)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    session = relationship("ChatSession", back_populates="messages")
