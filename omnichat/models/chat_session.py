import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from omnichat.database import Base


class ChatSession(Base):
    __tablename__ = "sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_pinned = Column(Boolean, nullable=False, default=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    contact = relationship("Contact", back_populates="sessions")
    messages = relationship("Message", back_populates="session", cascade="all, delete-orphan")
