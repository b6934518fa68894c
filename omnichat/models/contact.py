import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from omnichat.database import Base


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("company_id", "platform", "platform_id", name="uq_contacts_identity"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, ForeignKey("companies.id"), nullable=True)  # NULL = global bot
    platform = Column(Text, nullable=False)  # telegram, whatsapp, instagram, messenger
    platform_id = Column(Text, nullable=False)
    first_name = Column(Text)
    username = Column(Text)
    avatar_url = Column(Text)
    bio = Column(Text)
    platform_link = Column(Text)
    last_interaction = Column(DateTime(timezone=True))
    bot_paused_until = Column(DateTime(timezone=True))

    company = relationship("Company", back_populates="contacts")
    sessions = relationship("ChatSession", back_populates="contact", cascade="all, delete-orphan")
    summaries = relationship("Summary", back_populates="contact", cascade="all, delete-orphan")
