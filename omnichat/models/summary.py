import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from omnichat.database import Base


class Summary(Base):
    __tablename__ = "summaries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), nullable=False)
    summary_text = Column(Text, nullable=False)
    date_range_start = Column(DateTime(timezone=True))
    date_range_end = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)

    contact = relationship("Contact", back_populates="summaries")
