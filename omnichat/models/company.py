import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from omnichat.database import Base


class Company(Base):
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    slug = Column(Text, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    subscription_end = Column(DateTime(timezone=True))
    plan_status = Column(Text, nullable=False, default="trial")  # active, expired, trial, cancelled
    max_slots = Column(Integer, default=1)
    timezone = Column(Text, default="America/Bogota")
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    contacts = relationship("Contact", back_populates="company")
