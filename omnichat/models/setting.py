import uuid

from sqlalchemy import Column, Text, Uuid

from omnichat.database import Base


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)  # NULL = platform-level value
    key = Column(Text, nullable=False)
    value = Column(Text, nullable=False)
    description = Column(Text)
