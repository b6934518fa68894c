import uuid

from sqlalchemy import Boolean, Column, Text, Uuid

from omnichat.database import Base


class Asset(Base):
    __tablename__ = "assets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)
    name = Column(Text, nullable=False)
    filename = Column(Text)
    mimetype = Column(Text)
    url = Column(Text)  # uploads/<file> or public URL
    extracted_text = Column(Text)
    is_knowledge = Column(Boolean, nullable=False, default=False)
