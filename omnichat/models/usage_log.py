import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid

from omnichat.database import Base


class UsageLog(Base):
    __tablename__ = "usage_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=True)
    model = Column(Text)
    tokens_prompt = Column(Integer, default=0)
    tokens_completion = Column(Integer, default=0)
    request_type = Column(Text)  # chat, audio, summary
    date = Column(DateTime(timezone=True), nullable=False)
