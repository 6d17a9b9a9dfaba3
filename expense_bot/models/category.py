import uuid

from sqlalchemy import Column, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from expense_bot.database import Base


class Category(Base):
    __tablename__ = "categories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    color = Column(Text, nullable=False, default="bg-blue-500")
    icon = Column(Text, nullable=False, default="Tag")
    budget = Column(Numeric(12, 2))
    allocated_funds = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
