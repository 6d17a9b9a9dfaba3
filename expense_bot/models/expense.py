import uuid

from sqlalchemy import Column, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from expense_bot.database import Base


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=False, default="")
    # Denormalized names, not foreign keys: expenses survive category renames.
    category = Column(Text, nullable=False)
    payment_method = Column(Text, nullable=False)
    date = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
