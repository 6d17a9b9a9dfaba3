import uuid

from sqlalchemy import Column, ForeignKey, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from expense_bot.database import Base


class FundHistory(Base):
    __tablename__ = "fund_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category_id = Column(UUID(as_uuid=True), ForeignKey("categories.id", ondelete="CASCADE"))
    payment_method_id = Column(UUID(as_uuid=True), ForeignKey("payment_methods.id", ondelete="CASCADE"))
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text)
    added_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
