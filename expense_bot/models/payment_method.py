import uuid

from sqlalchemy import Boolean, Column, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from expense_bot.database import Base

PAYMENT_METHOD_TYPES = ("cash", "credit_card", "debit_card", "bank_account", "bank_transfer", "digital_wallet")


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    type = Column(Text, nullable=False, default="cash")  # see PAYMENT_METHOD_TYPES
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    credit_limit = Column(Numeric(12, 2))
    due_date = Column(Integer)  # day of month
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
