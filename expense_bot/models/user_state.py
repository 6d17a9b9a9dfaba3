from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from expense_bot.database import Base


class UserState(Base):
    __tablename__ = "user_states"

    chat_id = Column(Text, primary_key=True)  # "<channel>:<chat id>"
    state = Column(Text, nullable=False)
    data = Column(JSONB, nullable=False, default=dict)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
