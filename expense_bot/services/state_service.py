from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from expense_bot.logging_config import get_logger
from expense_bot.models import UserState
from expense_bot.services.state_machine import DialogState

logger = get_logger("state_service")


@dataclass
class ConversationState:
    chat_id: str
    state: DialogState
    data: dict = field(default_factory=dict)
    updated_at: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateStore(ABC):
    """Per-chat conversation state: at most one record per chat, ``set`` replaces ``data`` wholesale."""

    @abstractmethod
    def get(self, chat_id: str) -> Optional[ConversationState]:
        pass

    @abstractmethod
    def set(self, chat_id: str, state: DialogState, data: Optional[dict] = None) -> ConversationState:
        pass

    @abstractmethod
    def clear(self, chat_id: str) -> None:
        """Delete the record; no-op when absent."""
        pass


class SqlStateStore(StateStore):
    def __init__(self, db: Session, ttl_minutes: int = 0, clock: Callable[[], datetime] = _utcnow):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes) if ttl_minutes > 0 else None
        self.clock = clock

    def _is_stale(self, row: UserState) -> bool:
        if self.ttl is None or row.updated_at is None:
            return False
        updated_at = row.updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return self.clock() - updated_at > self.ttl

    def get(self, chat_id: str) -> Optional[ConversationState]:
        row = self.db.query(UserState).filter(UserState.chat_id == chat_id).first()
        if row is None:
            return None

        try:
            state = DialogState(row.state)
        except ValueError:
            logger.warning(
                "Dropping state with unknown name",
                extra={"context": {"chat_id": chat_id, "state": row.state}},
            )
            self.clear(chat_id)
            return None

        if state == DialogState.NONE:
            return None

        if self._is_stale(row):
            logger.info(
                "Conversation state expired",
                extra={"context": {"chat_id": chat_id, "state": row.state, "updated_at": row.updated_at}},
            )
            self.clear(chat_id)
            return None

        return ConversationState(chat_id=chat_id, state=state, data=dict(row.data or {}), updated_at=row.updated_at)

    def set(self, chat_id: str, state: DialogState, data: Optional[dict] = None) -> ConversationState:
        now = self.clock()
        row = self.db.query(UserState).filter(UserState.chat_id == chat_id).first()
        if row is None:
            row = UserState(chat_id=chat_id)
            self.db.add(row)
        row.state = state.value
        row.data = dict(data or {})
        row.updated_at = now
        self.db.commit()

        logger.debug(f"State set: chat={chat_id}, state={state.value}")
        return ConversationState(chat_id=chat_id, state=state, data=dict(row.data), updated_at=now)

    def clear(self, chat_id: str) -> None:
        deleted = self.db.query(UserState).filter(UserState.chat_id == chat_id).delete()
        self.db.commit()
        if deleted:
            logger.debug(f"State cleared: chat={chat_id}")
