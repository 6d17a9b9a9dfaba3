import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from expense_bot.schemas.intent import Intent
from expense_bot.services.action_executor import ActionExecutor
from expense_bot.services.channels.base import ChannelAdapter
from expense_bot.services.chat_locks import ChatLocks
from expense_bot.services.dialogue_controller import DialogueController
from expense_bot.services.state_service import ConversationState, StateStore
from expense_bot.services.storage import (
    CategoryFunds,
    EntityNotFoundError,
    ExpenseStorage,
    PaymentMethodFunds,
    ResetResult,
    spending_delta,
)

FIXED_NOW = datetime(2025, 3, 14, 12, 30, tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CategoryRow:
    name: str
    color: str = "bg-blue-500"
    icon: str = "Tag"
    budget: Optional[float] = None
    allocated_funds: float = 0.0
    id: str = field(default_factory=_new_id)


@dataclass
class PaymentMethodRow:
    name: str
    type: str = "cash"
    balance: float = 0.0
    credit_limit: Optional[float] = None
    due_date: Optional[int] = None
    is_active: bool = True
    id: str = field(default_factory=_new_id)


@dataclass
class ExpenseRow:
    amount: float
    category: str
    payment_method: str
    description: str
    date: datetime
    id: str = field(default_factory=_new_id)


@dataclass
class FundRow:
    amount: float
    description: Optional[str] = None
    category_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    added_at: datetime = FIXED_NOW
    id: str = field(default_factory=_new_id)


class InMemoryStorage(ExpenseStorage):
    """Storage with the bookkeeping rules of the SQL implementation; records every mutation."""

    def __init__(self):
        self.categories: list[CategoryRow] = []
        self.payment_methods: list[PaymentMethodRow] = []
        self.expenses: list[ExpenseRow] = []
        self.fund_history: list[FundRow] = []
        self.mutations: list[str] = []
        self.fail_on: set[str] = set()

    def _mutate(self, name: str) -> None:
        self.mutations.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def get_all_categories(self) -> list:
        return sorted(self.categories, key=lambda row: row.name)

    def get_category(self, category_id: str):
        return next((row for row in self.categories if row.id == category_id), None)

    def get_category_by_name(self, name: str):
        return next((row for row in self.categories if row.name.lower() == name.strip().lower()), None)

    def create_category(self, values: dict):
        self._mutate("create_category")
        row = CategoryRow(
            name=values["name"],
            color=values.get("color") or "bg-blue-500",
            icon=values.get("icon") or "Tag",
            budget=values.get("budget"),
            allocated_funds=values.get("allocated_funds") or 0.0,
        )
        self.categories.append(row)
        return row

    def get_all_payment_methods(self) -> list:
        return sorted((row for row in self.payment_methods if row.is_active), key=lambda row: row.name)

    def get_payment_method(self, payment_method_id: str):
        return next((row for row in self.payment_methods if row.id == payment_method_id), None)

    def get_payment_method_by_name(self, name: str):
        return next((row for row in self.payment_methods if row.name.lower() == name.strip().lower()), None)

    def create_payment_method(self, values: dict):
        self._mutate("create_payment_method")
        row = PaymentMethodRow(
            name=values["name"],
            type=values.get("type") or "cash",
            balance=values.get("balance") or 0.0,
            credit_limit=values.get("credit_limit"),
            due_date=values.get("due_date"),
        )
        self.payment_methods.append(row)
        return row

    def create_expense(self, values: dict):
        self._mutate("create_expense")
        row = ExpenseRow(
            amount=float(values["amount"]),
            category=values["category"],
            payment_method=values["payment_method"],
            description=values.get("description") or "",
            date=values.get("date") or FIXED_NOW,
        )
        self.expenses.append(row)
        category = self.get_category_by_name(row.category)
        if category is not None:
            category.allocated_funds -= row.amount
        payment_method = self.get_payment_method_by_name(row.payment_method)
        if payment_method is not None:
            payment_method.balance += float(spending_delta(payment_method.type, row.amount))
        return row

    def get_all_expenses(self, start=None, end=None) -> list:
        rows = [
            row
            for row in self.expenses
            if (start is None or row.date >= start) and (end is None or row.date <= end)
        ]
        return sorted(rows, key=lambda row: row.date, reverse=True)

    def delete_expense(self, expense_id: str) -> bool:
        self._mutate("delete_expense")
        row = next((row for row in self.expenses if row.id == expense_id), None)
        if row is None:
            return False
        self.expenses.remove(row)
        return True

    def add_funds_to_category(self, category_id: str, amount: float, description: Optional[str] = None):
        self._mutate("add_funds_to_category")
        category = self.get_category(category_id)
        if category is None:
            raise EntityNotFoundError("category", category_id)
        history = FundRow(amount=amount, description=description, category_id=category.id)
        self.fund_history.append(history)
        category.allocated_funds += amount
        return CategoryFunds(fund_history=history, category=category)

    def add_funds_to_payment_method(self, payment_method_id: str, amount: float, description: Optional[str] = None):
        self._mutate("add_funds_to_payment_method")
        payment_method = self.get_payment_method(payment_method_id)
        if payment_method is None:
            raise EntityNotFoundError("payment_method", payment_method_id)
        history = FundRow(amount=amount, description=description, payment_method_id=payment_method.id)
        self.fund_history.append(history)
        payment_method.balance += amount
        return PaymentMethodFunds(fund_history=history, payment_method=payment_method)

    def reset_category(self, category_id: str) -> ResetResult:
        self._mutate("reset_category")
        category = self.get_category(category_id)
        if category is None:
            raise EntityNotFoundError("category", category_id)
        expenses = [row for row in self.expenses if row.category == category.name]
        history = [row for row in self.fund_history if row.category_id == category.id]
        self.expenses = [row for row in self.expenses if row not in expenses]
        self.fund_history = [row for row in self.fund_history if row not in history]
        category.allocated_funds = 0.0
        return ResetResult(deleted_expenses=len(expenses), deleted_fund_history=len(history), category=category)

    def get_all_fund_history(self) -> list:
        return list(self.fund_history)


class InMemoryStateStore(StateStore):
    def __init__(self):
        self.rows: dict[str, ConversationState] = {}

    def get(self, chat_id: str) -> Optional[ConversationState]:
        return self.rows.get(chat_id)

    def set(self, chat_id, state, data=None) -> ConversationState:
        record = ConversationState(chat_id=chat_id, state=state, data=dict(data or {}), updated_at=FIXED_NOW)
        self.rows[chat_id] = record
        return record

    def clear(self, chat_id: str) -> None:
        self.rows.pop(chat_id, None)


class RecordingChannel(ChannelAdapter):
    """Telegram-like channel that records everything it is asked to send."""

    name = "telegram"
    default_payment_method = "Telegram"
    supports_inline_keyboard = True
    requires_ack = True

    def __init__(self):
        self.sent: list[dict] = []
        self.documents: list[dict] = []
        self.acks: list[Optional[str]] = []
        self.media: dict[str, bytes] = {}

    @property
    def enabled(self) -> bool:
        return True

    async def send_text(self, chat_id, text, keyboard=None) -> bool:
        self.sent.append({"chat_id": chat_id, "text": text, "keyboard": keyboard or []})
        return True

    async def send_buttons(self, chat_id, body, buttons) -> bool:
        return await self.send_text(chat_id, body, [[button] for button in buttons])

    async def send_list(self, chat_id, body, button_label, sections) -> bool:
        return await self.send_text(chat_id, body, [[button] for _, buttons in sections for button in buttons])

    async def send_document(self, chat_id, filename, content, caption=None, mime_type="application/octet-stream"):
        self.documents.append({"chat_id": chat_id, "filename": filename, "content": content, "caption": caption})
        return True

    async def acknowledge_button(self, callback_id) -> bool:
        self.acks.append(callback_id)
        return True

    async def download_media(self, binary_ref: str) -> Optional[bytes]:
        return self.media.get(binary_ref)

    @property
    def last_text(self) -> str:
        return self.sent[-1]["text"]

    @property
    def last_buttons(self) -> list:
        return [button for row in self.sent[-1]["keyboard"] for button in row]


class ScriptedExtractor:
    """Returns a preset intent per message text; ``unknown`` for anything else."""

    def __init__(self):
        self.intents: dict[str, Intent] = {}
        self.calls: list[str] = []
        self.providers = []

    def script(self, text: str, **fields) -> None:
        self.intents[text] = Intent(**fields)

    async def extract_async(self, text, context=None) -> Intent:
        self.calls.append(text)
        return self.intents.get(text, Intent.unknown())


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def extractor():
    return ScriptedExtractor()


@pytest.fixture
def media():
    service = Mock()
    service.transcribe_async = AsyncMock()
    service.scan_receipt_async = AsyncMock()
    return service


@pytest.fixture
def executor(storage):
    return ActionExecutor(storage, currency="AED", clock=lambda: FIXED_NOW)


@pytest.fixture
def controller(channel, state_store, executor, extractor, media):
    return DialogueController(
        channel=channel,
        state_store=state_store,
        executor=executor,
        extractor=extractor,
        media=media,
        locks=ChatLocks(),
    )
