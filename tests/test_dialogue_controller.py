import json
from unittest.mock import Mock

import pytest

from expense_bot.schemas.events import ButtonEvent, MediaEvent, MediaKind, TextEvent
from expense_bot.schemas.intent import Action
from expense_bot.services import keyboards
from expense_bot.services import result as codes
from expense_bot.services.action_executor import DEFERRED_REPLIES
from expense_bot.services.dialogue_controller import (
    CANCELLED_TEXT,
    EXPIRED_TEXT,
    FAILURE_TEXT,
    FREE_TEXT_ROUTES,
    INVALID_AMOUNT_TEXT,
    NOT_FOUND_TEXT,
    Route,
    parse_amount,
)
from expense_bot.services.media_service import ReceiptDraft
from expense_bot.services.result import Result
from expense_bot.services.state_machine import (
    DialogState,
    ExpensePaymentPicked,
    PendingExpense,
    PendingMediaExpense,
)
from tests.conftest import FIXED_NOW, CategoryRow, PaymentMethodRow

CHAT = "42"
KEY = f"telegram:{CHAT}"


def text(body):
    return TextEvent(chat_id=CHAT, text=body)


def tap(data, callback_id="cb-1"):
    return ButtonEvent(chat_id=CHAT, data=data, callback_id=callback_id)


@pytest.fixture
def food(storage):
    row = CategoryRow(name="Food", allocated_funds=500.0)
    storage.categories.append(row)
    return row


@pytest.fixture
def cash(storage):
    row = PaymentMethodRow(name="Cash", type="cash", balance=200.0)
    storage.payment_methods.append(row)
    return row


@pytest.fixture
def chase(storage):
    row = PaymentMethodRow(name="Chase", type="credit_card", balance=500.0, credit_limit=5000.0, due_date=20)
    storage.payment_methods.append(row)
    return row


class TestRouteTable:
    def test_every_action_has_a_route(self):
        assert set(FREE_TEXT_ROUTES) == set(Action)

    def test_immediate_routes_match_executor(self, executor):
        immediate = {action for action, route in FREE_TEXT_ROUTES.items() if route == Route.IMMEDIATE}
        assert immediate == executor.immediate_actions

    def test_deferred_routes_have_replies(self):
        deferred = {action for action, route in FREE_TEXT_ROUTES.items() if route == Route.DEFERRED}
        assert deferred == set(DEFERRED_REPLIES)

    def test_mutations_require_confirmation(self):
        confirm = {action for action, route in FREE_TEXT_ROUTES.items() if route == Route.CONFIRM}
        assert confirm == {Action.ADD_EXPENSE, Action.CREATE_CATEGORY, Action.CREATE_PAYMENT_METHOD}


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw,expected",
        [("45", 45.0), ("12.50", 12.5), ("1,200", 1200.0), ("30 AED", 30.0), ("9999999999.99", 9999999999.99)],
    )
    def test_valid(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", "0", "-5", "nan", "inf", "0.004", "1e30", "99999999999"])
    def test_invalid(self, raw):
        assert parse_amount(raw) is None


class TestFreeTextExpense:
    @pytest.mark.asyncio
    async def test_spent_on_lunch_confirm_scenario(self, controller, channel, extractor, state_store, storage):
        extractor.script("spent 45 on lunch", action="add_expense", amount=45, description="lunch")

        await controller.handle(text("spent 45 on lunch"))

        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_CONFIRMATION
        assert record.data == {
            "action": "add_expense",
            "amount": 45.0,
            "category": "Uncategorized",
            "paymentMethod": "Telegram",
            "description": "lunch",
            "date": FIXED_NOW.isoformat(),
        }
        assert storage.mutations == []
        assert "Confirm Expense" in channel.last_text
        assert [button.data for button in channel.last_buttons] == [
            keyboards.CONFIRM_AI_ACTION,
            keyboards.CANCEL_AI_ACTION,
        ]

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        assert state_store.get(KEY) is None
        assert storage.mutations == ["create_category", "create_expense"]
        expense = storage.expenses[0]
        assert expense.amount == 45.0
        assert expense.category == "Uncategorized"
        assert expense.payment_method == "Telegram"
        assert "Expense Added" in channel.last_text
        assert "Uncategorized this month: AED 45.00" in channel.last_text

    @pytest.mark.asyncio
    async def test_text_yes_confirms(self, controller, extractor, state_store, storage):
        extractor.script("coffee 15", action="add_expense", amount=15, category="Food")

        await controller.handle(text("coffee 15"))
        await controller.handle(text("Yes!"))

        assert state_store.get(KEY) is None
        assert len(storage.expenses) == 1
        assert extractor.calls == ["coffee 15"]

    @pytest.mark.asyncio
    async def test_text_no_cancels(self, controller, channel, extractor, state_store, storage):
        extractor.script("coffee 15", action="add_expense", amount=15)

        await controller.handle(text("coffee 15"))
        await controller.handle(text("no"))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert channel.last_text == CANCELLED_TEXT

    @pytest.mark.asyncio
    async def test_confirm_intent_while_awaiting(self, controller, extractor, state_store, storage):
        extractor.script("coffee 15", action="add_expense", amount=15)
        extractor.script("that looks right to me", action="confirm_action")

        await controller.handle(text("coffee 15"))
        await controller.handle(text("that looks right to me"))

        assert state_store.get(KEY) is None
        assert len(storage.expenses) == 1

    @pytest.mark.asyncio
    async def test_new_expense_replaces_pending(self, controller, extractor, state_store, storage):
        extractor.script("coffee 15", action="add_expense", amount=15)
        extractor.script("taxi 30", action="add_expense", amount=30, category="Transport")

        await controller.handle(text("coffee 15"))
        await controller.handle(text("taxi 30"))

        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_CONFIRMATION
        assert record.data["amount"] == 30.0
        assert record.data["category"] == "Transport"
        assert storage.mutations == []

    @pytest.mark.asyncio
    async def test_missing_amount_keeps_state_absent(self, controller, channel, extractor, state_store, storage):
        extractor.script("spent on lunch", action="add_expense", description="lunch")

        await controller.handle(text("spent on lunch"))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert "couldn't find the amount" in channel.last_text

    @pytest.mark.asyncio
    async def test_oversized_amount_is_rejected(self, controller, channel, extractor, state_store, storage):
        extractor.script("spent a fortune", action="add_expense", amount=1e30)

        await controller.handle(text("spent a fortune"))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert "not a valid amount" in channel.last_text


class TestFreeTextEntities:
    @pytest.mark.asyncio
    async def test_create_category_needs_confirmation(self, controller, extractor, state_store, storage):
        extractor.script("create category Travel", action="create_category", categoryName="Travel", budgetAmount=2000)

        await controller.handle(text("create category Travel"))

        assert storage.mutations == []
        assert state_store.get(KEY).data["action"] == "create_category"

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        assert storage.mutations == ["create_category"]
        assert storage.categories[0].budget == 2000.0
        assert state_store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_create_payment_method_needs_confirmation(self, controller, extractor, state_store, storage):
        extractor.script(
            "add credit card Chase",
            action="create_payment_method",
            paymentMethodName="Chase",
            paymentMethodType="credit_card",
            creditLimit=5000,
            dueDate=15,
        )

        await controller.handle(text("add credit card Chase"))
        assert storage.mutations == []

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        card = storage.payment_methods[0]
        assert card.type == "credit_card"
        assert card.credit_limit == 5000.0
        assert card.due_date == 15

    @pytest.mark.asyncio
    async def test_duplicate_category_rejected_before_confirmation(
        self, controller, channel, extractor, state_store, food
    ):
        extractor.script("create category food", action="create_category", categoryName="food")

        await controller.handle(text("create category food"))

        assert state_store.get(KEY) is None
        assert "already exists" in channel.last_text


class TestFreeTextRouting:
    @pytest.mark.asyncio
    async def test_immediate_action_leaves_state_absent(self, controller, channel, extractor, state_store):
        extractor.script("show categories", action="view_categories")

        await controller.handle(text("show categories"))

        assert state_store.get(KEY) is None
        assert "No categories yet" in channel.last_text

    @pytest.mark.asyncio
    async def test_deferred_action_points_to_menu(self, controller, channel, extractor, state_store, storage):
        extractor.script("pay 200 to chase", action="pay_credit_card", amount=200)

        await controller.handle(text("pay 200 to chase"))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert "Payments" in channel.last_text
        assert keyboards.PAYMENT_CREDIT_CARD in [button.data for button in channel.last_buttons]

    @pytest.mark.asyncio
    async def test_confirm_without_pending_is_unknown(self, controller, channel, extractor, state_store, storage):
        extractor.script("yes", action="confirm_action")

        await controller.handle(text("yes"))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert "didn't catch that" in channel.last_text

    @pytest.mark.asyncio
    async def test_unknown_falls_back_to_help_prompt(self, controller, channel):
        await controller.handle(text("what is the meaning of life"))

        assert "didn't catch that" in channel.last_text
        assert channel.last_buttons == [button for row in keyboards.main_menu() for button in row]

    @pytest.mark.asyncio
    async def test_start_command_clears_state(self, controller, channel, state_store, extractor):
        state_store.set(KEY, DialogState.ADD_EXPENSE_SELECT_CATEGORY, {})

        await controller.handle(text("/start"))

        assert state_store.get(KEY) is None
        assert "Welcome" in channel.last_text
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_text_in_button_step_reprompts(self, controller, channel, state_store, extractor):
        state_store.set(KEY, DialogState.ADD_EXPENSE_SELECT_CATEGORY, {})

        await controller.handle(text("hello"))

        assert state_store.get(KEY).state == DialogState.ADD_EXPENSE_SELECT_CATEGORY
        assert extractor.calls == []
        assert [button.data for button in channel.last_buttons] == [keyboards.CANCEL]


class TestCancel:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [state for state in DialogState if state != DialogState.NONE])
    async def test_cancel_button_clears_any_state(self, controller, channel, state_store, state):
        state_store.set(KEY, state, {"anything": "goes"})

        await controller.handle(tap(keyboards.CANCEL))

        assert state_store.get(KEY) is None
        assert len(channel.sent) == 1
        assert channel.sent[0]["text"] == CANCELLED_TEXT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal", ["cancel", "/cancel", "Stop"])
    async def test_cancel_text_clears_text_step(self, controller, channel, state_store, signal):
        state_store.set(KEY, DialogState.ADD_EXPENSE_AMOUNT, {"categoryId": "c", "categoryName": "Food"})

        await controller.handle(text(signal))

        assert state_store.get(KEY) is None
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_cancel_without_state(self, controller, channel, state_store):
        await controller.handle(tap(keyboards.CANCEL_AI_ACTION))

        assert state_store.get(KEY) is None
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_button_is_acknowledged(self, controller, channel):
        await controller.handle(tap(keyboards.MENU_MAIN, callback_id="query-7"))

        assert channel.acks == ["query-7"]


class TestExecutionBoundary:
    @pytest.mark.asyncio
    async def test_failed_execution_clears_confirmation(self, controller, channel, state_store, storage):
        pending = PendingExpense(
            amount=10, category="Food", payment_method="Telegram", description="x", date=FIXED_NOW.isoformat()
        )
        state_store.set(KEY, DialogState.AWAITING_CONFIRMATION, pending.dump())
        storage.fail_on = {"create_expense"}

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        assert state_store.get(KEY) is None
        assert channel.last_text == FAILURE_TEXT

    @pytest.mark.asyncio
    async def test_corrupt_pending_action_expires(self, controller, channel, state_store, storage):
        state_store.set(KEY, DialogState.AWAITING_CONFIRMATION, {"action": "launch_rocket"})

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        assert state_store.get(KEY) is None
        assert storage.mutations == []
        assert channel.last_text == EXPIRED_TEXT

    @pytest.mark.asyncio
    async def test_unexpected_error_recovers(self, controller, channel, state_store, storage):
        storage.get_all_expenses = Mock(side_effect=RuntimeError("db down"))
        state_store.set(KEY, DialogState.SELECT_CATEGORY_FOR_FUND, {})

        await controller.handle(tap(keyboards.MENU_DASHBOARD))

        assert state_store.get(KEY) is None
        assert channel.last_text == FAILURE_TEXT


class TestAddExpenseFlow:
    @pytest.mark.asyncio
    async def test_monotonic_progress(self, controller, channel, state_store, storage, food, cash):
        await controller.handle(tap(keyboards.MENU_ADD_EXPENSE))
        assert state_store.get(KEY).state == DialogState.ADD_EXPENSE_SELECT_CATEGORY
        assert f"{keyboards.SELECT_EXPENSE_CATEGORY}:{food.id}" in [b.data for b in channel.last_buttons]

        await controller.handle(tap(f"{keyboards.SELECT_EXPENSE_CATEGORY}:{food.id}"))
        assert state_store.get(KEY).state == DialogState.ADD_EXPENSE_SELECT_PAYMENT

        await controller.handle(tap(f"{keyboards.SELECT_EXPENSE_PAYMENT}:{cash.id}"))
        record = state_store.get(KEY)
        assert record.state == DialogState.ADD_EXPENSE_AMOUNT
        assert record.data == {
            "categoryId": food.id,
            "categoryName": "Food",
            "paymentMethodId": cash.id,
            "paymentMethodName": "Cash",
        }

        await controller.handle(text("25.50"))
        record = state_store.get(KEY)
        assert record.state == DialogState.ADD_EXPENSE_DESCRIPTION
        assert record.data["amount"] == 25.5
        assert keyboards.SKIP_DESCRIPTION in [b.data for b in channel.last_buttons]

        await controller.handle(text("groceries"))
        assert state_store.get(KEY) is None
        expense = storage.expenses[0]
        assert (expense.amount, expense.category, expense.payment_method, expense.description) == (
            25.5,
            "Food",
            "Cash",
            "groceries",
        )
        assert cash.balance == 174.5
        assert food.allocated_funds == 474.5

    @pytest.mark.asyncio
    async def test_invalid_amount_leaves_state_unchanged(self, controller, channel, state_store, storage):
        data = ExpensePaymentPicked(
            category_id="c-1", category_name="Food", payment_method_id="p-1", payment_method_name="Cash"
        ).dump()
        state_store.set(KEY, DialogState.ADD_EXPENSE_AMOUNT, data)

        await controller.handle(text("abc"))

        record = state_store.get(KEY)
        assert record.state == DialogState.ADD_EXPENSE_AMOUNT
        assert record.data == data
        assert channel.last_text == INVALID_AMOUNT_TEXT
        assert [b.data for b in channel.last_buttons] == [keyboards.CANCEL]
        assert storage.mutations == []

    @pytest.mark.asyncio
    async def test_skip_description(self, controller, state_store, storage, food, cash):
        state_store.set(
            KEY,
            DialogState.ADD_EXPENSE_DESCRIPTION,
            {
                "categoryId": food.id,
                "categoryName": "Food",
                "paymentMethodId": cash.id,
                "paymentMethodName": "Cash",
                "amount": 12,
            },
        )

        await controller.handle(tap(keyboards.SKIP_DESCRIPTION))

        assert state_store.get(KEY) is None
        assert storage.expenses[0].description == "No description"

    @pytest.mark.asyncio
    async def test_no_categories(self, controller, channel, state_store):
        await controller.handle(tap(keyboards.MENU_ADD_EXPENSE))

        assert state_store.get(KEY) is None
        assert "No categories yet" in channel.last_text

    @pytest.mark.asyncio
    async def test_stale_selection_button(self, controller, channel, state_store, storage, food):
        await controller.handle(tap(f"{keyboards.SELECT_EXPENSE_CATEGORY}:{food.id}"))

        assert state_store.get(KEY) is None
        assert channel.last_text == EXPIRED_TEXT
        assert storage.mutations == []

    @pytest.mark.asyncio
    async def test_selection_from_another_flow_expires(self, controller, channel, state_store, food):
        state_store.set(KEY, DialogState.SELECT_CATEGORY_FOR_FUND, {})

        await controller.handle(tap(f"{keyboards.SELECT_EXPENSE_CATEGORY}:{food.id}"))

        assert state_store.get(KEY) is None
        assert channel.last_text == EXPIRED_TEXT

    @pytest.mark.asyncio
    async def test_deleted_category_mid_flow(self, controller, channel, state_store, storage, food, cash):
        state_store.set(
            KEY,
            DialogState.ADD_EXPENSE_DESCRIPTION,
            {
                "categoryId": "gone",
                "categoryName": "Old",
                "paymentMethodId": cash.id,
                "paymentMethodName": "Cash",
                "amount": 12,
            },
        )

        await controller.handle(text("lunch"))

        assert state_store.get(KEY) is None
        assert channel.last_text == NOT_FOUND_TEXT
        assert storage.expenses == []


class TestFundsFlows:
    @pytest.mark.asyncio
    async def test_add_funds_to_category(self, controller, channel, state_store, food):
        await controller.handle(tap(keyboards.FUND_ADD_CATEGORY))
        await controller.handle(tap(f"{keyboards.SELECT_CATEGORY_FUND}:{food.id}"))
        assert state_store.get(KEY).state == DialogState.ADD_FUND_CATEGORY_AMOUNT

        await controller.handle(text("-10"))
        assert state_store.get(KEY).state == DialogState.ADD_FUND_CATEGORY_AMOUNT

        await controller.handle(text("100"))
        assert state_store.get(KEY) is None
        assert food.allocated_funds == 600.0
        assert "Funds Added" in channel.last_text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("typed", ["0.004", "1e30", "99999999999"])
    async def test_unstorable_amount_keeps_step(self, controller, channel, state_store, storage, food, typed):
        state_store.set(
            KEY, DialogState.ADD_FUND_CATEGORY_AMOUNT, {"categoryId": food.id, "categoryName": "Food"}
        )

        await controller.handle(text(typed))

        record = state_store.get(KEY)
        assert record.state == DialogState.ADD_FUND_CATEGORY_AMOUNT
        assert record.data == {"categoryId": food.id, "categoryName": "Food"}
        assert storage.mutations == []
        assert food.allocated_funds == 500.0
        assert channel.last_text == INVALID_AMOUNT_TEXT

    @pytest.mark.asyncio
    async def test_add_funds_to_cash_preselects_wallet(self, controller, state_store, cash):
        await controller.handle(tap(keyboards.FUND_ADD_CASH))

        record = state_store.get(KEY)
        assert record.state == DialogState.ADD_FUND_CASH_AMOUNT
        assert record.data["paymentMethodId"] == cash.id

        await controller.handle(text("50"))
        assert cash.balance == 250.0
        assert state_store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_add_funds_to_debit_card(self, controller, state_store, storage, cash):
        debit = PaymentMethodRow(name="ENBD", type="debit_card", balance=1000.0)
        storage.payment_methods.append(debit)

        await controller.handle(tap(keyboards.FUND_ADD_DEBIT))
        await controller.handle(tap(f"{keyboards.SELECT_DEBIT_FUND}:{debit.id}"))
        await controller.handle(text("250"))

        assert debit.balance == 1250.0
        assert cash.balance == 200.0

    @pytest.mark.asyncio
    async def test_deleted_category_when_adding_funds(self, controller, channel, state_store):
        state_store.set(KEY, DialogState.ADD_FUND_CATEGORY_AMOUNT, {"categoryId": "gone", "categoryName": "Old"})

        await controller.handle(text("50"))

        assert state_store.get(KEY) is None
        assert channel.last_text == NOT_FOUND_TEXT

    @pytest.mark.asyncio
    async def test_reset_category_requires_confirmation(self, controller, state_store, storage, food):
        storage.create_expense(
            {"amount": 20, "category": "Food", "payment_method": "Cash", "description": "", "date": FIXED_NOW}
        )
        storage.mutations.clear()

        await controller.handle(tap(keyboards.FUND_RESET_CATEGORY))
        await controller.handle(tap(f"{keyboards.RESET_CATEGORY_PICK}:{food.id}"))

        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_CONFIRMATION
        assert record.data == {"action": "reset_category", "categoryId": food.id, "categoryName": "Food"}
        assert storage.mutations == []

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        assert storage.mutations == ["reset_category"]
        assert storage.expenses == []
        assert food.allocated_funds == 0.0
        assert state_store.get(KEY) is None


class TestPayCreditCardFlow:
    @pytest.mark.asyncio
    async def test_payment_reduces_outstanding_balance(self, controller, channel, state_store, chase, cash):
        await controller.handle(tap(keyboards.PAYMENT_CREDIT_CARD))
        assert [b.data for b in channel.last_buttons] == [
            f"{keyboards.SELECT_CREDIT_PAYMENT}:{chase.id}",
            keyboards.CANCEL,
        ]

        await controller.handle(tap(f"{keyboards.SELECT_CREDIT_PAYMENT}:{chase.id}"))
        assert state_store.get(KEY).state == DialogState.PAY_CREDIT_AMOUNT

        await controller.handle(text("200"))

        assert chase.balance == 300.0
        assert state_store.get(KEY) is None
        assert "Outstanding: AED 300.00" in channel.last_text


class TestMenus:
    @pytest.mark.asyncio
    async def test_main_menu_clears_state(self, controller, channel, state_store):
        state_store.set(KEY, DialogState.SELECT_CREDIT_FOR_PAYMENT, {})

        await controller.handle(tap(keyboards.MENU_MAIN))

        assert state_store.get(KEY) is None
        assert "Main Menu" in channel.last_text

    @pytest.mark.asyncio
    async def test_funds_submenu(self, controller, channel):
        await controller.handle(tap(keyboards.MENU_FUNDS))

        assert keyboards.FUND_RESET_CATEGORY in [b.data for b in channel.last_buttons]

    @pytest.mark.asyncio
    async def test_json_backup_is_sent_as_document(self, controller, channel, storage, food):
        await controller.handle(tap(keyboards.BACKUP_JSON))

        assert len(channel.documents) == 1
        payload = json.loads(channel.documents[0]["content"].decode("utf-8"))
        assert payload["categories"][0]["name"] == "Food"
        assert channel.documents[0]["filename"].endswith(".json")

    @pytest.mark.asyncio
    async def test_reminders(self, controller, channel, chase):
        await controller.handle(tap(keyboards.MENU_REMINDERS))

        assert "Chase" in channel.last_text
        assert "in 6 days" in channel.last_text

    @pytest.mark.asyncio
    async def test_unknown_button(self, controller, channel, state_store):
        await controller.handle(tap("something_else"))

        assert "Unknown option" in channel.last_text


class TestReceiptFlow:
    @pytest.mark.asyncio
    async def test_receipt_forces_category_and_payment_selection(
        self, controller, channel, state_store, storage, media, food, cash
    ):
        channel.media["photo-1"] = b"jpeg-bytes"
        media.scan_receipt_async.return_value = Result.success(
            ReceiptDraft(amount=42.5, merchant="Carrefour", category="Groceries", confidence=0.9)
        )

        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.IMAGE, binary_ref="photo-1"))

        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_CONFIRMATION
        assert record.data["action"] == "add_expense_from_receipt"
        assert record.data["suggestedCategory"] == "Groceries"
        assert storage.mutations == []
        media.scan_receipt_async.assert_awaited_once_with(b"jpeg-bytes", None)

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))
        assert state_store.get(KEY).state == DialogState.AWAITING_RECEIPT_CATEGORY_FIRST
        assert storage.mutations == []

        await controller.handle(tap(f"{keyboards.RECEIPT_CATEGORY}:{food.id}"))
        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_RECEIPT_PAYMENT
        assert record.data["categoryId"] == food.id

        await controller.handle(tap(f"{keyboards.RECEIPT_PAYMENT}:{cash.id}"))

        assert state_store.get(KEY) is None
        expense = storage.expenses[0]
        assert (expense.amount, expense.category, expense.payment_method) == (42.5, "Food", "Cash")
        assert expense.description == "Carrefour"

    @pytest.mark.asyncio
    async def test_category_picker_is_capped(self, controller, channel, state_store, storage):
        for index in range(15):
            storage.categories.append(CategoryRow(name=f"Category {index:02d}"))
        pending = PendingMediaExpense(
            action="add_expense_from_receipt", amount=10, description="Receipt", date=FIXED_NOW.isoformat()
        )
        state_store.set(KEY, DialogState.AWAITING_CONFIRMATION, pending.dump())

        await controller.handle(tap(keyboards.CONFIRM_AI_ACTION))

        picks = [b for b in channel.last_buttons if b.data.startswith(keyboards.RECEIPT_CATEGORY)]
        assert len(picks) == keyboards.MEDIA_CATEGORY_LIMIT

    @pytest.mark.asyncio
    async def test_low_confidence_receipt(self, controller, channel, state_store, media):
        channel.media["photo-1"] = b"jpeg-bytes"
        media.scan_receipt_async.return_value = Result.failure("too blurry", codes.LOW_CONFIDENCE)

        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.IMAGE, binary_ref="photo-1"))

        assert state_store.get(KEY) is None
        assert "clear total" in channel.last_text

    @pytest.mark.asyncio
    async def test_download_failure(self, controller, channel, media):
        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.IMAGE, binary_ref="missing"))

        assert "couldn't download" in channel.last_text
        media.scan_receipt_async.assert_not_awaited()


class TestVoiceFlow:
    @pytest.mark.asyncio
    async def test_voice_expense_becomes_pending_media_action(
        self, controller, channel, extractor, state_store, storage, media
    ):
        channel.media["voice-1"] = b"ogg"
        media.transcribe_async.return_value = Result.success("spent 30 on taxi")
        extractor.script("spent 30 on taxi", action="add_expense", amount=30, category="Transport")

        await controller.handle(
            MediaEvent(chat_id=CHAT, kind=MediaKind.VOICE, binary_ref="voice-1", mime_type="audio/ogg")
        )

        record = state_store.get(KEY)
        assert record.state == DialogState.AWAITING_CONFIRMATION
        assert record.data["action"] == "add_expense_from_voice"
        assert record.data["transcribedText"] == "spent 30 on taxi"
        assert record.data["suggestedCategory"] == "Transport"
        assert "category" not in record.data
        assert storage.mutations == []
        assert "spent 30 on taxi" in channel.last_text

    @pytest.mark.asyncio
    async def test_voice_question_is_routed_like_text(self, controller, channel, extractor, state_store, media):
        channel.media["voice-1"] = b"ogg"
        media.transcribe_async.return_value = Result.success("show my categories")
        extractor.script("show my categories", action="view_categories")

        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.VOICE, binary_ref="voice-1"))

        texts = [message["text"] for message in channel.sent]
        assert '🗣 "show my categories"' in texts
        assert "No categories yet" in channel.last_text
        assert state_store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_voice_yes_confirms_pending(self, controller, channel, state_store, storage, media, food):
        channel.media["voice-1"] = b"ogg"
        media.transcribe_async.return_value = Result.success("yes")
        pending = PendingMediaExpense(
            action="add_expense_from_voice", amount=30, description="taxi", date=FIXED_NOW.isoformat()
        )
        state_store.set(KEY, DialogState.AWAITING_CONFIRMATION, pending.dump())

        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.VOICE, binary_ref="voice-1"))

        assert state_store.get(KEY).state == DialogState.AWAITING_VOICE_CATEGORY_FIRST

    @pytest.mark.asyncio
    async def test_transcription_failure(self, controller, channel, state_store, media):
        channel.media["voice-1"] = b"ogg"
        media.transcribe_async.return_value = Result.failure("nothing heard", codes.EMPTY_RESULT)

        await controller.handle(MediaEvent(chat_id=CHAT, kind=MediaKind.VOICE, binary_ref="voice-1"))

        assert state_store.get(KEY) is None
        assert "couldn't understand" in channel.last_text
