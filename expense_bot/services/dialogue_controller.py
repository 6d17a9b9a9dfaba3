"""Channel-agnostic dialogue state machine.

One controller instance handles one inbound event: it loads the chat's state,
decides between free-text routing, a guided-flow step, a confirmation or an
execution, writes the next state and sends the reply through the channel adapter.
"""

import re
from enum import Enum
from typing import Callable, Optional

from expense_bot.logging_config import chat_logger
from expense_bot.schemas.events import ButtonEvent, ChannelEvent, MediaEvent, MediaKind, Reply, TextEvent
from expense_bot.schemas.intent import Action, Intent, clean_amount
from expense_bot.services import keyboards
from expense_bot.services.action_executor import ActionExecutor
from expense_bot.services.channels.base import ChannelAdapter
from expense_bot.services.chat_locks import ChatLocks
from expense_bot.services.intent_service import (
    IntentContext,
    IntentExtractor,
    classify_confirmation,
    is_cancel_command,
    normalize_for_matching,
)
from expense_bot.services.media_service import MediaService
from expense_bot.services.state_machine import (
    TEXT_INPUT_STATES,
    CategoryPicked,
    CorruptStateError,
    DialogState,
    ExpenseAmountEntered,
    ExpensePaymentPicked,
    NoData,
    PaymentMethodPicked,
    PendingMediaExpense,
    PendingReset,
    StateData,
    load_state_data,
    transition,
)
from expense_bot.services.state_service import ConversationState, StateStore
from expense_bot.services.storage import EntityNotFoundError


class Route(str, Enum):
    IMMEDIATE = "immediate"
    CONFIRM = "confirm"
    DEFERRED = "deferred"
    UNKNOWN = "unknown"


FREE_TEXT_ROUTES = {
    Action.ADD_EXPENSE: Route.CONFIRM,
    Action.VIEW_EXPENSES: Route.IMMEDIATE,
    Action.VIEW_SUMMARY: Route.IMMEDIATE,
    Action.DELETE_EXPENSE: Route.IMMEDIATE,
    Action.VIEW_CATEGORIES: Route.IMMEDIATE,
    Action.CREATE_CATEGORY: Route.CONFIRM,
    Action.UPDATE_CATEGORY: Route.DEFERRED,
    Action.DELETE_CATEGORY: Route.DEFERRED,
    Action.SET_BUDGET: Route.DEFERRED,
    Action.ADD_FUNDS_TO_CATEGORY: Route.DEFERRED,
    Action.RESET_CATEGORY: Route.DEFERRED,
    Action.VIEW_PAYMENT_METHODS: Route.IMMEDIATE,
    Action.CREATE_PAYMENT_METHOD: Route.CONFIRM,
    Action.UPDATE_PAYMENT_METHOD: Route.DEFERRED,
    Action.DELETE_PAYMENT_METHOD: Route.DEFERRED,
    Action.ADD_FUNDS_TO_PAYMENT_METHOD: Route.DEFERRED,
    Action.PAY_CREDIT_CARD: Route.DEFERRED,
    Action.VIEW_ANALYTICS: Route.IMMEDIATE,
    Action.EXPORT_DATA: Route.DEFERRED,
    Action.BACKUP_DATA: Route.DEFERRED,
    Action.HELP: Route.IMMEDIATE,
    Action.GREETING: Route.IMMEDIATE,
    Action.MENU: Route.IMMEDIATE,
    # Nothing is pending when these reach free-text routing.
    Action.CONFIRM_ACTION: Route.UNKNOWN,
    Action.CANCEL_ACTION: Route.UNKNOWN,
    Action.UNKNOWN: Route.UNKNOWN,
}

_unrouted = set(Action) - set(FREE_TEXT_ROUTES)
if _unrouted:
    raise RuntimeError(f"Actions without a free-text route: {sorted(action.value for action in _unrouted)}")

WELCOME_TEXT = """👋 *Welcome to your expense tracker!*

Type what you spent ("spent 45 on lunch"), send a receipt photo or a voice note,
or use the menu below."""

EXPIRED_TEXT = "⌛ That menu has expired. Please start again from the main menu."
NOT_FOUND_TEXT = "❌ That item no longer exists. Please start again from the main menu."
FAILURE_TEXT = "❌ Sorry, something went wrong. Please try again."
CANCELLED_TEXT = "✅ Cancelled. What else can I help you with?"
INVALID_AMOUNT_TEXT = "❌ Invalid amount. Please enter a positive number, e.g. 45 or 12.50."

_AMOUNT_NOISE = re.compile(r"(?i)\b(aed|dirhams?|dhs?)\b|[,\s]")


def parse_amount(text: str) -> Optional[float]:
    """Amount typed by the user, rounded to cents; None when it cannot be stored."""
    cleaned = _AMOUNT_NOISE.sub("", text or "")
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return clean_amount(value)


class DialogueController:
    def __init__(
        self,
        channel: ChannelAdapter,
        state_store: StateStore,
        executor: ActionExecutor,
        extractor: IntentExtractor,
        media: MediaService,
        locks: ChatLocks,
    ):
        self.channel = channel
        self.state_store = state_store
        self.executor = executor
        self.storage = executor.storage
        self.extractor = extractor
        self.media = media
        self.locks = locks
        self._selections = {
            keyboards.SELECT_EXPENSE_CATEGORY: (DialogState.ADD_EXPENSE_SELECT_CATEGORY, self._on_expense_category),
            keyboards.SELECT_EXPENSE_PAYMENT: (DialogState.ADD_EXPENSE_SELECT_PAYMENT, self._on_expense_payment),
            keyboards.SELECT_CATEGORY_FUND: (DialogState.SELECT_CATEGORY_FOR_FUND, self._on_fund_category),
            keyboards.SELECT_DEBIT_FUND: (DialogState.SELECT_DEBIT_FOR_FUND, self._on_debit_card),
            keyboards.RESET_CATEGORY_PICK: (DialogState.SELECT_CATEGORY_TO_RESET, self._on_reset_category),
            keyboards.SELECT_CREDIT_PAYMENT: (DialogState.SELECT_CREDIT_FOR_PAYMENT, self._on_credit_card),
            keyboards.RECEIPT_CATEGORY: (DialogState.AWAITING_RECEIPT_CATEGORY_FIRST, self._on_media_category),
            keyboards.RECEIPT_PAYMENT: (DialogState.AWAITING_RECEIPT_PAYMENT, self._on_media_payment),
            keyboards.VOICE_CATEGORY: (DialogState.AWAITING_VOICE_CATEGORY_FIRST, self._on_media_category),
            keyboards.VOICE_PAYMENT: (DialogState.AWAITING_VOICE_PAYMENT, self._on_media_payment),
        }
        self._menu_buttons = {
            keyboards.MENU_DASHBOARD: self.executor.dashboard,
            keyboards.MENU_CATEGORIES: self.executor.view_categories,
            keyboards.MENU_PAYMENT_METHODS: self.executor.view_payment_methods,
            keyboards.MENU_ANALYTICS: self.executor.view_analytics,
            keyboards.MENU_REMINDERS: self.executor.reminders,
            keyboards.MENU_FUNDS: lambda: Reply("💰 *Funds*\n\nWhat would you like to do?", keyboards.funds_menu()),
            keyboards.MENU_PAYMENTS: lambda: Reply("💳 *Payments*\n\nWhat would you like to do?", keyboards.payments_menu()),
            keyboards.MENU_BACKUP: lambda: Reply("💾 *Backup*\n\nChoose a format:", keyboards.backup_menu()),
        }
        self._flow_entries = {
            keyboards.MENU_ADD_EXPENSE: self._start_add_expense,
            keyboards.FUND_ADD_CATEGORY: self._start_category_funds,
            keyboards.FUND_ADD_CASH: self._start_cash_funds,
            keyboards.FUND_ADD_DEBIT: self._start_debit_funds,
            keyboards.FUND_RESET_CATEGORY: self._start_reset_category,
            keyboards.PAYMENT_CREDIT_CARD: self._start_credit_payment,
        }

    # Entry point

    def _key(self, chat_id: str) -> str:
        return f"{self.channel.name}:{chat_id}"

    async def handle(self, event: ChannelEvent) -> None:
        """Handle one inbound event. Never raises; failures end in a chat message."""
        log = chat_logger("dialogue", event.chat_id, self.channel.name)

        if isinstance(event, ButtonEvent) and self.channel.requires_ack:
            await self.channel.acknowledge_button(event.callback_id)

        async with self.locks.hold(self._key(event.chat_id)):
            try:
                if isinstance(event, ButtonEvent):
                    await self._handle_button(event.chat_id, event.data)
                elif isinstance(event, TextEvent):
                    await self._handle_text(event.chat_id, event.text)
                elif isinstance(event, MediaEvent):
                    await self._handle_media(event)
                else:
                    raise TypeError(f"Unsupported event {type(event).__name__}")
            except Exception as exc:
                log.error("Event handling failed", context={"error": str(exc)}, exc_info=True)
                try:
                    self._clear(event.chat_id)
                except Exception as clear_exc:
                    log.error("State clear after failure failed", context={"error": str(clear_exc)})
                await self._send(event.chat_id, Reply(FAILURE_TEXT, keyboards.main_menu()))

    # State helpers

    def _load(self, chat_id: str) -> Optional[ConversationState]:
        return self.state_store.get(self._key(chat_id))

    def _save(self, chat_id: str, next_state: DialogState, data: StateData, current: Optional[DialogState] = None):
        transition(current or DialogState.NONE, next_state)
        self.state_store.set(self._key(chat_id), next_state, data.dump())

    def _clear(self, chat_id: str) -> None:
        self.state_store.clear(self._key(chat_id))

    async def _send(self, chat_id: str, reply: Reply) -> None:
        await self.channel.send_reply(chat_id, reply)

    async def _expire(self, chat_id: str) -> None:
        self._clear(chat_id)
        await self._send(chat_id, Reply(EXPIRED_TEXT, keyboards.main_menu()))

    async def _cancel(self, chat_id: str) -> None:
        self._clear(chat_id)
        await self._send(chat_id, Reply(CANCELLED_TEXT, keyboards.main_menu()))

    async def _execute(self, chat_id: str, action: Callable[[], Reply]) -> None:
        """Run a mutation; the conversation state is cleared whatever the outcome."""
        log = chat_logger("dialogue", chat_id, self.channel.name)
        try:
            reply = action()
        except EntityNotFoundError as exc:
            log.warning("Entity vanished before execution", context={"entity": exc.entity, "id": exc.entity_id})
            reply = Reply(NOT_FOUND_TEXT, keyboards.main_menu())
        except Exception as exc:
            log.error("Action execution failed", context={"error": str(exc)}, exc_info=True)
            reply = Reply(FAILURE_TEXT, keyboards.main_menu())
        finally:
            self._clear(chat_id)
        await self._send(chat_id, reply)

    # Free text

    async def _handle_text(self, chat_id: str, text: str) -> None:
        stripped = (text or "").strip()
        command = stripped.split()[0].lower().split("@")[0] if stripped else ""
        if command in ("/start", "/menu"):
            self._clear(chat_id)
            await self._send(chat_id, Reply(WELCOME_TEXT, keyboards.main_menu()))
            return
        if command == "/help":
            await self._send(chat_id, self.executor.help())
            return
        if is_cancel_command(stripped):
            await self._cancel(chat_id)
            return

        record = self._load(chat_id)
        if record is None:
            intent = await self._extract(chat_id, stripped)
            await self._route_intent(chat_id, intent, current=None)
        elif record.state == DialogState.AWAITING_CONFIRMATION:
            await self._handle_confirmation_text(chat_id, record, stripped)
        elif record.state in TEXT_INPUT_STATES:
            await self._handle_text_step(chat_id, record, stripped)
        else:
            await self._send(
                chat_id, Reply("👆 Please pick one of the options above, or tap Cancel.", keyboards.cancel_keyboard())
            )

    async def _handle_confirmation_text(self, chat_id: str, record: ConversationState, text: str) -> None:
        decision = classify_confirmation(text)
        if decision == "yes":
            await self._confirm(chat_id)
            return
        if decision == "no":
            await self._cancel(chat_id)
            return
        intent = await self._extract(chat_id, text)
        await self._dispatch_intent(chat_id, record, intent)

    async def _dispatch_intent(self, chat_id: str, record: Optional[ConversationState], intent: Intent) -> None:
        if record is not None and record.state == DialogState.AWAITING_CONFIRMATION:
            if intent.action == Action.CONFIRM_ACTION:
                await self._confirm(chat_id)
                return
            if intent.action == Action.CANCEL_ACTION:
                await self._cancel(chat_id)
                return
        await self._route_intent(chat_id, intent, current=record.state if record else None)

    async def _extract(self, chat_id: str, text: str) -> Intent:
        try:
            context = IntentContext(
                categories=[category.name for category in self.storage.get_all_categories()],
                payment_methods=[payment_method.name for payment_method in self.storage.get_all_payment_methods()],
            )
        except Exception as exc:
            chat_logger("dialogue", chat_id, self.channel.name).warning(
                "Intent context unavailable", context={"error": str(exc)}
            )
            context = IntentContext()
        return await self.extractor.extract_async(text, context)

    def _prepare(self, intent: Intent):
        if intent.action == Action.ADD_EXPENSE:
            return self.executor.prepare_expense(
                intent, self.channel.default_payment_method, self.channel.default_payment_method
            )
        if intent.action == Action.CREATE_CATEGORY:
            return self.executor.prepare_category(intent)
        if intent.action == Action.CREATE_PAYMENT_METHOD:
            return self.executor.prepare_payment_method(intent)
        raise ValueError(f"{intent.action.value} has no confirmation step")

    async def _route_intent(self, chat_id: str, intent: Intent, current: Optional[DialogState]) -> None:
        route = FREE_TEXT_ROUTES[intent.action]
        chat_logger("dialogue", chat_id, self.channel.name).info(
            "Intent routed", context={"action": intent.action.value, "route": route.value}
        )

        if route == Route.IMMEDIATE:
            reply = self.executor.run(intent)
        elif route == Route.CONFIRM:
            prepared = self._prepare(intent)
            if not prepared.ok:
                await self._send(chat_id, Reply(prepared.error, keyboards.main_menu()))
                return
            self._save(chat_id, DialogState.AWAITING_CONFIRMATION, prepared.value, current=current)
            reply = self.executor.confirmation_prompt(prepared.value)
        elif route == Route.DEFERRED:
            reply = self.executor.deferred(intent.action)
        else:
            reply = self.executor.unknown()
        await self._send(chat_id, reply)

    # Confirmation

    async def _confirm(self, chat_id: str) -> None:
        record = self._load(chat_id)
        if record is None or record.state != DialogState.AWAITING_CONFIRMATION:
            await self._send(chat_id, Reply("🤷 There is nothing waiting for confirmation.", keyboards.main_menu()))
            return
        try:
            pending = load_state_data(record.state, record.data)
        except CorruptStateError:
            await self._expire(chat_id)
            return

        if isinstance(pending, PendingMediaExpense):
            await self._ask_media_category(chat_id, pending)
            return
        await self._execute(chat_id, lambda: self.executor.execute_pending(pending))

    async def _ask_media_category(self, chat_id: str, pending: PendingMediaExpense) -> None:
        categories = self.storage.get_all_categories()
        if not categories:
            self._clear(chat_id)
            await self._send(
                chat_id,
                Reply("📂 You have no categories yet. Create one first, e.g. 'create category Food'.", keyboards.main_menu()),
            )
            return

        from_receipt = pending.action == "add_expense_from_receipt"
        next_state = (
            DialogState.AWAITING_RECEIPT_CATEGORY_FIRST if from_receipt else DialogState.AWAITING_VOICE_CATEGORY_FIRST
        )
        prefix = keyboards.RECEIPT_CATEGORY if from_receipt else keyboards.VOICE_CATEGORY
        self._save(chat_id, next_state, pending, current=DialogState.AWAITING_CONFIRMATION)

        text = f"📁 Select a category for {self.executor.money(pending.amount)}"
        if pending.suggested_category:
            text += f"\n💡 Suggested: {pending.suggested_category}"
        keyboard = keyboards.selection_keyboard(prefix, categories, limit=keyboards.MEDIA_CATEGORY_LIMIT)
        await self._send(chat_id, Reply(text, keyboard))

    # Guided text steps

    async def _handle_text_step(self, chat_id: str, record: ConversationState, text: str) -> None:
        try:
            data = load_state_data(record.state, record.data)
        except CorruptStateError:
            await self._expire(chat_id)
            return

        if record.state == DialogState.ADD_EXPENSE_DESCRIPTION:
            description = text if text and normalize_for_matching(text) != "skip" else "No description"
            await self._execute(chat_id, lambda: self.executor.add_guided_expense(data, description))
            return

        amount = parse_amount(text)
        if amount is None:
            await self._send(chat_id, Reply(INVALID_AMOUNT_TEXT, keyboards.cancel_keyboard()))
            return

        if record.state == DialogState.ADD_EXPENSE_AMOUNT:
            next_data = ExpenseAmountEntered(**data.model_dump(), amount=amount)
            self._save(chat_id, DialogState.ADD_EXPENSE_DESCRIPTION, next_data, current=record.state)
            await self._send(
                chat_id,
                Reply(
                    f"💰 {self.executor.money(amount)}\n\nStep 4/4: type a description, or tap Skip.",
                    keyboards.description_keyboard(),
                ),
            )
        elif record.state == DialogState.ADD_FUND_CATEGORY_AMOUNT:
            await self._execute(chat_id, lambda: self.executor.add_funds_to_category(data.category_id, amount))
        elif record.state in (DialogState.ADD_FUND_CASH_AMOUNT, DialogState.ADD_FUND_DEBIT_AMOUNT):
            await self._execute(
                chat_id, lambda: self.executor.add_funds_to_payment_method(data.payment_method_id, amount)
            )
        elif record.state == DialogState.PAY_CREDIT_AMOUNT:
            await self._execute(chat_id, lambda: self.executor.pay_credit_card(data.payment_method_id, amount))
        else:
            raise ValueError(f"{record.state.value} takes no typed input")

    # Buttons

    async def _handle_button(self, chat_id: str, data: str) -> None:
        if data in keyboards.CANCEL_SIGNALS:
            await self._cancel(chat_id)
            return
        if data == keyboards.CONFIRM_AI_ACTION:
            await self._confirm(chat_id)
            return
        if data == keyboards.MENU_MAIN:
            self._clear(chat_id)
            await self._send(chat_id, self.executor.menu())
            return
        if data in self._menu_buttons:
            await self._send(chat_id, self._menu_buttons[data]())
            return
        if data == keyboards.BACKUP_JSON:
            await self._send_backup(chat_id)
            return
        if data in self._flow_entries:
            await self._flow_entries[data](chat_id)
            return
        if data == keyboards.SKIP_DESCRIPTION:
            record = self._load(chat_id)
            if record is None or record.state != DialogState.ADD_EXPENSE_DESCRIPTION:
                await self._expire(chat_id)
                return
            await self._handle_text_step(chat_id, record, "skip")
            return

        prefix, entity_id = keyboards.split_callback(data)
        if prefix in self._selections and entity_id:
            expected_state, handler = self._selections[prefix]
            record = self._load(chat_id)
            if record is None or record.state != expected_state:
                await self._expire(chat_id)
                return
            try:
                state_data = load_state_data(record.state, record.data)
            except CorruptStateError:
                await self._expire(chat_id)
                return
            await handler(chat_id, record.state, state_data, entity_id)
            return

        chat_logger("dialogue", chat_id, self.channel.name).warning("Unknown button", context={"data": data})
        await self._send(chat_id, Reply("🤔 Unknown option.", keyboards.main_menu()))

    async def _send_backup(self, chat_id: str) -> None:
        document = self.executor.build_backup()
        sent = await self.channel.send_document(
            chat_id, document.filename, document.content, caption=document.caption, mime_type=document.mime_type
        )
        if not sent:
            await self._send(chat_id, Reply("❌ Could not send the backup file. Please try again.", keyboards.main_menu()))

    async def _not_found(self, chat_id: str) -> None:
        self._clear(chat_id)
        await self._send(chat_id, Reply(NOT_FOUND_TEXT, keyboards.main_menu()))

    # Flow entries

    async def _start_add_expense(self, chat_id: str) -> None:
        categories = self.storage.get_all_categories()
        if not categories:
            await self._send(
                chat_id,
                Reply(
                    "📂 No categories yet. Type an expense like 'spent 20 on food' to create one automatically.",
                    keyboards.main_menu(),
                ),
            )
            return
        self._save(chat_id, DialogState.ADD_EXPENSE_SELECT_CATEGORY, NoData())
        await self._send(
            chat_id,
            Reply(
                "➕ *Add Expense*\n\nStep 1/4: select a category",
                keyboards.selection_keyboard(keyboards.SELECT_EXPENSE_CATEGORY, categories),
            ),
        )

    async def _start_category_funds(self, chat_id: str) -> None:
        categories = self.storage.get_all_categories()
        if not categories:
            await self._send(chat_id, Reply("📂 No categories yet.", keyboards.main_menu()))
            return
        self._save(chat_id, DialogState.SELECT_CATEGORY_FOR_FUND, NoData())
        await self._send(
            chat_id,
            Reply(
                "📁 Which category gets the funds?",
                keyboards.selection_keyboard(keyboards.SELECT_CATEGORY_FUND, categories),
            ),
        )

    async def _start_cash_funds(self, chat_id: str) -> None:
        cash = next((pm for pm in self.storage.get_all_payment_methods() if pm.type == "cash"), None)
        if cash is None:
            await self._send(
                chat_id,
                Reply("💵 No cash wallet found. Create one by saying 'create cash wallet Cash'.", keyboards.main_menu()),
            )
            return
        self._save(
            chat_id,
            DialogState.ADD_FUND_CASH_AMOUNT,
            PaymentMethodPicked(payment_method_id=str(cash.id), payment_method_name=cash.name),
        )
        await self._send(
            chat_id,
            Reply(
                f"💵 *{cash.name}*\nBalance: {self.executor.money(cash.balance)}\n\nHow much are you adding?",
                keyboards.cancel_keyboard(),
            ),
        )

    async def _start_debit_funds(self, chat_id: str) -> None:
        cards = [pm for pm in self.storage.get_all_payment_methods() if pm.type in ("debit_card", "bank_account")]
        if not cards:
            await self._send(chat_id, Reply("🏦 No debit cards found.", keyboards.main_menu()))
            return
        self._save(chat_id, DialogState.SELECT_DEBIT_FOR_FUND, NoData())
        await self._send(
            chat_id,
            Reply("🏦 Which debit card?", keyboards.selection_keyboard(keyboards.SELECT_DEBIT_FUND, cards)),
        )

    async def _start_reset_category(self, chat_id: str) -> None:
        categories = self.storage.get_all_categories()
        if not categories:
            await self._send(chat_id, Reply("📂 No categories yet.", keyboards.main_menu()))
            return
        self._save(chat_id, DialogState.SELECT_CATEGORY_TO_RESET, NoData())
        await self._send(
            chat_id,
            Reply(
                "♻️ Which category do you want to reset?",
                keyboards.selection_keyboard(keyboards.RESET_CATEGORY_PICK, categories),
            ),
        )

    async def _start_credit_payment(self, chat_id: str) -> None:
        cards = [pm for pm in self.storage.get_all_payment_methods() if pm.type == "credit_card"]
        if not cards:
            await self._send(chat_id, Reply("💳 No credit cards found.", keyboards.main_menu()))
            return
        self._save(chat_id, DialogState.SELECT_CREDIT_FOR_PAYMENT, NoData())
        await self._send(
            chat_id,
            Reply("💳 Which card are you paying?", keyboards.selection_keyboard(keyboards.SELECT_CREDIT_PAYMENT, cards)),
        )

    # Selection steps

    async def _on_expense_category(self, chat_id: str, state: DialogState, data: NoData, entity_id: str) -> None:
        category = self.storage.get_category(entity_id)
        if category is None:
            await self._not_found(chat_id)
            return
        payment_methods = self.storage.get_all_payment_methods()
        if not payment_methods:
            self._clear(chat_id)
            await self._send(
                chat_id,
                Reply("💳 No payment methods yet. Add one by saying 'create cash wallet Cash'.", keyboards.main_menu()),
            )
            return
        self._save(
            chat_id,
            DialogState.ADD_EXPENSE_SELECT_PAYMENT,
            CategoryPicked(category_id=str(category.id), category_name=category.name),
            current=state,
        )
        await self._send(
            chat_id,
            Reply(
                f"📁 {category.name}\n\nStep 2/4: select a payment method",
                keyboards.selection_keyboard(keyboards.SELECT_EXPENSE_PAYMENT, payment_methods),
            ),
        )

    async def _on_expense_payment(
        self, chat_id: str, state: DialogState, data: CategoryPicked, entity_id: str
    ) -> None:
        payment_method = self.storage.get_payment_method(entity_id)
        if payment_method is None:
            await self._not_found(chat_id)
            return
        next_data = ExpensePaymentPicked(
            **data.model_dump(),
            payment_method_id=str(payment_method.id),
            payment_method_name=payment_method.name,
        )
        self._save(chat_id, DialogState.ADD_EXPENSE_AMOUNT, next_data, current=state)
        await self._send(
            chat_id,
            Reply(
                f"📁 {data.category_name} · 💳 {payment_method.name}\n\nStep 3/4: enter the amount",
                keyboards.cancel_keyboard(),
            ),
        )

    async def _on_fund_category(self, chat_id: str, state: DialogState, data: NoData, entity_id: str) -> None:
        category = self.storage.get_category(entity_id)
        if category is None:
            await self._not_found(chat_id)
            return
        self._save(
            chat_id,
            DialogState.ADD_FUND_CATEGORY_AMOUNT,
            CategoryPicked(category_id=str(category.id), category_name=category.name),
            current=state,
        )
        await self._send(
            chat_id,
            Reply(
                f"📁 *{category.name}*\nAvailable: {self.executor.money(category.allocated_funds)}\n\n"
                "How much are you adding?",
                keyboards.cancel_keyboard(),
            ),
        )

    async def _on_debit_card(self, chat_id: str, state: DialogState, data: NoData, entity_id: str) -> None:
        card = self.storage.get_payment_method(entity_id)
        if card is None:
            await self._not_found(chat_id)
            return
        self._save(
            chat_id,
            DialogState.ADD_FUND_DEBIT_AMOUNT,
            PaymentMethodPicked(payment_method_id=str(card.id), payment_method_name=card.name),
            current=state,
        )
        await self._send(
            chat_id,
            Reply(
                f"🏦 *{card.name}*\nBalance: {self.executor.money(card.balance)}\n\nHow much are you adding?",
                keyboards.cancel_keyboard(),
            ),
        )

    async def _on_reset_category(self, chat_id: str, state: DialogState, data: NoData, entity_id: str) -> None:
        category = self.storage.get_category(entity_id)
        if category is None:
            await self._not_found(chat_id)
            return
        pending = PendingReset(category_id=str(category.id), category_name=category.name)
        self._save(chat_id, DialogState.AWAITING_CONFIRMATION, pending, current=state)
        await self._send(chat_id, self.executor.confirmation_prompt(pending))

    async def _on_credit_card(self, chat_id: str, state: DialogState, data: NoData, entity_id: str) -> None:
        card = self.storage.get_payment_method(entity_id)
        if card is None:
            await self._not_found(chat_id)
            return
        self._save(
            chat_id,
            DialogState.PAY_CREDIT_AMOUNT,
            PaymentMethodPicked(payment_method_id=str(card.id), payment_method_name=card.name),
            current=state,
        )
        await self._send(
            chat_id,
            Reply(
                f"💳 *{card.name}*\nOutstanding: {self.executor.money(card.balance)}\n\nHow much are you paying?",
                keyboards.cancel_keyboard(),
            ),
        )

    async def _on_media_category(
        self, chat_id: str, state: DialogState, data: PendingMediaExpense, entity_id: str
    ) -> None:
        category = self.storage.get_category(entity_id)
        if category is None:
            await self._not_found(chat_id)
            return
        payment_methods = self.storage.get_all_payment_methods()
        if not payment_methods:
            self._clear(chat_id)
            await self._send(
                chat_id,
                Reply("💳 No payment methods yet. Add one by saying 'create cash wallet Cash'.", keyboards.main_menu()),
            )
            return

        from_receipt = state == DialogState.AWAITING_RECEIPT_CATEGORY_FIRST
        next_state = DialogState.AWAITING_RECEIPT_PAYMENT if from_receipt else DialogState.AWAITING_VOICE_PAYMENT
        prefix = keyboards.RECEIPT_PAYMENT if from_receipt else keyboards.VOICE_PAYMENT
        next_data = data.model_copy(update={"category": category.name, "category_id": str(category.id)})
        self._save(chat_id, next_state, next_data, current=state)
        await self._send(
            chat_id,
            Reply(
                f"📁 {category.name}\n\n💳 Select the payment method",
                keyboards.selection_keyboard(prefix, payment_methods),
            ),
        )

    async def _on_media_payment(
        self, chat_id: str, state: DialogState, data: PendingMediaExpense, entity_id: str
    ) -> None:
        payment_method = self.storage.get_payment_method(entity_id)
        category = self.storage.get_category(data.category_id) if data.category_id else None
        if payment_method is None or category is None:
            await self._not_found(chat_id)
            return
        await self._execute(
            chat_id,
            lambda: self.executor.add_expense(
                amount=data.amount,
                category_name=category.name,
                payment_method_name=payment_method.name,
                description=data.description,
                date=data.date,
            ),
        )

    # Media

    async def _handle_media(self, event: MediaEvent) -> None:
        chat_id = event.chat_id
        content = await self.channel.download_media(event.binary_ref)
        if not content:
            await self._send(chat_id, Reply("❌ I couldn't download that file. Please try again.", keyboards.main_menu()))
            return

        if event.kind == MediaKind.VOICE:
            await self._handle_voice(chat_id, content, event.mime_type)
        else:
            await self._handle_receipt(chat_id, content, event.mime_type)

    async def _handle_voice(self, chat_id: str, content: bytes, mime_type: Optional[str]) -> None:
        await self._send(chat_id, Reply("🎤 Listening..."))
        transcribed = await self.media.transcribe_async(content, mime_type)
        if not transcribed.ok:
            await self._send(
                chat_id,
                Reply("❌ I couldn't understand the voice message. Please try again or type it.", keyboards.main_menu()),
            )
            return

        transcript = transcribed.value
        record = self._load(chat_id)
        if record is not None and record.state == DialogState.AWAITING_CONFIRMATION:
            decision = classify_confirmation(transcript)
            if decision == "yes":
                await self._confirm(chat_id)
                return
            if decision == "no":
                await self._cancel(chat_id)
                return

        intent = await self._extract(chat_id, transcript)
        if intent.action != Action.ADD_EXPENSE:
            await self._send(chat_id, Reply(f'🗣 "{transcript}"'))
            await self._dispatch_intent(chat_id, record, intent)
            return

        amount = clean_amount(intent.amount)
        if amount is None:
            await self._send(
                chat_id,
                Reply(f'🗣 "{transcript}"\n\n❌ I didn\'t catch the amount. Please try again.', keyboards.main_menu()),
            )
            return

        pending = PendingMediaExpense(
            action="add_expense_from_voice",
            amount=amount,
            suggested_category=intent.category,
            payment_method=intent.payment_method,
            description=intent.description or transcript[:100],
            date=self.executor.iso_date(intent.date),
            transcribed_text=transcript,
        )
        self._save(chat_id, DialogState.AWAITING_CONFIRMATION, pending, current=record.state if record else None)
        await self._send(chat_id, self.executor.confirmation_prompt(pending))

    async def _handle_receipt(self, chat_id: str, content: bytes, mime_type: Optional[str]) -> None:
        await self._send(chat_id, Reply("🧾 Reading your receipt..."))
        scanned = await self.media.scan_receipt_async(content, mime_type)
        if not scanned.ok:
            if scanned.unreadable:
                text = "🧾 I couldn't read a clear total from that photo. Try a sharper photo, or type the expense."
            else:
                text = "❌ I couldn't process that receipt. Please try again or type the expense."
            await self._send(chat_id, Reply(text, keyboards.main_menu()))
            return

        draft = scanned.value
        record = self._load(chat_id)
        pending = PendingMediaExpense(
            action="add_expense_from_receipt",
            amount=draft.amount,
            suggested_category=draft.category,
            description=draft.description,
            date=self.executor.iso_date(draft.date),
        )
        self._save(chat_id, DialogState.AWAITING_CONFIRMATION, pending, current=record.state if record else None)
        await self._send(chat_id, self.executor.confirmation_prompt(pending))
