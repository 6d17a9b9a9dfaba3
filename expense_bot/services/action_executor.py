"""Handlers behind every action: validate slots, call storage, format the reply."""

import json
from calendar import monthrange
from collections import defaultdict
from datetime import datetime, time, timedelta
from typing import Callable, Iterable, Optional, Union

from expense_bot.logging_config import get_logger
from expense_bot.schemas.events import Document, Reply
from expense_bot.schemas.intent import MAX_AMOUNT, Action, Intent, clean_amount
from expense_bot.services import keyboards
from expense_bot.services import result as codes
from expense_bot.services.result import Result
from expense_bot.services.state_machine import (
    ExpenseAmountEntered,
    PendingCategory,
    PendingExpense,
    PendingMediaExpense,
    PendingPaymentMethod,
    PendingReset,
)
from expense_bot.services.storage import EntityNotFoundError, ExpenseStorage

logger = get_logger("action_executor")

DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_CATEGORY_COLOR = "bg-blue-500"
DEFAULT_CATEGORY_ICON = "Tag"

PAYMENT_TYPE_ICONS = {
    "credit_card": "💳",
    "debit_card": "🏦",
    "bank_account": "🏛",
    "bank_transfer": "🏛",
    "digital_wallet": "📱",
}

HELP_TEXT = """🤖 *Expense Bot Help*

*Just type what you spent:*
• "spent 45 on lunch"
• "taxi 30 with Chase yesterday"

*Or ask:*
• "show my expenses" / "summary this month"
• "show categories" / "show payment methods"
• "create category Travel with 2000 budget"
• "add credit card Chase 5000 limit"
• "delete last expense"

📸 Send a receipt photo or 🎤 a voice note to log an expense.
Funds, resets and card payments live in the menu below."""

# Free-text actions that are only reachable through the guided menus.
DEFERRED_REPLIES = {
    Action.UPDATE_CATEGORY: ("Category editing is available in the web app.", keyboards.main_menu),
    Action.DELETE_CATEGORY: ("For safety, categories can only be deleted in the web app.", keyboards.main_menu),
    Action.SET_BUDGET: (
        "Budgets are set in the web app, or create a category with a budget: 'create category Food with 500 budget'.",
        keyboards.main_menu,
    ),
    Action.ADD_FUNDS_TO_CATEGORY: ("Use *Funds → Add to Category* to add money to a category.", keyboards.funds_menu),
    Action.RESET_CATEGORY: ("Use *Funds → Reset Category* to reset a category.", keyboards.funds_menu),
    Action.UPDATE_PAYMENT_METHOD: ("Payment method editing is available in the web app.", keyboards.main_menu),
    Action.DELETE_PAYMENT_METHOD: (
        "For safety, payment methods can only be deleted in the web app.",
        keyboards.main_menu,
    ),
    Action.ADD_FUNDS_TO_PAYMENT_METHOD: (
        "Use *Funds → Add to Cash* or *Add to Debit Card* to top up a payment method.",
        keyboards.funds_menu,
    ),
    Action.PAY_CREDIT_CARD: ("Use *Payments → Pay Credit Card* to record a card payment.", keyboards.payments_menu),
    Action.EXPORT_DATA: ("Pick a format in the backup menu.", keyboards.backup_menu),
    Action.BACKUP_DATA: ("Pick a format in the backup menu.", keyboards.backup_menu),
}


def _now() -> datetime:
    return datetime.now().astimezone()


def _parse_date(value: Optional[str], fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if len(value) <= 10:
        parsed = datetime.combine(parsed.date(), fallback.timetz())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=fallback.tzinfo)
    return parsed


def _day(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


class ActionExecutor:
    def __init__(
        self,
        storage: ExpenseStorage,
        currency: str = "AED",
        channel_payment_labels: Iterable[str] = ("Telegram", "WhatsApp"),
        clock: Callable[[], datetime] = _now,
    ):
        self.storage = storage
        self.currency = currency
        self.channel_payment_labels = {label.lower() for label in channel_payment_labels}
        self.clock = clock
        self._immediate = {
            Action.VIEW_EXPENSES: self.view_expenses,
            Action.VIEW_SUMMARY: self.view_summary,
            Action.VIEW_CATEGORIES: lambda intent: self.view_categories(),
            Action.VIEW_PAYMENT_METHODS: lambda intent: self.view_payment_methods(),
            Action.VIEW_ANALYTICS: lambda intent: self.view_analytics(),
            Action.DELETE_EXPENSE: lambda intent: self.delete_last_expense(),
            Action.HELP: lambda intent: self.help(),
            Action.GREETING: lambda intent: self.greeting(),
            Action.MENU: lambda intent: self.menu(),
        }

    @property
    def immediate_actions(self) -> frozenset:
        return frozenset(self._immediate)

    def money(self, value) -> str:
        return f"{self.currency} {float(value or 0):,.2f}"

    def iso_date(self, value: Optional[str]) -> str:
        return _parse_date(value, self.clock()).isoformat()

    # Immediate actions

    def run(self, intent: Intent) -> Reply:
        handler = self._immediate.get(intent.action)
        if handler is None:
            raise ValueError(f"{intent.action.value} is not an immediate action")
        return handler(intent)

    def _period(self, intent: Intent) -> tuple[datetime, datetime]:
        now = self.clock()
        today_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        month_start = today_start.replace(day=1)
        start, end = month_start, now

        period = (intent.period or "").lower().replace(" ", "_")
        if period == "today":
            start = today_start
        elif period == "yesterday":
            start, end = today_start - timedelta(days=1), today_start
        elif period in ("this_week", "week"):
            start = today_start - timedelta(days=now.weekday())
        elif period == "last_week":
            end = today_start - timedelta(days=now.weekday())
            start = end - timedelta(days=7)
        elif period == "last_month":
            end = month_start
            start = (month_start - timedelta(days=1)).replace(day=1)
        elif period in ("this_year", "year"):
            start = month_start.replace(month=1)

        if intent.start_date:
            start = _parse_date(intent.start_date, start).replace(hour=0, minute=0, second=0, microsecond=0)
        if intent.end_date:
            end = _parse_date(intent.end_date, end).replace(hour=23, minute=59, second=59, microsecond=0)
        return start, end

    def _month_expenses(self) -> list:
        now = self.clock()
        month_start = datetime.combine(now.date().replace(day=1), time.min, tzinfo=now.tzinfo)
        return self.storage.get_all_expenses(month_start, now)

    def view_expenses(self, intent: Intent) -> Reply:
        start, end = self._period(intent)
        expenses = self.storage.get_all_expenses(start, end)
        if not expenses:
            return Reply(f"📭 No expenses between {_day(start)} and {_day(end)}.", keyboards.main_menu())

        lines = [f"📋 *Expenses* ({_day(start)} - {_day(end)})", ""]
        for expense in expenses[:15]:
            note = f" - {expense.description}" if expense.description else ""
            lines.append(
                f"• {expense.date.strftime('%d/%m')} *{self.money(expense.amount)}* {expense.category}{note} ({expense.payment_method})"
            )
        if len(expenses) > 15:
            lines.append(f"...and {len(expenses) - 15} more")
        total = sum(float(expense.amount) for expense in expenses)
        lines += ["", f"💵 *Total: {self.money(total)}*"]
        return Reply("\n".join(lines), keyboards.main_menu())

    @staticmethod
    def _totals(expenses: list, key: str) -> list[tuple[str, float]]:
        totals: dict[str, float] = defaultdict(float)
        for expense in expenses:
            totals[getattr(expense, key)] += float(expense.amount)
        return sorted(totals.items(), key=lambda item: item[1], reverse=True)

    def view_summary(self, intent: Intent) -> Reply:
        start, end = self._period(intent)
        expenses = self.storage.get_all_expenses(start, end)
        total = sum(float(expense.amount) for expense in expenses)

        lines = [
            "📈 *Spending Summary*",
            "",
            f"💰 Total Spent: {self.money(total)}",
            f"📝 Total Expenses: {len(expenses)}",
            f"📅 Period: {_day(start)} - {_day(end)}",
        ]
        if expenses:
            lines += ["", "📁 *By Category:*"]
            for name, amount in self._totals(expenses, "category")[:8]:
                lines.append(f"• {name}: {self.money(amount)} ({amount / total * 100:.0f}%)")
            lines += ["", "💳 *By Payment Method:*"]
            for name, amount in self._totals(expenses, "payment_method"):
                lines.append(f"• {name}: {self.money(amount)} ({amount / total * 100:.0f}%)")
        return Reply("\n".join(lines), keyboards.main_menu())

    def view_categories(self) -> Reply:
        categories = self.storage.get_all_categories()
        if not categories:
            return Reply("📂 No categories yet. Add an expense to create one automatically!", keyboards.main_menu())

        spent = dict(self._totals(self._month_expenses(), "category"))
        lines = [f"📂 *Your Categories* ({len(categories)})", ""]
        for category in categories:
            month_spent = spent.get(category.name, 0.0)
            line = f"📁 *{category.name}*\n💰 Spent this month: {self.money(month_spent)}"
            if float(category.allocated_funds or 0) != 0:
                line += f" | 💵 Available: {self.money(category.allocated_funds)}"
            if category.budget and float(category.budget) > 0:
                used = month_spent / float(category.budget) * 100
                line += f"\n📊 Budget: {self.money(category.budget)} ({used:.0f}% used)"
                if used >= 100:
                    line += " ⚠️"
            lines += [line, ""]
        return Reply("\n".join(lines).rstrip(), keyboards.main_menu())

    def _payment_method_lines(self, payment_method) -> list[str]:
        balance = float(payment_method.balance or 0)
        icon = PAYMENT_TYPE_ICONS.get(payment_method.type, "💵")
        lines = [
            f"{icon} *{payment_method.name}*",
            f"  Type: {payment_method.type.replace('_', ' ')}",
            f"  Balance: {self.money(balance)}",
        ]
        if payment_method.type == "credit_card" and payment_method.credit_limit:
            limit = float(payment_method.credit_limit)
            lines.append(f"  Credit Limit: {self.money(limit)}")
            lines.append(f"  Utilization: {balance / limit * 100:.1f}%")
        if payment_method.due_date:
            lines.append(f"  Due Date: Day {payment_method.due_date} of month")
        return lines

    def view_payment_methods(self) -> Reply:
        payment_methods = self.storage.get_all_payment_methods()
        if not payment_methods:
            return Reply(
                "💳 No payment methods yet. Add one by saying 'add credit card Chase'!", keyboards.main_menu()
            )
        lines = [f"💳 *Payment Methods* ({len(payment_methods)})", ""]
        for payment_method in payment_methods:
            lines += self._payment_method_lines(payment_method) + [""]
        return Reply("\n".join(lines).rstrip(), keyboards.main_menu())

    def view_analytics(self) -> Reply:
        expenses = self._month_expenses()
        if not expenses:
            return Reply("📈 No spending recorded this month yet.", keyboards.main_menu())

        now = self.clock()
        total = sum(float(expense.amount) for expense in expenses)
        lines = [
            f"📈 *Analytics - {now.strftime('%B %Y')}*",
            "",
            f"💰 Month total: {self.money(total)}",
            f"📆 Daily average: {self.money(total / now.day)}",
            f"🧾 Largest expense: {self.money(max(float(expense.amount) for expense in expenses))}",
            "",
            "🏆 *Top Categories:*",
        ]
        for position, (name, amount) in enumerate(self._totals(expenses, "category")[:5], start=1):
            lines.append(f"{position}. {name}: {self.money(amount)} ({amount / total * 100:.0f}%)")
        return Reply("\n".join(lines), keyboards.main_menu())

    def dashboard(self) -> Reply:
        now = self.clock()
        expenses = self._month_expenses()
        today_total = sum(float(expense.amount) for expense in expenses if expense.date.date() == now.date())
        total = sum(float(expense.amount) for expense in expenses)

        lines = [
            "📊 *Dashboard*",
            "",
            f"📅 Today: {self.money(today_total)}",
            f"🗓 This month: {self.money(total)} ({len(expenses)} expenses)",
        ]
        top = self._totals(expenses, "category")[:3]
        if top:
            lines += ["", "📁 *Top Categories:*"] + [f"• {name}: {self.money(amount)}" for name, amount in top]
        payment_methods = self.storage.get_all_payment_methods()
        if payment_methods:
            lines += ["", "💳 *Balances:*"] + [
                f"• {pm.name}: {self.money(pm.balance)}" for pm in payment_methods
            ]
        return Reply("\n".join(lines), keyboards.main_menu())

    def reminders(self, within_days: int = 7) -> Reply:
        today = self.clock().date()
        due_soon = []
        for payment_method in self.storage.get_all_payment_methods():
            if payment_method.type != "credit_card" or not payment_method.due_date:
                continue
            days_in_month = monthrange(today.year, today.month)[1]
            due_day = min(payment_method.due_date, days_in_month)
            days_left = due_day - today.day
            if days_left < 0:
                next_month = (today.replace(day=1) + timedelta(days=32)).replace(day=1)
                due_day = min(payment_method.due_date, monthrange(next_month.year, next_month.month)[1])
                days_left = (next_month.replace(day=due_day) - today).days
            if days_left <= within_days:
                due_soon.append((days_left, payment_method))

        if not due_soon:
            return Reply(f"🔔 No credit card payments due in the next {within_days} days.", keyboards.main_menu())

        lines = ["🔔 *Upcoming Payments*", ""]
        for days_left, payment_method in sorted(due_soon, key=lambda item: item[0]):
            when = "today" if days_left == 0 else f"in {days_left} day{'s' if days_left != 1 else ''}"
            lines.append(f"💳 *{payment_method.name}* due {when} - balance {self.money(payment_method.balance)}")
        return Reply("\n".join(lines), keyboards.payments_menu())

    def delete_last_expense(self) -> Reply:
        expenses = self.storage.get_all_expenses()
        if not expenses:
            return Reply("❌ No expenses to delete.", keyboards.main_menu())

        last = expenses[0]
        if not self.storage.delete_expense(str(last.id)):
            return Reply("❌ Failed to delete expense.", keyboards.main_menu())
        logger.info("Last expense deleted", extra={"context": {"expense_id": str(last.id)}})
        return Reply(
            f"✅ *Deleted expense:*\n💰 {self.money(last.amount)}\n📁 {last.category}\n📝 {last.description}",
            keyboards.main_menu(),
        )

    def help(self) -> Reply:
        return Reply(HELP_TEXT, keyboards.main_menu())

    def greeting(self) -> Reply:
        return Reply(
            "👋 Hi! Tell me what you spent, e.g. 'spent 45 on lunch', or pick an option below.",
            keyboards.main_menu(),
        )

    def menu(self) -> Reply:
        return Reply("🏠 *Main Menu*\n\nWhat would you like to do?", keyboards.main_menu())

    def unknown(self) -> Reply:
        return Reply(
            "🤔 I didn't catch that. Try 'spent 45 on lunch' or 'show my expenses', or use the menu.",
            keyboards.main_menu(),
        )

    def deferred(self, action: Action) -> Reply:
        text, keyboard = DEFERRED_REPLIES[action]
        return Reply(text, keyboard())

    # Pending actions

    def prepare_expense(self, intent: Intent, channel_payment_method: str, channel_title: str) -> Result[PendingExpense]:
        if intent.amount is None:
            return Result.failure(
                "❌ I couldn't find the amount.\n\n💡 Try: 'spent 45 on lunch' or 'coffee 15 AED'.",
                codes.MISSING_AMOUNT,
            )
        amount = clean_amount(intent.amount)
        if amount is None:
            return Result.failure(
                f"❌ {intent.amount:g} is not a valid amount. Please use a positive number below {MAX_AMOUNT:,}.",
                codes.INVALID_AMOUNT,
            )
        return Result.success(
            PendingExpense(
                amount=amount,
                category=intent.category or DEFAULT_CATEGORY,
                payment_method=intent.payment_method or channel_payment_method,
                description=intent.description or f"{channel_title} expense",
                date=self.iso_date(intent.date),
            )
        )

    def prepare_category(self, intent: Intent) -> Result[PendingCategory]:
        name = intent.category_name or intent.category
        if not name:
            return Result.failure(
                "❌ Please specify a category name.\n\n💡 Example: 'create category Food'", codes.MISSING_NAME
            )
        if self.storage.get_category_by_name(name):
            return Result.failure(f'❌ Category "{name}" already exists!', codes.DUPLICATE)
        return Result.success(
            PendingCategory(
                category_name=name,
                category_color=intent.category_color or DEFAULT_CATEGORY_COLOR,
                category_icon=intent.category_icon or DEFAULT_CATEGORY_ICON,
                allocated_funds=clean_amount(intent.allocated_funds) or 0.0,
                budget_amount=clean_amount(intent.budget_amount),
            )
        )

    def prepare_payment_method(self, intent: Intent) -> Result[PendingPaymentMethod]:
        name = intent.payment_method_name or intent.payment_method
        if not name:
            return Result.failure(
                "❌ Please specify a payment method name.\n\n💡 Example: 'add credit card Chase'", codes.MISSING_NAME
            )
        if self.storage.get_payment_method_by_name(name):
            return Result.failure(f'❌ Payment method "{name}" already exists!', codes.DUPLICATE)
        return Result.success(
            PendingPaymentMethod(
                payment_method_name=name,
                payment_method_type=intent.payment_method_type or "cash",
                credit_limit=clean_amount(intent.credit_limit),
                due_date=intent.due_date,
                balance=clean_amount(intent.amount) or 0.0,
            )
        )

    def confirmation_prompt(self, pending) -> Reply:
        if isinstance(pending, PendingExpense):
            text = (
                "🤔 *Confirm Expense*\n\n"
                f"💰 Amount: {self.money(pending.amount)}\n"
                f"📁 Category: {pending.category}\n"
                f"💳 Payment: {pending.payment_method}\n"
                f"📝 Description: {pending.description}\n"
                f"📅 Date: {_day(_parse_date(pending.date, self.clock()))}\n\n"
                "Save this expense?"
            )
            return Reply(text, keyboards.confirm_keyboard("✅ Yes, Save It"))

        if isinstance(pending, PendingMediaExpense):
            header = "🧾 *Receipt Scanned*" if pending.action == "add_expense_from_receipt" else "🎤 *Voice Expense*"
            text = f"{header}\n\n"
            if pending.transcribed_text:
                text += f'🗣 "{pending.transcribed_text}"\n\n'
            text += f"💰 Amount: {self.money(pending.amount)}\n📝 Description: {pending.description}\n"
            if pending.suggested_category:
                text += f"💡 Suggested category: {pending.suggested_category}\n"
            text += "\nContinue? You'll choose the category and payment method next."
            return Reply(text, keyboards.confirm_keyboard("✅ Continue"))

        if isinstance(pending, PendingCategory):
            text = f"🤔 *Confirm New Category*\n\n📁 Name: {pending.category_name}"
            if pending.budget_amount:
                text += f"\n📊 Budget: {self.money(pending.budget_amount)}"
            if pending.allocated_funds:
                text += f"\n💵 Allocated Funds: {self.money(pending.allocated_funds)}"
            return Reply(text + "\n\nCreate this category?", keyboards.confirm_keyboard("✅ Yes, Create It"))

        if isinstance(pending, PendingPaymentMethod):
            text = (
                "🤔 *Confirm New Payment Method*\n\n"
                f"💳 Name: {pending.payment_method_name}\n"
                f"🏷 Type: {pending.payment_method_type.replace('_', ' ')}"
            )
            if pending.balance:
                text += f"\n💵 Opening balance: {self.money(pending.balance)}"
            if pending.credit_limit:
                text += f"\n📊 Credit Limit: {self.money(pending.credit_limit)}"
            if pending.due_date:
                text += f"\n📅 Due Date: Day {pending.due_date} of month"
            return Reply(text + "\n\nCreate this payment method?", keyboards.confirm_keyboard("✅ Yes, Create It"))

        if isinstance(pending, PendingReset):
            text = (
                f"⚠️ *Reset {pending.category_name}?*\n\n"
                "This deletes every expense and fund entry of the category and sets its funds to zero. "
                "It cannot be undone."
            )
            return Reply(text, keyboards.confirm_keyboard("♻️ Yes, Reset"))

        raise ValueError(f"No confirmation prompt for {type(pending).__name__}")

    def execute_pending(self, pending) -> Reply:
        """Run a confirmed action. Exceptions propagate to the caller."""
        if isinstance(pending, PendingExpense):
            return self.add_expense(
                amount=pending.amount,
                category_name=pending.category,
                payment_method_name=pending.payment_method,
                description=pending.description,
                date=pending.date,
            )
        if isinstance(pending, PendingCategory):
            return self.create_category(pending)
        if isinstance(pending, PendingPaymentMethod):
            return self.create_payment_method(pending)
        if isinstance(pending, PendingReset):
            return self.reset_category(pending.category_id)
        raise ValueError(f"Pending action {getattr(pending, 'action', pending)!r} cannot be executed directly")

    def add_expense(
        self,
        amount: float,
        category_name: str,
        payment_method_name: str,
        description: str,
        date: Union[str, datetime, None] = None,
    ) -> Reply:
        category = self.storage.get_category_by_name(category_name)
        if category is None:
            category = self.storage.create_category(
                {"name": category_name, "color": DEFAULT_CATEGORY_COLOR, "icon": DEFAULT_CATEGORY_ICON}
            )
            logger.info("Category auto-created for expense", extra={"context": {"category": category_name}})

        payment_method = self.storage.get_payment_method_by_name(payment_method_name)
        if payment_method is None and payment_method_name.lower() not in self.channel_payment_labels:
            payment_method = self.storage.create_payment_method({"name": payment_method_name, "type": "cash"})
            logger.info(
                "Payment method auto-created for expense", extra={"context": {"payment_method": payment_method_name}}
            )

        when = date if isinstance(date, datetime) else _parse_date(date, self.clock())
        expense = self.storage.create_expense(
            {
                "amount": amount,
                "category": category.name,
                "payment_method": payment_method.name if payment_method else payment_method_name,
                "description": description,
                "date": when,
            }
        )

        category_total = sum(
            float(item.amount) for item in self._month_expenses() if item.category == category.name
        )
        lines = [
            "✅ *Expense Added!*",
            "",
            f"💰 Amount: {self.money(expense.amount)}",
            f"📁 Category: {category.name}",
            f"💳 Payment: {expense.payment_method}",
            f"📝 Description: {expense.description}",
            "",
            f"📊 {category.name} this month: {self.money(category_total)}",
        ]
        if payment_method is not None:
            refreshed = self.storage.get_payment_method(str(payment_method.id)) or payment_method
            lines.append(f"💳 {refreshed.name} balance: {self.money(refreshed.balance)}")
        return Reply("\n".join(lines), keyboards.main_menu())

    def create_category(self, pending: PendingCategory) -> Reply:
        category = self.storage.create_category(
            {
                "name": pending.category_name,
                "color": pending.category_color,
                "icon": pending.category_icon,
                "allocated_funds": pending.allocated_funds,
                "budget": pending.budget_amount,
            }
        )
        text = f"✅ *Category Created!*\n\n📁 {category.name}"
        if pending.budget_amount:
            text += f"\n📊 Budget: {self.money(pending.budget_amount)}"
        if pending.allocated_funds:
            text += f"\n💵 Funds: {self.money(pending.allocated_funds)}"
        return Reply(text, keyboards.main_menu())

    def create_payment_method(self, pending: PendingPaymentMethod) -> Reply:
        payment_method = self.storage.create_payment_method(
            {
                "name": pending.payment_method_name,
                "type": pending.payment_method_type,
                "balance": pending.balance,
                "credit_limit": pending.credit_limit,
                "due_date": pending.due_date,
            }
        )
        lines = ["✅ *Payment Method Created!*", ""] + self._payment_method_lines(payment_method)
        return Reply("\n".join(lines), keyboards.main_menu())

    # Guided flow endings

    def add_guided_expense(self, data: ExpenseAmountEntered, description: str) -> Reply:
        category = self.storage.get_category(data.category_id)
        if category is None:
            raise EntityNotFoundError("category", data.category_id)
        payment_method = self.storage.get_payment_method(data.payment_method_id)
        if payment_method is None:
            raise EntityNotFoundError("payment_method", data.payment_method_id)
        return self.add_expense(
            amount=data.amount,
            category_name=category.name,
            payment_method_name=payment_method.name,
            description=description,
        )

    def add_funds_to_category(self, category_id: str, amount: float) -> Reply:
        result = self.storage.add_funds_to_category(category_id, amount, "Added via chat")
        return Reply(
            f"✅ *Funds Added!*\n\n📁 {result.category.name}\n💰 Added: {self.money(amount)}\n"
            f"💵 Available: {self.money(result.category.allocated_funds)}",
            keyboards.main_menu(),
        )

    def add_funds_to_payment_method(self, payment_method_id: str, amount: float) -> Reply:
        result = self.storage.add_funds_to_payment_method(payment_method_id, amount, "Added via chat")
        return Reply(
            f"✅ *Funds Added!*\n\n💳 {result.payment_method.name}\n💰 Added: {self.money(amount)}\n"
            f"💵 New balance: {self.money(result.payment_method.balance)}",
            keyboards.main_menu(),
        )

    def pay_credit_card(self, payment_method_id: str, amount: float) -> Reply:
        result = self.storage.add_funds_to_payment_method(payment_method_id, -amount, "Credit card payment")
        card = result.payment_method
        text = (
            f"✅ *Payment Recorded!*\n\n💳 {card.name}\n💰 Paid: {self.money(amount)}\n"
            f"📉 Outstanding: {self.money(card.balance)}"
        )
        if card.credit_limit:
            text += f"\n💚 Available credit: {self.money(float(card.credit_limit) - float(card.balance or 0))}"
        return Reply(text, keyboards.main_menu())

    def reset_category(self, category_id: str) -> Reply:
        result = self.storage.reset_category(category_id)
        return Reply(
            f"♻️ *{result.category.name} Reset*\n\n"
            f"🗑 Expenses removed: {result.deleted_expenses}\n"
            f"🗑 Fund entries removed: {result.deleted_fund_history}\n"
            f"💵 Funds: {self.money(0)}",
            keyboards.main_menu(),
        )

    # Backup

    def build_backup(self) -> Document:
        def row(obj, fields):
            values = {}
            for name in fields:
                value = getattr(obj, name, None)
                if isinstance(value, datetime):
                    value = value.isoformat()
                elif value is not None and not isinstance(value, (str, int, float, bool)):
                    value = str(value)
                values[name] = value
            return values

        now = self.clock()
        payload = {
            "exportedAt": now.isoformat(),
            "currency": self.currency,
            "categories": [
                row(item, ("id", "name", "color", "icon", "budget", "allocated_funds"))
                for item in self.storage.get_all_categories()
            ],
            "paymentMethods": [
                row(item, ("id", "name", "type", "balance", "credit_limit", "due_date"))
                for item in self.storage.get_all_payment_methods()
            ],
            "expenses": [
                row(item, ("id", "amount", "category", "payment_method", "description", "date"))
                for item in self.storage.get_all_expenses()
            ],
            "fundHistory": [
                row(item, ("id", "category_id", "payment_method_id", "amount", "description", "added_at"))
                for item in self.storage.get_all_fund_history()
            ],
        }
        content = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
        return Document(
            filename=f"expenses-backup-{now.strftime('%Y%m%d-%H%M')}.json",
            content=content,
            caption=f"💾 Backup: {len(payload['expenses'])} expenses, {len(payload['categories'])} categories",
        )
