"""Callback identifiers and the keyboards the bot sends."""

from typing import Iterable, Optional

from expense_bot.schemas.events import Button

CONFIRM_AI_ACTION = "confirm_ai_action"
CANCEL_AI_ACTION = "cancel_ai_action"
CANCEL = "cancel"
SKIP_DESCRIPTION = "skip_description"

MENU_MAIN = "menu_main"
MENU_DASHBOARD = "menu_dashboard"
MENU_ADD_EXPENSE = "menu_add_expense"
MENU_FUNDS = "menu_funds"
FUND_ADD_CATEGORY = "fund_add_category"
FUND_ADD_CASH = "fund_add_cash"
FUND_ADD_DEBIT = "fund_add_debit"
FUND_RESET_CATEGORY = "fund_reset_category"
MENU_PAYMENTS = "menu_payments_main"
PAYMENT_CREDIT_CARD = "payment_credit_card"
MENU_PAYMENT_METHODS = "menu_payment_methods"
MENU_CATEGORIES = "menu_categories"
MENU_ANALYTICS = "menu_analytics"
MENU_BACKUP = "menu_backup"
BACKUP_JSON = "backup_json"
MENU_REMINDERS = "menu_reminders"

# Selection prefixes, sent as "<prefix>:<entity id>".
SELECT_EXPENSE_CATEGORY = "select_expense_category"
SELECT_EXPENSE_PAYMENT = "select_expense_payment"
SELECT_CATEGORY_FUND = "select_category_fund"
SELECT_DEBIT_FUND = "select_debit_fund"
RESET_CATEGORY_PICK = "reset_category_pick"
SELECT_CREDIT_PAYMENT = "select_credit_payment"
RECEIPT_CATEGORY = "receipt_cat_first"
RECEIPT_PAYMENT = "receipt_payment"
VOICE_CATEGORY = "voice_cat_first"
VOICE_PAYMENT = "voice_payment"

CANCEL_SIGNALS = {CANCEL, CANCEL_AI_ACTION}

MEDIA_CATEGORY_LIMIT = 12


def split_callback(data: str) -> tuple[str, Optional[str]]:
    prefix, sep, value = (data or "").partition(":")
    return prefix, (value if sep else None)


def cancel_row() -> list[Button]:
    return [Button("❌ Cancel", CANCEL)]


def cancel_keyboard() -> list[list[Button]]:
    return [cancel_row()]


def main_menu() -> list[list[Button]]:
    return [
        [Button("➕ Add Expense", MENU_ADD_EXPENSE), Button("📊 Dashboard", MENU_DASHBOARD)],
        [Button("💰 Funds", MENU_FUNDS), Button("💳 Payments", MENU_PAYMENTS)],
        [Button("📂 Categories", MENU_CATEGORIES), Button("📈 Analytics", MENU_ANALYTICS)],
        [Button("💾 Backup", MENU_BACKUP), Button("🔔 Reminders", MENU_REMINDERS)],
    ]


def funds_menu() -> list[list[Button]]:
    return [
        [Button("📁 Add to Category", FUND_ADD_CATEGORY)],
        [Button("💵 Add to Cash", FUND_ADD_CASH), Button("🏦 Add to Debit Card", FUND_ADD_DEBIT)],
        [Button("♻️ Reset Category", FUND_RESET_CATEGORY)],
        [Button("🏠 Main Menu", MENU_MAIN)],
    ]


def payments_menu() -> list[list[Button]]:
    return [
        [Button("💳 Pay Credit Card", PAYMENT_CREDIT_CARD)],
        [Button("📋 Payment Methods", MENU_PAYMENT_METHODS)],
        [Button("🏠 Main Menu", MENU_MAIN)],
    ]


def backup_menu() -> list[list[Button]]:
    return [
        [Button("🗂 JSON Backup", BACKUP_JSON)],
        [Button("🏠 Main Menu", MENU_MAIN)],
    ]


def confirm_keyboard(confirm_label: str = "✅ Confirm") -> list[list[Button]]:
    return [[Button(confirm_label, CONFIRM_AI_ACTION), Button("❌ Cancel", CANCEL_AI_ACTION)]]


def description_keyboard() -> list[list[Button]]:
    return [[Button("⏭ Skip", SKIP_DESCRIPTION)], cancel_row()]


def selection_keyboard(prefix: str, items: Iterable, label=None, limit: Optional[int] = None) -> list[list[Button]]:
    """Two entity buttons per row followed by a cancel row."""
    label = label or (lambda item: item.name)
    buttons = [Button(label(item), f"{prefix}:{item.id}") for item in items]
    if limit is not None:
        buttons = buttons[:limit]
    rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
    rows.append(cancel_row())
    return rows
