from expense_bot.models.category import Category
from expense_bot.models.expense import Expense
from expense_bot.models.fund_history import FundHistory
from expense_bot.models.payment_method import PAYMENT_METHOD_TYPES, PaymentMethod
from expense_bot.models.user_state import UserState

__all__ = [
    "Category",
    "Expense",
    "FundHistory",
    "PaymentMethod",
    "PAYMENT_METHOD_TYPES",
    "UserState",
]
