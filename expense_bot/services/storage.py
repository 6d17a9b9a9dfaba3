"""Storage collaborator used by the dialogue engine.

``SqlExpenseStorage`` commits every mutating call as one unit and rolls back when it
fails, so callers treat each call as atomic and never attempt partial rollback.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from expense_bot.logging_config import get_logger
from expense_bot.models import Category, Expense, FundHistory, PaymentMethod

logger = get_logger("storage")


class EntityNotFoundError(LookupError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


@dataclass
class CategoryFunds:
    fund_history: Any
    category: Any


@dataclass
class PaymentMethodFunds:
    fund_history: Any
    payment_method: Any


@dataclass
class ResetResult:
    deleted_expenses: int
    deleted_fund_history: int
    category: Any


class ExpenseStorage(ABC):
    @abstractmethod
    def get_all_categories(self) -> list: ...

    @abstractmethod
    def get_category(self, category_id: str): ...

    @abstractmethod
    def get_category_by_name(self, name: str): ...

    @abstractmethod
    def create_category(self, values: dict): ...

    @abstractmethod
    def get_all_payment_methods(self) -> list: ...

    @abstractmethod
    def get_payment_method(self, payment_method_id: str): ...

    @abstractmethod
    def get_payment_method_by_name(self, name: str): ...

    @abstractmethod
    def create_payment_method(self, values: dict): ...

    @abstractmethod
    def create_expense(self, values: dict): ...

    @abstractmethod
    def get_all_expenses(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list:
        """Expenses in ``[start, end]``, newest first."""

    @abstractmethod
    def delete_expense(self, expense_id: str) -> bool: ...

    @abstractmethod
    def add_funds_to_category(
        self, category_id: str, amount: float, description: Optional[str] = None
    ) -> CategoryFunds: ...

    @abstractmethod
    def add_funds_to_payment_method(
        self, payment_method_id: str, amount: float, description: Optional[str] = None
    ) -> PaymentMethodFunds:
        """Negative ``amount`` withdraws, or pays down a credit card."""

    @abstractmethod
    def reset_category(self, category_id: str) -> ResetResult: ...

    @abstractmethod
    def get_all_fund_history(self) -> list: ...


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def spending_delta(payment_method_type: str, amount) -> Decimal:
    """Balance change caused by spending ``amount``: credit card balances track the debt."""
    amount = _money(amount)
    return amount if payment_method_type == "credit_card" else -amount


class SqlExpenseStorage(ExpenseStorage):
    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # Categories

    def get_all_categories(self) -> list:
        return self.db.query(Category).order_by(Category.name).all()

    def get_category(self, category_id: str):
        key = _as_uuid(category_id)
        if key is None:
            return None
        return self.db.query(Category).filter(Category.id == key).first()

    def get_category_by_name(self, name: str):
        return self.db.query(Category).filter(func.lower(Category.name) == name.strip().lower()).first()

    def create_category(self, values: dict):
        category = Category(
            name=values["name"],
            color=values.get("color") or "bg-blue-500",
            icon=values.get("icon") or "Tag",
            budget=_money(values["budget"]) if values.get("budget") is not None else None,
            allocated_funds=_money(values.get("allocated_funds") or 0),
        )
        self.db.add(category)
        self._commit()
        logger.info("Category created", extra={"context": {"name": category.name}})
        return category

    # Payment methods

    def get_all_payment_methods(self) -> list:
        return self.db.query(PaymentMethod).filter(PaymentMethod.is_active.is_(True)).order_by(PaymentMethod.name).all()

    def get_payment_method(self, payment_method_id: str):
        key = _as_uuid(payment_method_id)
        if key is None:
            return None
        return self.db.query(PaymentMethod).filter(PaymentMethod.id == key).first()

    def get_payment_method_by_name(self, name: str):
        return (
            self.db.query(PaymentMethod)
            .filter(func.lower(PaymentMethod.name) == name.strip().lower())
            .first()
        )

    def create_payment_method(self, values: dict):
        payment_method = PaymentMethod(
            name=values["name"],
            type=values.get("type") or "cash",
            balance=_money(values.get("balance") or 0),
            credit_limit=_money(values["credit_limit"]) if values.get("credit_limit") is not None else None,
            due_date=values.get("due_date"),
        )
        self.db.add(payment_method)
        self._commit()
        logger.info("Payment method created", extra={"context": {"name": payment_method.name}})
        return payment_method

    # Expenses

    def _apply_expense(self, expense: Expense, sign: int) -> None:
        category = self.get_category_by_name(expense.category)
        if category is not None:
            category.allocated_funds = (category.allocated_funds or 0) - sign * _money(expense.amount)
        payment_method = self.get_payment_method_by_name(expense.payment_method)
        if payment_method is not None:
            payment_method.balance = (payment_method.balance or 0) + sign * spending_delta(
                payment_method.type, expense.amount
            )

    def create_expense(self, values: dict):
        expense = Expense(
            amount=_money(values["amount"]),
            category=values["category"],
            payment_method=values["payment_method"],
            description=values.get("description") or "",
            date=values.get("date") or datetime.now().astimezone(),
        )
        try:
            self.db.add(expense)
            self._apply_expense(expense, 1)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return expense

    def get_all_expenses(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list:
        query = self.db.query(Expense)
        if start is not None:
            query = query.filter(Expense.date >= start)
        if end is not None:
            query = query.filter(Expense.date <= end)
        return query.order_by(Expense.date.desc()).all()

    def delete_expense(self, expense_id: str) -> bool:
        key = _as_uuid(expense_id)
        expense = self.db.query(Expense).filter(Expense.id == key).first() if key else None
        if expense is None:
            return False
        try:
            self._apply_expense(expense, -1)
            self.db.delete(expense)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return True

    # Funds

    def add_funds_to_category(self, category_id: str, amount: float, description: Optional[str] = None) -> CategoryFunds:
        category = self.get_category(category_id)
        if category is None:
            raise EntityNotFoundError("category", category_id)
        try:
            history = FundHistory(category_id=category.id, amount=_money(amount), description=description)
            self.db.add(history)
            category.allocated_funds = (category.allocated_funds or 0) + _money(amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return CategoryFunds(fund_history=history, category=category)

    def add_funds_to_payment_method(
        self, payment_method_id: str, amount: float, description: Optional[str] = None
    ) -> PaymentMethodFunds:
        payment_method = self.get_payment_method(payment_method_id)
        if payment_method is None:
            raise EntityNotFoundError("payment_method", payment_method_id)
        try:
            history = FundHistory(payment_method_id=payment_method.id, amount=_money(amount), description=description)
            self.db.add(history)
            payment_method.balance = (payment_method.balance or 0) + _money(amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return PaymentMethodFunds(fund_history=history, payment_method=payment_method)

    def reset_category(self, category_id: str) -> ResetResult:
        category = self.get_category(category_id)
        if category is None:
            raise EntityNotFoundError("category", category_id)
        try:
            deleted_expenses = (
                self.db.query(Expense).filter(Expense.category == category.name).delete(synchronize_session=False)
            )
            deleted_history = (
                self.db.query(FundHistory)
                .filter(FundHistory.category_id == category.id)
                .delete(synchronize_session=False)
            )
            category.allocated_funds = 0
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Category reset",
            extra={"context": {"category": category.name, "expenses": deleted_expenses, "fund_history": deleted_history}},
        )
        return ResetResult(deleted_expenses=deleted_expenses, deleted_fund_history=deleted_history, category=category)

    def get_all_fund_history(self) -> list:
        return self.db.query(FundHistory).order_by(FundHistory.added_at.desc()).all()
