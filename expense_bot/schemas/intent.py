import math
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class Action(str, Enum):
    ADD_EXPENSE = "add_expense"
    VIEW_EXPENSES = "view_expenses"
    VIEW_SUMMARY = "view_summary"
    DELETE_EXPENSE = "delete_expense"
    VIEW_CATEGORIES = "view_categories"
    CREATE_CATEGORY = "create_category"
    UPDATE_CATEGORY = "update_category"
    DELETE_CATEGORY = "delete_category"
    SET_BUDGET = "set_budget"
    ADD_FUNDS_TO_CATEGORY = "add_funds_to_category"
    RESET_CATEGORY = "reset_category"
    VIEW_PAYMENT_METHODS = "view_payment_methods"
    CREATE_PAYMENT_METHOD = "create_payment_method"
    UPDATE_PAYMENT_METHOD = "update_payment_method"
    DELETE_PAYMENT_METHOD = "delete_payment_method"
    ADD_FUNDS_TO_PAYMENT_METHOD = "add_funds_to_payment_method"
    PAY_CREDIT_CARD = "pay_credit_card"
    VIEW_ANALYTICS = "view_analytics"
    EXPORT_DATA = "export_data"
    BACKUP_DATA = "backup_data"
    HELP = "help"
    GREETING = "greeting"
    MENU = "menu"
    CONFIRM_ACTION = "confirm_action"
    CANCEL_ACTION = "cancel_action"
    UNKNOWN = "unknown"


# Money columns are Numeric(12, 2).
MAX_AMOUNT = 10**10


def clean_amount(value: Optional[float]) -> Optional[float]:
    """Round to cents; None unless the result is a storable positive amount."""
    if value is None or not math.isfinite(value):
        return None
    value = round(value, 2)
    return value if 0 < value < MAX_AMOUNT else None


def _camel(name: str) -> AliasChoices:
    head, *rest = name.split("_")
    return AliasChoices(name, head + "".join(part.title() for part in rest))


class Intent(BaseModel):
    """Structured result of intent extraction. Only ``action`` is guaranteed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Action = Action.UNKNOWN

    amount: Optional[float] = None
    category: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, validation_alias=_camel("payment_method"))

    budget_amount: Optional[float] = Field(default=None, validation_alias=_camel("budget_amount"))
    allocated_funds: Optional[float] = Field(default=None, validation_alias=_camel("allocated_funds"))

    category_name: Optional[str] = Field(default=None, validation_alias=_camel("category_name"))
    category_color: Optional[str] = Field(default=None, validation_alias=_camel("category_color"))
    category_icon: Optional[str] = Field(default=None, validation_alias=_camel("category_icon"))

    payment_method_name: Optional[str] = Field(default=None, validation_alias=_camel("payment_method_name"))
    payment_method_type: Optional[str] = Field(default=None, validation_alias=_camel("payment_method_type"))
    credit_limit: Optional[float] = Field(default=None, validation_alias=_camel("credit_limit"))
    due_date: Optional[int] = Field(default=None, validation_alias=_camel("due_date"))

    from_payment_method: Optional[str] = Field(default=None, validation_alias=_camel("from_payment_method"))
    to_payment_method: Optional[str] = Field(default=None, validation_alias=_camel("to_payment_method"))

    start_date: Optional[str] = Field(default=None, validation_alias=_camel("start_date"))
    end_date: Optional[str] = Field(default=None, validation_alias=_camel("end_date"))
    period: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _coerce_action(cls, value: Any) -> Action:
        if isinstance(value, Action):
            return value
        if isinstance(value, str):
            try:
                return Action(value.strip().lower())
            except ValueError:
                return Action.UNKNOWN
        return Action.UNKNOWN

    @field_validator("amount", "budget_amount", "allocated_funds", "credit_limit", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, str):
            value = value.replace(",", "").strip()
            for token in ("aed", "dirhams", "dirham", "dhs", "dh"):
                value = value.lower().replace(token, "").strip()
        elif not isinstance(value, (int, float)):
            return None
        try:
            number = float(value)
        except (ValueError, OverflowError):
            return None
        # "inf" and "nan" parse as floats but are not amounts.
        return number if math.isfinite(number) else None

    @field_validator("due_date", mode="before")
    @classmethod
    def _coerce_day(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            day = int(float(value))
        except (TypeError, ValueError):
            return None
        return day if 1 <= day <= 31 else None

    @field_validator(
        "category",
        "description",
        "date",
        "payment_method",
        "category_name",
        "category_color",
        "category_icon",
        "payment_method_name",
        "payment_method_type",
        "from_payment_method",
        "to_payment_method",
        "start_date",
        "end_date",
        "period",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @classmethod
    def unknown(cls) -> "Intent":
        return cls(action=Action.UNKNOWN)
