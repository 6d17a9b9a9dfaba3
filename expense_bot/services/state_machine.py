"""Dialogue states, legal transitions and the typed payload each state carries.

The state name doubles as the program counter of a guided flow: every step writes
its merged payload under the next state, the final step clears the conversation.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class DialogState(str, Enum):
    NONE = "none"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    ADD_EXPENSE_SELECT_CATEGORY = "add_expense_select_category"
    ADD_EXPENSE_SELECT_PAYMENT = "add_expense_select_payment"
    ADD_EXPENSE_AMOUNT = "add_expense_amount"
    ADD_EXPENSE_DESCRIPTION = "add_expense_description"
    SELECT_CATEGORY_FOR_FUND = "select_category_for_fund"
    ADD_FUND_CATEGORY_AMOUNT = "add_fund_category_amount"
    ADD_FUND_CASH_AMOUNT = "add_fund_cash_amount"
    SELECT_DEBIT_FOR_FUND = "select_debit_for_fund"
    ADD_FUND_DEBIT_AMOUNT = "add_fund_debit_amount"
    SELECT_CATEGORY_TO_RESET = "select_category_to_reset"
    SELECT_CREDIT_FOR_PAYMENT = "select_credit_for_payment"
    PAY_CREDIT_AMOUNT = "pay_credit_amount"
    AWAITING_RECEIPT_CATEGORY_FIRST = "awaiting_receipt_category_first"
    AWAITING_RECEIPT_PAYMENT = "awaiting_receipt_payment"
    AWAITING_VOICE_CATEGORY_FIRST = "awaiting_voice_category_first"
    AWAITING_VOICE_PAYMENT = "awaiting_voice_payment"


# States a flow starts in; reachable from anywhere because a menu tap or a new
# free-text mutation replaces whatever flow was active.
ENTRY_STATES = {
    DialogState.AWAITING_CONFIRMATION,
    DialogState.ADD_EXPENSE_SELECT_CATEGORY,
    DialogState.SELECT_CATEGORY_FOR_FUND,
    DialogState.ADD_FUND_CASH_AMOUNT,
    DialogState.SELECT_DEBIT_FOR_FUND,
    DialogState.SELECT_CATEGORY_TO_RESET,
    DialogState.SELECT_CREDIT_FOR_PAYMENT,
}

VALID_TRANSITIONS = {
    DialogState.AWAITING_CONFIRMATION: [
        DialogState.AWAITING_RECEIPT_CATEGORY_FIRST,
        DialogState.AWAITING_VOICE_CATEGORY_FIRST,
    ],
    DialogState.ADD_EXPENSE_SELECT_CATEGORY: [DialogState.ADD_EXPENSE_SELECT_PAYMENT],
    DialogState.ADD_EXPENSE_SELECT_PAYMENT: [DialogState.ADD_EXPENSE_AMOUNT],
    DialogState.ADD_EXPENSE_AMOUNT: [DialogState.ADD_EXPENSE_DESCRIPTION],
    DialogState.SELECT_CATEGORY_FOR_FUND: [DialogState.ADD_FUND_CATEGORY_AMOUNT],
    DialogState.SELECT_DEBIT_FOR_FUND: [DialogState.ADD_FUND_DEBIT_AMOUNT],
    DialogState.SELECT_CREDIT_FOR_PAYMENT: [DialogState.PAY_CREDIT_AMOUNT],
    DialogState.AWAITING_RECEIPT_CATEGORY_FIRST: [DialogState.AWAITING_RECEIPT_PAYMENT],
    DialogState.AWAITING_VOICE_CATEGORY_FIRST: [DialogState.AWAITING_VOICE_PAYMENT],
}

# Steps that take typed input rather than a button tap.
TEXT_INPUT_STATES = {
    DialogState.ADD_EXPENSE_AMOUNT,
    DialogState.ADD_EXPENSE_DESCRIPTION,
    DialogState.ADD_FUND_CATEGORY_AMOUNT,
    DialogState.ADD_FUND_CASH_AMOUNT,
    DialogState.ADD_FUND_DEBIT_AMOUNT,
    DialogState.PAY_CREDIT_AMOUNT,
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: DialogState, to_state: DialogState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: DialogState, to_state: DialogState) -> bool:
    """Check if transition is valid."""
    if to_state == DialogState.NONE or to_state in ENTRY_STATES:
        return True
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: DialogState, to_state: DialogState) -> DialogState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


class StateData(BaseModel):
    # Persisted with camelCase keys.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class NoData(StateData):
    pass


class CategoryPicked(StateData):
    category_id: str
    category_name: str


class ExpensePaymentPicked(CategoryPicked):
    payment_method_id: str
    payment_method_name: str


class ExpenseAmountEntered(ExpensePaymentPicked):
    amount: float


class PaymentMethodPicked(StateData):
    payment_method_id: str
    payment_method_name: str


class PendingExpense(StateData):
    action: Literal["add_expense"] = "add_expense"
    amount: float
    category: str
    payment_method: str
    description: str
    date: str


class PendingMediaExpense(StateData):
    """Expense drafted from a receipt photo or a voice note.

    ``suggested_category`` and ``payment_method`` come from automatic extraction and
    are never used for saving; ``category``/``category_id`` are filled by the user.
    """

    action: Literal["add_expense_from_receipt", "add_expense_from_voice"]
    amount: float
    suggested_category: Optional[str] = None
    payment_method: Optional[str] = None
    description: str
    date: str
    transcribed_text: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[str] = None


class PendingCategory(StateData):
    action: Literal["create_category"] = "create_category"
    category_name: str
    category_color: str = "bg-blue-500"
    category_icon: str = "Tag"
    allocated_funds: float = 0.0
    budget_amount: Optional[float] = None


class PendingPaymentMethod(StateData):
    action: Literal["create_payment_method"] = "create_payment_method"
    payment_method_name: str
    payment_method_type: str = "cash"
    credit_limit: Optional[float] = None
    due_date: Optional[int] = None
    balance: float = 0.0


class PendingReset(StateData):
    action: Literal["reset_category"] = "reset_category"
    category_id: str
    category_name: str


PendingAction = Annotated[
    Union[PendingExpense, PendingMediaExpense, PendingCategory, PendingPaymentMethod, PendingReset],
    Field(discriminator="action"),
]

_PENDING_ADAPTER = TypeAdapter(PendingAction)

STATE_DATA_MODELS = {
    DialogState.ADD_EXPENSE_SELECT_CATEGORY: NoData,
    DialogState.ADD_EXPENSE_SELECT_PAYMENT: CategoryPicked,
    DialogState.ADD_EXPENSE_AMOUNT: ExpensePaymentPicked,
    DialogState.ADD_EXPENSE_DESCRIPTION: ExpenseAmountEntered,
    DialogState.SELECT_CATEGORY_FOR_FUND: NoData,
    DialogState.ADD_FUND_CATEGORY_AMOUNT: CategoryPicked,
    DialogState.ADD_FUND_CASH_AMOUNT: PaymentMethodPicked,
    DialogState.SELECT_DEBIT_FOR_FUND: NoData,
    DialogState.ADD_FUND_DEBIT_AMOUNT: PaymentMethodPicked,
    DialogState.SELECT_CATEGORY_TO_RESET: NoData,
    DialogState.SELECT_CREDIT_FOR_PAYMENT: NoData,
    DialogState.PAY_CREDIT_AMOUNT: PaymentMethodPicked,
    DialogState.AWAITING_RECEIPT_CATEGORY_FIRST: PendingMediaExpense,
    DialogState.AWAITING_RECEIPT_PAYMENT: PendingMediaExpense,
    DialogState.AWAITING_VOICE_CATEGORY_FIRST: PendingMediaExpense,
    DialogState.AWAITING_VOICE_PAYMENT: PendingMediaExpense,
}


class CorruptStateError(Exception):
    """Persisted payload does not match the shape its state requires."""


def load_state_data(state: DialogState, raw: Optional[dict]):
    """Parse the persisted payload of ``state`` into its typed variant."""
    raw = raw or {}
    try:
        if state == DialogState.AWAITING_CONFIRMATION:
            return _PENDING_ADAPTER.validate_python(raw)
        model = STATE_DATA_MODELS.get(state, NoData)
        return model.model_validate(raw)
    except ValidationError as e:
        raise CorruptStateError(f"{state.value}: {e.error_count()} invalid field(s)") from e
