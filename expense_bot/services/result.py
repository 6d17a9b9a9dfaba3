from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Media ingestion failures.
NO_PROVIDER = "no_provider"
PROVIDER_FAILED = "provider_failed"
EMPTY_RESULT = "empty_result"
LOW_CONFIDENCE = "low_confidence"
NO_AMOUNT = "no_amount"

# The provider answered but the content itself was unusable; a clearer photo or recording may work.
UNREADABLE = frozenset({EMPTY_RESULT, LOW_CONFIDENCE, NO_AMOUNT})

# Slots rejected before a pending action is stored.
MISSING_AMOUNT = "missing_amount"
INVALID_AMOUNT = "invalid_amount"
MISSING_NAME = "missing_name"
DUPLICATE = "duplicate"


@dataclass
class Result(Generic[T]):
    """Outcome of media ingestion or pending-action preparation.

    ``error`` is safe to show in the chat; ``error_code`` lets the caller pick
    a reply without try/except.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = PROVIDER_FAILED) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @property
    def unreadable(self) -> bool:
        return not self.ok and self.error_code in UNREADABLE

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
