from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from .errors import InvalidArgumentError


MINOR_UNITS_PER_MAJOR = 100

MajorAmount = Union[int, float, Decimal, str]


def to_minor(amount_major: MajorAmount) -> int:
    """Convert a major-unit amount to integer minor units, rounding half-up.

    Strings may contain spaces as thousand separators and a decimal comma.
    """
    if isinstance(amount_major, bool):
        raise InvalidArgumentError("Amount must be a number")
    if isinstance(amount_major, str):
        amount_major = amount_major.replace(" ", "").replace("\u00a0", "").replace(",", ".")
    try:
        value = Decimal(str(amount_major))
    except InvalidOperation:
        raise InvalidArgumentError(f"Amount {amount_major!r} is not a number")
    if not value.is_finite():
        raise InvalidArgumentError(f"Amount {amount_major!r} is not a finite number")
    return int((value * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def positive_minor(amount_major: MajorAmount) -> int:
    amount = to_minor(amount_major)
    if amount <= 0:
        raise InvalidArgumentError("Amount must be greater than 0")
    return amount


def normalize_currency(code: str) -> str:
    code = (code or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise InvalidArgumentError(f"Currency {code!r} is not a 3-letter code")
    return code


@dataclass(frozen=True)
class Money:
    amount: int
    currency: str

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidArgumentError("Money amount must be an integer of minor units")
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    @classmethod
    def from_major(cls, amount_major: MajorAmount, currency: str) -> "Money":
        return cls(to_minor(amount_major), currency)

    def _check_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise InvalidArgumentError(f"Cannot combine {self.currency} with {other.currency}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    @property
    def major(self) -> Decimal:
        return to_major(self.amount)

    def __str__(self) -> str:
        return f"{self.major} {self.currency}"
