"""
Balance Mutator

Sign rules for applying an entry to an account balance:

    direction   ordinary     revolving credit
    expense     -amount      +amount (debt grows)
    income      +amount      -amount (debt shrinks)

A revolving credit balance is the amount owed, so available credit is
``credit_limit - balance``. Reversal always negates the delta computed from
the entry as stored, never from edited values.
"""

from typing import Union

from .errors import InvalidArgumentError
from .models import Account, AccountKind, Direction, Entry


def sign(direction: Direction, kind: AccountKind) -> int:
    if kind == AccountKind.ORDINARY:
        return 1 if direction == Direction.INCOME else -1
    if kind == AccountKind.REVOLVING_CREDIT:
        return -1 if direction == Direction.INCOME else 1
    raise InvalidArgumentError(f"Unhandled account kind: {kind!r}")


def delta(direction: Direction, kind: AccountKind, amount: int) -> int:
    if amount <= 0:
        raise InvalidArgumentError("Entry amount must be positive")
    try:
        direction = Direction(direction)
    except ValueError:
        raise InvalidArgumentError(f"Unknown direction: {direction!r}")
    return sign(direction, kind) * amount


def reverse(applied: int) -> int:
    return -applied


def apply(balance: int, applied: int) -> int:
    return balance + applied


def entry_delta(entry: Union[Entry, dict], kind: AccountKind) -> int:
    if isinstance(entry, dict):
        return delta(entry["direction"], kind, entry["amount"])
    return delta(entry.direction, kind, entry.amount)


def available(account: Account) -> int:
    return account.available
