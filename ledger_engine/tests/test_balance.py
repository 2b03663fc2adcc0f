"""
Unit tests for amounts, sign rules and timestamp handling.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_engine import balance
from ledger_engine.errors import InvalidArgumentError
from ledger_engine.models import Account, AccountKind, CategoryRole, Direction, resolve_category_role
from ledger_engine.money import Money, normalize_currency, positive_minor, to_major, to_minor
from ledger_engine.service import normalize_occurred_at


def make_account(kind: AccountKind, balance_minor: int = 0, credit_limit=None) -> Account:
    return Account(
        id=uuid4(), name="acc", kind=kind, currency="RUB",
        balance=balance_minor, credit_limit=credit_limit,
        created_at=datetime.now(timezone.utc),
    )


class TestMoney:
    """Minor-unit conversion."""

    def test_major_to_minor(self):
        assert to_minor("100.00") == 10000
        assert to_minor(30) == 3000
        assert to_minor(Decimal("0.01")) == 1

    def test_rounds_half_up_to_nearest_minor_unit(self):
        assert to_minor("10.005") == 1001
        assert to_minor("10.004") == 1000
        assert to_minor(0.1 + 0.2) == 30

    def test_accepts_spaces_and_decimal_comma(self):
        assert to_minor("1 234,50") == 123450

    def test_rejects_garbage(self):
        with pytest.raises(InvalidArgumentError):
            to_minor("abc")
        with pytest.raises(InvalidArgumentError):
            to_minor(True)

    def test_positive_minor_rejects_zero_and_negative(self):
        with pytest.raises(InvalidArgumentError):
            positive_minor("0")
        with pytest.raises(InvalidArgumentError):
            positive_minor("0.004")
        with pytest.raises(InvalidArgumentError):
            positive_minor(-5)

    def test_to_major(self):
        assert to_major(7000) == Decimal("70.00")

    def test_currency_code(self):
        assert normalize_currency(" rub ") == "RUB"
        with pytest.raises(InvalidArgumentError):
            normalize_currency("RUBLE")

    def test_money_arithmetic_is_integer_and_single_currency(self):
        total = Money(10000, "rub") - Money(3000, "RUB")
        assert total == Money(7000, "RUB")
        assert str(total) == "70.00 RUB"
        with pytest.raises(InvalidArgumentError):
            Money(100, "RUB") + Money(100, "USD")
        with pytest.raises(InvalidArgumentError):
            Money(1.5, "RUB")


class TestSignRules:
    """Delta table for ordinary and revolving credit accounts."""

    @pytest.mark.parametrize("direction,kind,expected", [
        (Direction.EXPENSE, AccountKind.ORDINARY, -500),
        (Direction.INCOME, AccountKind.ORDINARY, 500),
        (Direction.EXPENSE, AccountKind.REVOLVING_CREDIT, 500),
        (Direction.INCOME, AccountKind.REVOLVING_CREDIT, -500),
    ])
    def test_delta_table(self, direction, kind, expected):
        assert balance.delta(direction, kind, 500) == expected

    def test_accepts_raw_string_values(self):
        assert balance.delta("expense", "revolving_credit", 120) == 120

    def test_reverse_negates(self):
        applied = balance.delta(Direction.EXPENSE, AccountKind.ORDINARY, 3000)
        assert balance.apply(balance.apply(10000, applied), balance.reverse(applied)) == 10000

    def test_revolving_expense_then_income_round_trips(self):
        owed = 0
        owed = balance.apply(owed, balance.delta(Direction.EXPENSE, AccountKind.REVOLVING_CREDIT, 4200))
        owed = balance.apply(owed, balance.delta(Direction.INCOME, AccountKind.REVOLVING_CREDIT, 4200))
        assert owed == 0

    def test_rejects_non_positive_amount(self):
        with pytest.raises(InvalidArgumentError):
            balance.delta(Direction.INCOME, AccountKind.ORDINARY, 0)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(InvalidArgumentError):
            balance.sign(Direction.INCOME, "brokerage")
        with pytest.raises(InvalidArgumentError):
            balance.delta(Direction.EXPENSE, "brokerage", 100)
        with pytest.raises(InvalidArgumentError):
            balance.delta("refund", AccountKind.ORDINARY, 100)

    def test_available_credit(self):
        card = make_account(AccountKind.REVOLVING_CREDIT, balance_minor=12000, credit_limit=50000)
        assert balance.available(card) == 38000
        assert balance.available(make_account(AccountKind.ORDINARY, balance_minor=700)) == 700

    def test_account_kind_and_credit_limit_must_agree(self):
        with pytest.raises(ValueError):
            make_account(AccountKind.REVOLVING_CREDIT)
        with pytest.raises(ValueError):
            make_account(AccountKind.ORDINARY, credit_limit=100)


class TestCategoryRoles:
    def test_known_names_resolve_to_roles(self):
        assert resolve_category_role("Loan repayment") == CategoryRole.LOAN_REPAYMENT
        assert resolve_category_role("  погашение   кредита ") == CategoryRole.LOAN_REPAYMENT
        assert resolve_category_role("Комиссия") == CategoryRole.COMMISSION
        assert resolve_category_role("Groceries") == CategoryRole.REGULAR

    def test_explicit_role_wins(self):
        assert resolve_category_role("Bank fee", CategoryRole.COMMISSION) == CategoryRole.COMMISSION


class TestOccurredAt:
    def test_naive_timestamp_keeps_wall_clock(self):
        naive = datetime(2024, 3, 1, 23, 30)
        result = normalize_occurred_at(naive)
        assert result.tzinfo is not None
        assert result.replace(tzinfo=None) == naive
        assert result.utcoffset() == datetime.now().astimezone().utcoffset()

    def test_aware_timestamp_is_kept(self):
        aware = datetime(2024, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=3)))
        assert normalize_occurred_at(aware) is aware

    def test_string_and_missing_values(self):
        assert normalize_occurred_at("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        assert normalize_occurred_at(None).tzinfo is not None
        with pytest.raises(InvalidArgumentError):
            normalize_occurred_at("yesterday")
