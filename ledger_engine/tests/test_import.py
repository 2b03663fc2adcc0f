"""
Tests for bulk import of statement rows.
"""

from datetime import datetime, timezone

import pytest

from ledger_engine.models import (
    CreateCategoryRequest,
    CreateEntryRequest,
    Direction,
    ImportEntryRow,
)


pytestmark = pytest.mark.asyncio

MORNING = "2024-03-01T09:00:00+00:00"


def row(number, amount="10.00", direction="expense", account="Cash", currency="RUB", occurred_at=MORNING, **kwargs):
    return ImportEntryRow(
        row_number=number, occurred_at=occurred_at, direction=direction, amount_major=amount,
        currency=currency, account_name=account, **kwargs,
    )


class TestImportEntries:
    async def test_rows_become_entries_with_balance_effects(self, service, storage, cash, savings,
                                                            balance_of, assert_consistent):
        groceries = await service.create_category(CreateCategoryRequest(name="Groceries"))

        result = await service.import_entries([
            row(2, "1 250,50", category_name="groceries", counterparty="Bakery"),
            row(3, "300", direction="income", account="savings"),
        ])

        assert result.ok
        assert result.imported == 2
        assert result.errors == []
        assert await balance_of(cash.id) == -125050
        assert await balance_of(savings.id) == 30000
        first = await service.get_entry(result.entry_ids[0])
        assert first.category_id == groceries.id
        assert first.counterparty == "Bakery"
        await assert_consistent()

    async def test_duplicates_are_skipped(self, service, storage, cash, balance_of):
        await service.create_entry(CreateEntryRequest(
            account_id=cash.id, direction=Direction.EXPENSE, amount_major=10,
            occurred_at=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
        ))

        result = await service.import_entries([
            row(2),
            row(3, "5.00"),
            row(4, "5.00"),
        ])

        assert result.imported == 1
        assert result.skipped == 2
        assert result.ok
        assert await balance_of(cash.id) == -1500
        assert len(await storage.select("transactions")) == 2

    async def test_same_moment_in_another_offset_is_a_duplicate(self, service, cash):
        await service.import_entries([row(2)])

        result = await service.import_entries([row(2, occurred_at="2024-03-01T12:00:00+03:00")])

        assert result.imported == 0
        assert result.skipped == 1

    async def test_bad_rows_are_reported_and_the_rest_imported(self, service, cash, savings, balance_of):
        result = await service.import_entries([
            row(2, direction="transfer"),
            row(3, account="Brokerage"),
            row(4, currency="USD"),
            row(5, category_name="Travel"),
            row(6, "0"),
            row(7, occurred_at="yesterday"),
            row(8, "7.00"),
        ])

        assert result.imported == 1
        assert not result.ok
        assert len(result.errors) == 6
        assert result.errors[0].startswith("Row 2: transfers")
        assert "Brokerage" in result.errors[1]
        assert "USD" in result.errors[2]
        assert "Travel" in result.errors[3]
        assert "(and 3 more)" in result.message
        assert await balance_of(cash.id) == -700

    async def test_single_account_takes_unnamed_rows(self, service, cash, balance_of):
        result = await service.import_entries([row(2, account=None), row(3, "1.00", account="Wallet")])

        assert result.imported == 2
        assert await balance_of(cash.id) == -1100

    async def test_revolving_account_import_grows_debt(self, service, card, balance_of):
        result = await service.import_entries([row(2, "40.00", account="credit card")])

        assert result.imported == 1
        assert await balance_of(card.id) == 4000

    async def test_nothing_to_import(self, service):
        result = await service.import_entries([])
        assert not result.ok
        assert result.imported == 0

    async def test_no_accounts(self, service, storage):
        result = await service.import_entries([row(2)])

        assert not result.ok
        assert "No accounts" in result.message
        assert await storage.select("transactions") == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
