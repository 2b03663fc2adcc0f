"""
Row store contract used by the ledger.

The ledger only needs per-table CRUD with filters, ordering and paging, an
atomic counter increment for balances, and named server-side procedures for
the multi-row transfer commit. ``InMemoryStorage`` implements the contract
for tests, local runs and the serverless demo.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional
from uuid import UUID, uuid4

from . import balance
from .errors import StoreFailureError
from .models import AccountKind, Direction


TABLES = (
    "accounts",
    "categories",
    "transactions",
    "transfers",
    "loans",
    "loan_payments",
    "plan_topups",
    "transaction_items",
)

Row = dict
Predicate = Callable[[Row], bool]


class RowStore(ABC):
    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    @abstractmethod
    async def get(self, table: str, row_id: UUID) -> Optional[Row]: ...

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        *,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Row]: ...

    @abstractmethod
    async def update(self, table: str, row_id: UUID, changes: dict) -> Row: ...

    @abstractmethod
    async def delete(self, table: str, row_id: UUID) -> None: ...

    @abstractmethod
    async def delete_where(self, table: str, filters: dict) -> int: ...

    @abstractmethod
    async def increment(self, table: str, row_id: UUID, column: str, amount: int) -> int:
        """Atomically add ``amount`` to an integer column and return the new value."""

    @abstractmethod
    async def rpc(self, procedure: str, params: dict) -> Any: ...


def _matches(row: Row, filters: Optional[dict]) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(column: str):
    return lambda row: (row.get(column) is None, row.get(column))


class InMemoryStorage(RowStore):
    def __init__(self):
        self.tables: dict[str, dict[UUID, Row]] = {name: {} for name in TABLES}
        self._row_locks: dict[UUID, asyncio.Lock] = {}
        self._procedures = {
            "create_transfer": self._create_transfer,
            "delete_transfer": self._delete_transfer,
        }

    def _table(self, table: str) -> dict[UUID, Row]:
        try:
            return self.tables[table]
        except KeyError:
            raise StoreFailureError(f"Unknown table {table!r}")

    def _require(self, table: str, row_id: UUID) -> Row:
        row = self._table(table).get(row_id)
        if row is None:
            raise StoreFailureError(f"{table} row {row_id} does not exist")
        return row

    def _lock_for(self, row_id: UUID) -> asyncio.Lock:
        return self._row_locks.setdefault(row_id, asyncio.Lock())

    async def insert(self, table: str, row: Row) -> Row:
        rows = self._table(table)
        data = dict(row)
        data.setdefault("id", uuid4())
        data.setdefault("created_at", datetime.now(timezone.utc))
        if data["id"] in rows:
            raise StoreFailureError(f"{table} row {data['id']} already exists")
        rows[data["id"]] = data
        return dict(data)

    async def get(self, table: str, row_id: UUID) -> Optional[Row]:
        row = self._table(table).get(row_id)
        return dict(row) if row is not None else None

    async def select(
        self,
        table: str,
        filters: Optional[dict] = None,
        *,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Row]:
        rows = [
            r for r in self._table(table).values()
            if _matches(r, filters) and (where is None or where(r))
        ]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        end = offset + limit if limit is not None else None
        return [dict(r) for r in rows[offset:end]]

    async def update(self, table: str, row_id: UUID, changes: dict) -> Row:
        if table == "accounts" and "balance" in changes:
            raise StoreFailureError("Account balance can only change through increment")
        row = self._require(table, row_id)
        row.update({k: v for k, v in changes.items() if k not in ("id", "created_at")})
        return dict(row)

    async def delete(self, table: str, row_id: UUID) -> None:
        self._require(table, row_id)
        del self._table(table)[row_id]

    async def delete_where(self, table: str, filters: dict) -> int:
        rows = self._table(table)
        doomed = [row_id for row_id, r in rows.items() if _matches(r, filters)]
        for row_id in doomed:
            del rows[row_id]
        return len(doomed)

    async def increment(self, table: str, row_id: UUID, column: str, amount: int) -> int:
        async with self._lock_for(row_id):
            row = self._require(table, row_id)
            row[column] = (row.get(column) or 0) + amount
            return row[column]

    async def rpc(self, procedure: str, params: dict) -> Any:
        try:
            handler = self._procedures[procedure]
        except KeyError:
            raise StoreFailureError(f"Unknown procedure {procedure!r}")
        return await handler(**params)

    async def _locked(self, stack: AsyncExitStack, account_ids: Iterable[UUID]) -> None:
        # Fixed order so two opposite transfers cannot deadlock
        for account_id in sorted(set(account_ids), key=str):
            await stack.enter_async_context(self._lock_for(account_id))

    async def _create_transfer(
        self,
        from_account_id: UUID,
        to_account_id: UUID,
        amount: int,
        currency: str,
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> UUID:
        if from_account_id == to_account_id:
            raise StoreFailureError("Transfer accounts must differ")
        async with AsyncExitStack() as stack:
            await self._locked(stack, (from_account_id, to_account_id))
            source = self._require("accounts", from_account_id)
            target = self._require("accounts", to_account_id)
            expense_delta = balance.delta(Direction.EXPENSE, AccountKind(source["kind"]), amount)
            income_delta = balance.delta(Direction.INCOME, AccountKind(target["kind"]), amount)

            now = datetime.now(timezone.utc)
            transfer_id, expense_id, income_id = uuid4(), uuid4(), uuid4()
            common = {
                "category_id": None,
                "amount": amount,
                "currency": currency,
                "occurred_at": occurred_at,
                "note": note,
                "counterparty": None,
                "transfer_id": transfer_id,
                "embedding": None,
                "created_at": now,
            }
            self.tables["transactions"][expense_id] = {
                **common, "id": expense_id, "account_id": from_account_id,
                "direction": Direction.EXPENSE.value, "transfer_role": Direction.EXPENSE.value,
            }
            self.tables["transactions"][income_id] = {
                **common, "id": income_id, "account_id": to_account_id,
                "direction": Direction.INCOME.value, "transfer_role": Direction.INCOME.value,
            }
            self.tables["transfers"][transfer_id] = {
                "id": transfer_id,
                "from_account_id": from_account_id,
                "to_account_id": to_account_id,
                "amount": amount,
                "currency": currency,
                "occurred_at": occurred_at,
                "note": note,
                "expense_entry_id": expense_id,
                "income_entry_id": income_id,
                "created_at": now,
            }
            source["balance"] = balance.apply(source.get("balance") or 0, expense_delta)
            target["balance"] = balance.apply(target.get("balance") or 0, income_delta)
        return transfer_id

    async def _delete_transfer(self, transfer_id: UUID) -> list[UUID]:
        transfer = self._require("transfers", transfer_id)
        async with AsyncExitStack() as stack:
            await self._locked(stack, (transfer["from_account_id"], transfer["to_account_id"]))
            halves = [
                r for r in self.tables["transactions"].values()
                if r.get("transfer_id") == transfer_id
            ]
            if len(halves) != 2:
                raise StoreFailureError(
                    f"Transfer {transfer_id} has {len(halves)} entries, expected 2"
                )
            reversals = []
            for half in halves:
                account = self._require("accounts", half["account_id"])
                applied = balance.entry_delta(half, AccountKind(account["kind"]))
                reversals.append((account, balance.reverse(applied)))

            for account, amount in reversals:
                account["balance"] = balance.apply(account.get("balance") or 0, amount)
            for half in halves:
                del self.tables["transactions"][half["id"]]
            del self.tables["transfers"][transfer_id]
        return [half["id"] for half in halves]
