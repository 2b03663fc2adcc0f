import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from . import balance
from .cascades import LoanRepaymentResolver, unlink_dependents
from .config import settings
from .embeddings import EntryEmbedder, entry_summary
from .errors import InvalidArgumentError, LedgerServiceError, NotFoundError, StoreFailureError
from .models import (
    Account,
    AccountKind,
    Category,
    CategoryRole,
    CreateAccountRequest,
    CreateCategoryRequest,
    CreateEntryRequest,
    CreateTransferRequest,
    Direction,
    Entry,
    EntrySelectItem,
    ImportEntryRow,
    ImportResult,
    Transfer,
    UpdateEntryRequest,
    UpdateTransferRequest,
    resolve_category_role,
)
from .money import Money, normalize_currency, positive_minor, to_major, to_minor
from .store import InMemoryStorage, RowStore


logger = logging.getLogger(__name__)

MOVING_FIELDS = ("account_id", "direction", "amount_major")
SHARED_TRANSFER_FIELDS = ("occurred_at", "currency")


def normalize_occurred_at(value: Optional[Union[datetime, str]] = None) -> datetime:
    """Make an entry timestamp timezone-aware.

    A naive timestamp is what the user saw on the clock, so it gets the
    server's current UTC offset attached instead of being read as UTC.
    """
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidArgumentError(f"Invalid timestamp {value!r}")
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=datetime.now().astimezone().tzinfo)
    return value


def _select_label(row: dict) -> str:
    title = row.get("counterparty") or row.get("note") or row["direction"]
    return f"{row['occurred_at'].date().isoformat()} {title} {to_major(row['amount'])} {row['currency']}"


def _import_key(occurred_at: datetime, direction, amount: int, account_id: UUID,
                category_id: Optional[UUID]) -> tuple:
    return (occurred_at.astimezone(timezone.utc), Direction(direction).value, amount, account_id, category_id)


class LedgerService:
    def __init__(self, storage: Optional[RowStore] = None, embedder: Optional[EntryEmbedder] = None):
        self.storage = storage or InMemoryStorage()
        self.embedder = embedder if embedder is not None else EntryEmbedder()
        self.loan_resolver = LoanRepaymentResolver(self.storage, self.delete_entry)
        self._background_tasks: set[asyncio.Task] = set()

    # Accounts and categories

    async def create_account(self, request: CreateAccountRequest) -> Account:
        currency = normalize_currency(request.currency or settings.default_currency)
        credit_limit = None
        if request.kind == AccountKind.REVOLVING_CREDIT:
            if request.credit_limit_major is None:
                raise InvalidArgumentError("Revolving credit accounts need a credit limit")
            credit_limit = to_minor(request.credit_limit_major)
            if credit_limit < 0:
                raise InvalidArgumentError("Credit limit cannot be negative")
        elif request.credit_limit_major is not None:
            raise InvalidArgumentError("Ordinary accounts carry no credit limit")

        row = await self.storage.insert("accounts", {
            "name": request.name,
            "kind": request.kind.value,
            "currency": currency,
            "balance": 0,
            "credit_limit": credit_limit,
        })
        logger.info("Created %s account %s", request.kind.value, row["id"])
        return Account(**row)

    async def create_default_account(self) -> Account:
        existing = await self.storage.select("accounts", order_by="created_at", limit=1)
        if existing:
            return Account(**existing[0])
        return await self.create_account(CreateAccountRequest(name="Cash"))

    async def get_account(self, account_id: UUID) -> Account:
        row = await self.storage.get("accounts", account_id)
        if not row:
            raise NotFoundError(f"Account {account_id} not found")
        return Account(**row)

    async def create_category(self, request: CreateCategoryRequest) -> Category:
        row = await self.storage.insert("categories", {
            "name": request.name,
            "kind": request.kind.value,
            "role": resolve_category_role(request.name, request.role).value,
        })
        return Category(**row)

    async def get_category(self, category_id: UUID) -> Category:
        row = await self.storage.get("categories", category_id)
        if not row:
            raise NotFoundError(f"Category {category_id} not found")
        return Category(**row)

    async def _category_role(self, category_id: Optional[UUID]) -> CategoryRole:
        if category_id is None:
            return CategoryRole.REGULAR
        row = await self.storage.get("categories", category_id)
        return CategoryRole(row["role"]) if row else CategoryRole.REGULAR

    # Entries

    async def get_entry(self, entry_id: UUID) -> Entry:
        row = await self.storage.get("transactions", entry_id)
        if not row:
            raise NotFoundError(f"Entry {entry_id} not found")
        return Entry(**row)

    async def list_entries(
        self,
        account_id: Optional[UUID] = None,
        direction: Optional[Direction] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Entry]:
        filters = {}
        if account_id is not None:
            filters["account_id"] = account_id
        if direction is not None:
            filters["direction"] = Direction(direction).value
        rows = await self.storage.select(
            "transactions", filters, order_by="occurred_at", descending=True,
            limit=limit, offset=offset,
        )
        return [Entry(**r) for r in rows]

    async def list_entries_for_select(
        self,
        search: Optional[str] = None,
        ids: Optional[list[UUID]] = None,
        limit: Optional[int] = None,
    ) -> list[EntrySelectItem]:
        limit = settings.select_limit_default if limit is None else limit
        if not 1 <= limit <= settings.select_limit_max:
            raise InvalidArgumentError(f"Limit must be between 1 and {settings.select_limit_max}")

        where = None
        needle = (search or "").strip().lower()
        if needle:
            def where(row: dict) -> bool:
                return any(needle in (row.get(f) or "").lower() for f in ("note", "counterparty"))

        rows = await self.storage.select(
            "transactions", {"id": list(ids)} if ids else None, where=where,
            order_by="occurred_at", descending=True, limit=limit,
        )
        return [
            EntrySelectItem(
                id=r["id"], label=_select_label(r), amount=r["amount"], currency=r["currency"],
                direction=r["direction"], occurred_at=r["occurred_at"],
            )
            for r in rows
        ]

    async def create_entry(self, request: CreateEntryRequest) -> Entry:
        account = await self.get_account(request.account_id)
        money = Money(positive_minor(request.amount_major), request.currency or account.currency)
        category = await self.get_category(request.category_id) if request.category_id else None

        row = await self.storage.insert("transactions", {
            "account_id": account.id,
            "category_id": category.id if category else None,
            "direction": request.direction.value,
            "amount": money.amount,
            "currency": money.currency,
            "occurred_at": normalize_occurred_at(request.occurred_at),
            "note": request.note,
            "counterparty": request.counterparty,
            "transfer_id": None,
            "transfer_role": None,
            "embedding": None,
        })
        entry = Entry(**row)
        try:
            await self._apply(account, entry)
        except StoreFailureError:
            await self.storage.delete("transactions", entry.id)
            raise
        logger.info(
            "Created %s entry %s of %d on account %s",
            entry.direction.value, entry.id, entry.amount, account.id,
        )
        self._schedule_embedding(entry, category.name if category else None)
        return entry

    async def update_entry(self, entry_id: UUID, request: UpdateEntryRequest) -> Entry:
        changes = request.supplied()
        if not changes:
            raise InvalidArgumentError("No fields to update")
        entry = await self.get_entry(entry_id)
        if entry.is_transfer_half:
            return await self._update_transfer_half(entry, changes)

        updates = await self._descriptive_updates(changes)
        updates.update(self._shared_updates(changes))

        new_account_id = changes.get("account_id") or entry.account_id
        new_direction = changes.get("direction") or entry.direction
        new_amount = entry.amount
        if changes.get("amount_major") is not None:
            new_amount = positive_minor(changes["amount_major"])
        moved = (new_account_id, new_direction, new_amount) != (entry.account_id, entry.direction, entry.amount)

        if not moved:
            if not updates:
                return entry
            return Entry(**await self.storage.update("transactions", entry.id, updates))

        old_account = await self.get_account(entry.account_id)
        new_account = old_account
        if new_account_id != old_account.id:
            new_account = await self.get_account(new_account_id)
        updates.update({
            "account_id": new_account.id,
            "direction": Direction(new_direction).value,
            "amount": new_amount,
        })
        target = entry.model_copy(update={
            "account_id": new_account.id, "direction": Direction(new_direction), "amount": new_amount,
        })

        await self._move(old_account, entry, new_account, target)
        try:
            updated = Entry(**await self.storage.update("transactions", entry.id, updates))
        except StoreFailureError:
            await self._move(new_account, target, old_account, entry)
            raise
        logger.info(
            "Re-applied entry %s: %d on %s -> %d on %s",
            entry.id, entry.amount, old_account.id, updated.amount, new_account.id,
        )
        return updated

    async def _move(self, old_account: Account, old: Entry, new_account: Account, new: Entry) -> None:
        """Reverse ``old`` then apply ``new``; the reversal is undone if the apply fails."""
        # Two separate steps: they may target different accounts
        await self._reverse(old_account, old)
        try:
            await self._apply(new_account, new)
        except StoreFailureError:
            await self._apply(old_account, old)
            raise

    async def _descriptive_updates(self, changes: dict) -> dict:
        updates = {}
        if "category_id" in changes:
            category_id = changes["category_id"]
            if category_id is not None:
                await self.get_category(category_id)
            updates["category_id"] = category_id
        for field in ("note", "counterparty"):
            if field in changes:
                updates[field] = changes[field]
        return updates

    def _shared_updates(self, changes: dict) -> dict:
        updates = {}
        if changes.get("occurred_at") is not None:
            updates["occurred_at"] = normalize_occurred_at(changes["occurred_at"])
        if changes.get("currency") is not None:
            updates["currency"] = normalize_currency(changes["currency"])
        return updates

    async def _update_transfer_half(self, entry: Entry, changes: dict) -> Entry:
        ignored = [f for f in MOVING_FIELDS if f in changes]
        if ignored:
            logger.debug("Ignoring %s on transfer entry %s", ", ".join(ignored), entry.id)

        updates = await self._descriptive_updates(changes)
        shared = self._shared_updates(changes)
        if not updates and not shared:
            return entry

        if shared:
            # Both halves and the transfer row keep one date and currency
            await self.storage.update("transfers", entry.transfer_id, shared)
            siblings = await self.storage.select("transactions", {"transfer_id": entry.transfer_id})
            for sibling in siblings:
                if sibling["id"] != entry.id:
                    await self.storage.update("transactions", sibling["id"], shared)
        return Entry(**await self.storage.update("transactions", entry.id, {**updates, **shared}))

    async def delete_entry(self, entry_id: UUID) -> None:
        entry = await self.get_entry(entry_id)
        if entry.is_transfer_half:
            await self.delete_transfer(entry.transfer_id)
            return

        account = await self.get_account(entry.account_id)
        if await self._category_role(entry.category_id) == CategoryRole.LOAN_REPAYMENT:
            report = await self.loan_resolver.run(entry)
            logger.info(
                "Loan repayment cascade for entry %s: payment=%s loan=%s commission=%s warnings=%d",
                entry.id, report.loan_payment_id, report.loan_id,
                report.commission_entry_id, len(report.warnings),
            )

        await unlink_dependents(self.storage, entry.id)
        row = await self.storage.get("transactions", entry.id)
        await self.storage.delete("transactions", entry.id)
        try:
            await self._reverse(account, entry)
        except StoreFailureError:
            await self.storage.insert("transactions", row)
            raise
        logger.info("Deleted entry %s from account %s", entry.id, account.id)

    # Bulk import

    async def import_entries(self, rows: list[ImportEntryRow]) -> ImportResult:
        """Create entries from parsed statement rows.

        Accounts and categories are matched by name, ignoring case. With a
        single account, rows without a known account name land there. A row
        equal to an existing or earlier row on (occurred_at, direction,
        amount, account, category) is skipped as a duplicate. Rows that
        cannot be resolved are reported by row number and the rest still go
        in, each one through ``create_entry``.
        """
        if not rows:
            return ImportResult(ok=False, message="Nothing to import")
        accounts = await self.storage.select("accounts", order_by="created_at")
        if not accounts:
            return ImportResult(ok=False, message="No accounts yet, create one before importing")
        accounts_by_name = {a["name"].strip().lower(): a for a in accounts if a.get("name")}
        categories_by_name = {
            c["name"].strip().lower(): c
            for c in await self.storage.select("categories") if c.get("name")
        }

        seen = await self._existing_import_keys(rows)
        errors: list[str] = []
        entry_ids: list[UUID] = []
        duplicates = 0
        for row in rows:
            try:
                request, key = self._import_request(row, accounts, accounts_by_name, categories_by_name)
            except LedgerServiceError as e:
                errors.append(f"Row {row.row_number}: {e}")
                continue
            if key in seen:
                duplicates += 1
                continue
            try:
                entry = await self.create_entry(request)
            except StoreFailureError as e:
                errors.append(f"Row {row.row_number}: {e}")
                continue
            seen.add(key)
            entry_ids.append(entry.id)

        parts = []
        if entry_ids:
            parts.append(f"Imported {len(entry_ids)} rows.")
        if duplicates:
            parts.append(f"Skipped {duplicates} duplicates.")
        if errors:
            more = f" (and {len(errors) - 3} more)" if len(errors) > 3 else ""
            parts.append(f"Errors: {' | '.join(errors[:3])}{more}")
        if not parts:
            parts.append("Nothing was imported.")

        logger.info(
            "Import finished: %d imported, %d duplicates, %d row errors",
            len(entry_ids), duplicates, len(errors),
        )
        return ImportResult(
            ok=bool(entry_ids) and not errors,
            message=" ".join(parts),
            imported=len(entry_ids),
            skipped=duplicates,
            errors=errors,
            entry_ids=entry_ids,
        )

    def _import_request(
        self,
        row: ImportEntryRow,
        accounts: list[dict],
        accounts_by_name: dict,
        categories_by_name: dict,
    ) -> tuple[CreateEntryRequest, tuple]:
        kind = row.direction.strip().lower()
        if kind == "transfer":
            raise InvalidArgumentError("transfers cannot be imported")
        try:
            direction = Direction(kind)
        except ValueError:
            raise InvalidArgumentError(f"unknown direction {row.direction!r}")

        account_name = (row.account_name or "").strip()
        account = accounts_by_name.get(account_name.lower())
        if account is None and len(accounts) == 1:
            account = accounts[0]
        if account is None:
            raise NotFoundError(f"account {account_name!r} not found")

        money = Money(positive_minor(row.amount_major), row.currency)
        if money.currency != account["currency"]:
            raise InvalidArgumentError(
                f"currency {money.currency} does not match account currency {account['currency']}"
            )

        category_id = None
        if row.category_name:
            category = categories_by_name.get(row.category_name.strip().lower())
            if category is None:
                raise NotFoundError(f"category {row.category_name!r} not found")
            category_id = category["id"]

        occurred_at = normalize_occurred_at(row.occurred_at)
        request = CreateEntryRequest(
            account_id=account["id"],
            category_id=category_id,
            direction=direction,
            amount_major=money.major,
            currency=money.currency,
            occurred_at=occurred_at,
            note=row.note,
            counterparty=row.counterparty,
        )
        return request, _import_key(occurred_at, direction, money.amount, account["id"], category_id)

    async def _existing_import_keys(self, rows: list[ImportEntryRow]) -> set[tuple]:
        moments = []
        for row in rows:
            try:
                moments.append(normalize_occurred_at(row.occurred_at))
            except InvalidArgumentError:
                continue
        if not moments:
            return set()
        start, end = min(moments), max(moments)
        existing = await self.storage.select(
            "transactions", where=lambda r: start <= r["occurred_at"] <= end
        )
        return {
            _import_key(r["occurred_at"], r["direction"], r["amount"], r["account_id"], r.get("category_id"))
            for r in existing
        }

    # Transfers

    async def create_transfer(self, request: CreateTransferRequest) -> UUID:
        if request.from_account_id == request.to_account_id:
            raise InvalidArgumentError("Cannot transfer to the same account")
        source = await self.get_account(request.from_account_id)
        await self.get_account(request.to_account_id)
        money = Money(positive_minor(request.amount_major), request.currency or source.currency)

        # Entries, transfer row and both balance changes commit together
        transfer_id = await self.storage.rpc("create_transfer", {
            "from_account_id": request.from_account_id,
            "to_account_id": request.to_account_id,
            "amount": money.amount,
            "currency": money.currency,
            "occurred_at": normalize_occurred_at(request.occurred_at),
            "note": request.note,
        })
        logger.info(
            "Created transfer %s of %s from %s to %s",
            transfer_id, money, request.from_account_id, request.to_account_id,
        )
        return transfer_id

    async def get_transfer(self, transfer_id: UUID) -> Transfer:
        row = await self.storage.get("transfers", transfer_id)
        if not row:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return Transfer(**row)

    async def update_transfer(self, transfer_id: UUID, request: UpdateTransferRequest) -> Transfer:
        changes = request.supplied()
        if not changes:
            raise InvalidArgumentError("No fields to update")
        transfer = await self.get_transfer(transfer_id)

        updates = {}
        if "note" in changes:
            updates["note"] = changes["note"]
        if changes.get("occurred_at") is not None:
            updates["occurred_at"] = normalize_occurred_at(changes["occurred_at"])
        if not updates:
            return transfer

        for entry_id in (transfer.expense_entry_id, transfer.income_entry_id):
            await self.storage.update("transactions", entry_id, updates)
        return Transfer(**await self.storage.update("transfers", transfer_id, updates))

    async def delete_transfer(self, transfer_id: UUID) -> None:
        transfer = await self.get_transfer(transfer_id)
        for entry_id in (transfer.expense_entry_id, transfer.income_entry_id):
            await unlink_dependents(self.storage, entry_id)
        await self.storage.rpc("delete_transfer", {"transfer_id": transfer_id})
        logger.info(
            "Deleted transfer %s between %s and %s",
            transfer_id, transfer.from_account_id, transfer.to_account_id,
        )

    # Balance effects

    async def _apply(self, account: Account, entry: Entry) -> int:
        applied = balance.entry_delta(entry, account.kind)
        return await self.storage.increment("accounts", account.id, "balance", applied)

    async def _reverse(self, account: Account, entry: Entry) -> int:
        reversal = balance.reverse(balance.entry_delta(entry, account.kind))
        return await self.storage.increment("accounts", account.id, "balance", reversal)

    # Background enrichment

    def _schedule_embedding(self, entry: Entry, category_name: Optional[str]) -> None:
        if self.embedder is None or not self.embedder.is_available:
            return
        task = asyncio.create_task(self._embed_entry(entry, category_name))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _embed_entry(self, entry: Entry, category_name: Optional[str]) -> None:
        text = entry_summary(
            entry.direction.value, entry.amount, entry.currency,
            category_name, entry.note, entry.counterparty,
        )
        try:
            vector = await self.embedder.embed(text)
            await self.storage.update("transactions", entry.id, {"embedding": vector})
        except Exception as e:
            logger.warning("Embedding for entry %s failed: %s", entry.id, e)

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))
