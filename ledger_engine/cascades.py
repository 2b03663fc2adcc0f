"""
Cascade resolvers run when an entry is deleted.

Loan repayment reversal is best effort: every failure is turned into a
CascadeWarning, logged and reported, and the entry deletion goes ahead.
Plan top-up and line-item unlinking run before the entry row is removed and
propagate store failures, so a failed unlink leaves the entry untouched.
"""

import logging
from datetime import date, datetime
from typing import Awaitable, Callable, Optional, Union
from uuid import UUID

from .errors import CascadeWarning
from .models import CascadeReport, CategoryRole, Entry, LoanPayment
from .store import RowStore


logger = logging.getLogger(__name__)

DeleteEntry = Callable[[UUID], Awaitable[None]]


def _as_date(value: Union[date, datetime, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


async def unlink_plan_topups(store: RowStore, entry_id: UUID) -> int:
    return await store.delete_where("plan_topups", {"transaction_id": entry_id})


async def unlink_line_items(store: RowStore, entry_id: UUID) -> int:
    return await store.delete_where("transaction_items", {"transaction_id": entry_id})


async def unlink_dependents(store: RowStore, entry_id: UUID) -> None:
    topups = await unlink_plan_topups(store, entry_id)
    items = await unlink_line_items(store, entry_id)
    if topups or items:
        logger.info("Unlinked %d plan top-ups and %d line items from entry %s", topups, items, entry_id)


class LoanRepaymentResolver:
    """Undo the loan bookkeeping that accompanied a loan repayment entry."""

    def __init__(self, store: RowStore, delete_entry: DeleteEntry):
        self.store = store
        self.delete_entry = delete_entry

    async def run(self, entry: Entry) -> CascadeReport:
        report = CascadeReport()
        try:
            payment = await self.match_payment(entry)
            await self._reverse_payment(payment, report)
        except Exception as e:
            report.warnings.append(str(self._warning("loan_payment", e)))
        try:
            await self._delete_commission(entry, report)
        except Exception as e:
            report.warnings.append(str(self._warning("commission", e)))

        for warning in report.warnings:
            logger.warning("Loan repayment cascade for entry %s: %s", entry.id, warning)
        return report

    @staticmethod
    def _warning(step: str, error: Exception) -> CascadeWarning:
        if isinstance(error, CascadeWarning):
            return error
        return CascadeWarning(step, str(error))

    async def match_payment(self, entry: Entry) -> LoanPayment:
        linked = await self.store.select("loan_payments", {"transaction_id": entry.id})
        if linked:
            return LoanPayment(**linked[-1])

        candidates = await self.store.select("loan_payments", {"amount": entry.amount})
        day = entry.occurred_at.date()
        same_day = [p for p in candidates if _as_date(p["payment_date"]) == day]
        if not same_day:
            raise CascadeWarning(
                "loan_payment", f"no loan payment of {entry.amount} dated {day.isoformat()}"
            )
        # Ambiguous matches: the most recently inserted row wins
        return LoanPayment(**same_day[-1])

    async def _reverse_payment(self, payment: LoanPayment, report: CascadeReport) -> None:
        # Loan rows belong to the loans module; only principal_paid is read
        loan = await self.store.get("loans", payment.loan_id)
        if loan is None:
            raise CascadeWarning("loan_payment", f"loan {payment.loan_id} not found")
        principal_paid = max(0, (loan.get("principal_paid") or 0) - payment.principal_amount)

        # Payment row is removed before principal_paid changes and restored if that update fails
        payment_row = await self.store.get("loan_payments", payment.id)
        await self.store.delete("loan_payments", payment.id)
        try:
            await self.store.update("loans", payment.loan_id, {"principal_paid": principal_paid})
        except Exception:
            await self.store.insert("loan_payments", payment_row)
            raise

        latest = await self.store.select(
            "loan_payments", {"loan_id": payment.loan_id},
            order_by="payment_date", descending=True, limit=1,
        )
        last_payment_date: Optional[date] = _as_date(latest[0]["payment_date"]) if latest else None
        await self.store.update("loans", payment.loan_id, {"last_payment_date": last_payment_date})

        report.loan_id = payment.loan_id
        report.loan_payment_id = payment.id
        logger.info(
            "Reversed loan payment %s: loan %s principal_paid=%d last_payment_date=%s",
            payment.id, payment.loan_id, principal_paid, last_payment_date,
        )

    async def find_commission(self, entry: Entry) -> Optional[dict]:
        if not entry.counterparty:
            return None
        commission_categories = await self.store.select(
            "categories", {"role": CategoryRole.COMMISSION.value}
        )
        if not commission_categories:
            return None
        matches = await self.store.select(
            "transactions",
            {
                "counterparty": entry.counterparty,
                "occurred_at": entry.occurred_at,
                "category_id": [c["id"] for c in commission_categories],
            },
            where=lambda row: row["id"] != entry.id,
            limit=1,
        )
        return matches[0] if matches else None

    async def _delete_commission(self, entry: Entry, report: CascadeReport) -> None:
        commission = await self.find_commission(entry)
        if commission is None:
            return
        await self.delete_entry(commission["id"])
        report.commission_entry_id = commission["id"]
        logger.info("Deleted commission entry %s alongside %s", commission["id"], entry.id)
