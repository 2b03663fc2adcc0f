"""
Ledger & Balance Consistency Engine

This package keeps account balances consistent with their entries:
- Integer minor-unit amounts
- Sign rules for ordinary and revolving credit accounts
- Entry create / update / delete with reverse-then-apply on edits
- Atomic transfers between two accounts
- Bulk import of statement rows with duplicate detection
- Cascades for loan repayments, commissions and plan top-ups
"""

from .errors import (
    CascadeWarning,
    InvalidArgumentError,
    LedgerServiceError,
    NotFoundError,
    StoreFailureError,
)
from .models import (
    Account,
    AccountKind,
    Category,
    CategoryRole,
    Direction,
    Entry,
    Transfer,
)
from .service import LedgerService
from .store import InMemoryStorage, RowStore

__all__ = [
    "Account",
    "AccountKind",
    "CascadeWarning",
    "Category",
    "CategoryRole",
    "Direction",
    "Entry",
    "InMemoryStorage",
    "InvalidArgumentError",
    "LedgerService",
    "LedgerServiceError",
    "NotFoundError",
    "RowStore",
    "StoreFailureError",
    "Transfer",
]
