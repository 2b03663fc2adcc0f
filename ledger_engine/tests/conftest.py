import pytest
import pytest_asyncio

from ledger_engine import balance
from ledger_engine.models import (
    AccountKind,
    CategoryKind,
    CreateAccountRequest,
    CreateCategoryRequest,
)
from ledger_engine.service import LedgerService
from ledger_engine.store import InMemoryStorage


class FakeEmbedder:
    """Stands in for the OpenAI client; records what it was asked to embed."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.texts = []

    @property
    def is_available(self) -> bool:
        return True

    async def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        return [0.1, 0.2, 0.3]


class DisabledEmbedder:
    is_available = False


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def service(storage):
    return LedgerService(storage, embedder=DisabledEmbedder())


@pytest_asyncio.fixture
async def cash(service):
    return await service.create_account(CreateAccountRequest(name="Cash", currency="RUB"))


@pytest_asyncio.fixture
async def savings(service):
    return await service.create_account(CreateAccountRequest(name="Savings", currency="RUB"))


@pytest_asyncio.fixture
async def card(service):
    return await service.create_account(CreateAccountRequest(
        name="Credit card",
        kind=AccountKind.REVOLVING_CREDIT,
        currency="RUB",
        credit_limit_major="500.00",
    ))


@pytest_asyncio.fixture
async def loan_category(service):
    return await service.create_category(CreateCategoryRequest(name="Loan repayment", kind=CategoryKind.EXPENSE))


@pytest_asyncio.fixture
async def commission_category(service):
    return await service.create_category(CreateCategoryRequest(name="Commission", kind=CategoryKind.EXPENSE))


@pytest.fixture
def balance_of(service):
    async def _balance(account_id) -> int:
        return (await service.get_account(account_id)).balance
    return _balance


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def failing_embedder():
    return FakeEmbedder(fail=True)


@pytest.fixture
def assert_consistent(service, storage):
    """Check every account balance equals the sum of its entries' deltas."""
    async def _check():
        for account in storage.tables["accounts"].values():
            kind = AccountKind(account["kind"])
            expected = sum(
                balance.entry_delta(row, kind)
                for row in storage.tables["transactions"].values()
                if row["account_id"] == account["id"]
            )
            assert account["balance"] == expected, f"account {account['name']} drifted"
    return _check


@pytest.fixture
def make_service():
    def _make(storage, embedder=None):
        return LedgerService(storage, embedder=embedder or DisabledEmbedder())
    return _make
