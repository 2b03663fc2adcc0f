import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from . import balance
from .config import settings
from .errors import InvalidArgumentError, NotFoundError, StoreFailureError
from .models import (
    AccountResponse, Category, CreateAccountRequest, CreateCategoryRequest,
    CreateEntryRequest, CreateTransferRequest, Entry, EntrySelectItem,
    ImportEntriesRequest, ImportResult, Transfer, UpdateEntryRequest, UpdateTransferRequest,
)
from .service import LedgerService

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await ledger_service.wait_for_background_tasks()


app = FastAPI(
    title="Ledger API",
    description="Account balances kept consistent across entries, transfers and their cascades",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService()


def _store_unavailable(e: StoreFailureError) -> HTTPException:
    logger.error("Store failure: %s", e)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage error, please retry")


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.service_name}


@app.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
async def create_account(request: CreateAccountRequest) -> AccountResponse:
    try:
        account = await ledger_service.create_account(request)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreFailureError as e:
        raise _store_unavailable(e)
    return AccountResponse(account=account, available=balance.available(account))


@app.get("/accounts/{account_id}", response_model=AccountResponse, tags=["Accounts"])
async def get_account(account_id: UUID) -> AccountResponse:
    try:
        account = await ledger_service.get_account(account_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")
    return AccountResponse(account=account, available=balance.available(account))


@app.post("/categories", response_model=Category, status_code=status.HTTP_201_CREATED, tags=["Categories"])
async def create_category(request: CreateCategoryRequest) -> Category:
    try:
        return await ledger_service.create_category(request)
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.post("/entries", response_model=Entry, status_code=status.HTTP_201_CREATED, tags=["Entries"])
async def create_entry(request: CreateEntryRequest) -> Entry:
    try:
        return await ledger_service.create_entry(request)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.post("/entries/import", response_model=ImportResult, tags=["Entries"])
async def import_entries(request: ImportEntriesRequest) -> ImportResult:
    try:
        return await ledger_service.import_entries(request.rows)
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.get("/entries/select", response_model=list[EntrySelectItem], tags=["Entries"])
async def select_entries(
    search: Optional[str] = None,
    ids: Optional[list[UUID]] = Query(default=None),
    limit: Optional[int] = None,
) -> list[EntrySelectItem]:
    try:
        return await ledger_service.list_entries_for_select(search=search, ids=ids, limit=limit)
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/entries/{entry_id}", response_model=Entry, tags=["Entries"])
async def get_entry(entry_id: UUID) -> Entry:
    try:
        return await ledger_service.get_entry(entry_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")


@app.patch("/entries/{entry_id}", response_model=Entry, tags=["Entries"])
async def update_entry(entry_id: UUID, request: UpdateEntryRequest) -> Entry:
    try:
        return await ledger_service.update_entry(entry_id, request)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Entries"])
async def delete_entry(entry_id: UUID) -> Response:
    try:
        await ledger_service.delete_entry(entry_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")
    except StoreFailureError as e:
        raise _store_unavailable(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/transfers", response_model=Transfer, status_code=status.HTTP_201_CREATED, tags=["Transfers"])
async def create_transfer(request: CreateTransferRequest) -> Transfer:
    try:
        transfer_id = await ledger_service.create_transfer(request)
        return await ledger_service.get_transfer(transfer_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.get("/transfers/{transfer_id}", response_model=Transfer, tags=["Transfers"])
async def get_transfer(transfer_id: UUID) -> Transfer:
    try:
        return await ledger_service.get_transfer(transfer_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transfer {transfer_id} not found")


@app.patch("/transfers/{transfer_id}", response_model=Transfer, tags=["Transfers"])
async def update_transfer(transfer_id: UUID, request: UpdateTransferRequest) -> Transfer:
    try:
        return await ledger_service.update_transfer(transfer_id, request)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transfer {transfer_id} not found")
    except InvalidArgumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreFailureError as e:
        raise _store_unavailable(e)


@app.delete("/transfers/{transfer_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Transfers"])
async def delete_transfer(transfer_id: UUID) -> Response:
    try:
        await ledger_service.delete_transfer(transfer_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transfer {transfer_id} not found")
    except StoreFailureError as e:
        raise _store_unavailable(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
