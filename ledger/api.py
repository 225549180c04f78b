from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Request, status

from common.errors import StoreUnavailableError

from .models import (
    CreateCustomerRequest, UpdateCustomerRequest, CreateEntryRequest, UpdateEntryRequest,
    Customer, LedgerEntry, EntryResponse, StatementResponse, KhataStats, RepairReport,
)
from .service import (
    LedgerService, CustomerNotFoundError, CustomerInactiveError, EntryNotFoundError,
)

router = APIRouter(tags=["Khata"])


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.container.ledger


@router.post(
    "/merchants/{merchant_id}/customers",
    response_model=Customer,
    status_code=status.HTTP_201_CREATED,
)
def add_customer(
    merchant_id: str, request: CreateCustomerRequest, service: LedgerService = Depends(get_ledger_service)
) -> Customer:
    return service.add_customer(merchant_id, request)


@router.get("/merchants/{merchant_id}/customers", response_model=list[Customer])
def list_customers(merchant_id: str, service: LedgerService = Depends(get_ledger_service)) -> list[Customer]:
    return service.list_customers(merchant_id)


@router.get("/merchants/{merchant_id}/khata/stats", response_model=KhataStats)
def get_khata_stats(merchant_id: str, service: LedgerService = Depends(get_ledger_service)) -> KhataStats:
    return service.get_khata_stats(merchant_id)


@router.get("/customers/{customer_id}", response_model=Customer)
def get_customer(customer_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> Customer:
    try:
        return service.get_customer(customer_id)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.patch("/customers/{customer_id}", response_model=Customer)
def update_customer(
    customer_id: UUID, request: UpdateCustomerRequest, service: LedgerService = Depends(get_ledger_service)
) -> Customer:
    try:
        return service.update_customer(customer_id, request)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.delete("/customers/{customer_id}", response_model=Customer)
def delete_customer(customer_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> Customer:
    try:
        return service.delete_customer(customer_id)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.get("/customers/{customer_id}/entries", response_model=list[LedgerEntry])
def list_entries(customer_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> list[LedgerEntry]:
    try:
        return service.list_entries(customer_id)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.post(
    "/customers/{customer_id}/entries",
    response_model=EntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_entry(
    customer_id: UUID, request: CreateEntryRequest, service: LedgerService = Depends(get_ledger_service)
) -> EntryResponse:
    try:
        return service.add_entry(customer_id, request)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")
    except CustomerInactiveError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/customers/{customer_id}/statement", response_model=StatementResponse)
def get_statement(customer_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> StatementResponse:
    try:
        return service.get_statement(customer_id)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.post("/customers/{customer_id}/repair", response_model=RepairReport, tags=["System"])
def repair_customer(customer_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> RepairReport:
    try:
        return service.repair_customer(customer_id)
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")


@router.patch("/entries/{entry_id}", response_model=EntryResponse)
def update_entry(
    entry_id: UUID, request: UpdateEntryRequest, service: LedgerService = Depends(get_ledger_service)
) -> EntryResponse:
    try:
        return service.update_entry(entry_id, request)
    except EntryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")
    except CustomerNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.delete("/entries/{entry_id}", response_model=EntryResponse)
def delete_entry(entry_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> EntryResponse:
    try:
        return service.delete_entry(entry_id)
    except EntryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")
    except CustomerNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/entries/{entry_id}/paid", response_model=LedgerEntry)
def mark_entry_paid(entry_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> LedgerEntry:
    try:
        return service.mark_entry_paid(entry_id)
    except EntryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Entry {entry_id} not found")
