from datetime import datetime
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from common.errors import StoreUnavailableError
from ledger.service import CustomerNotFoundError, CustomerInactiveError
from .models import (
    CreatePaymentRequest, CreatePaymentResponse, PaymentRecord, PaymentStatus, ManualConfirmRequest,
    ManualTransactionRequest, TransactionFilter, TransactionType, DashboardStats,
    TransitionResponse, KhataPaymentRequest, KhataPaymentResponse, SmsWebhookPayload,
    SmsWebhookResponse, SweepResponse,
)
from .override import ManualOverride
from .reconciler import ReconcileOutcomeKind, SmsReconciler
from .service import PaymentService
from .state import PaymentNotFoundError
from .sweeper import TimeoutSweeper

router = APIRouter()

OUTCOME_MESSAGES = {
    ReconcileOutcomeKind.IGNORED_NON_CREDIT: "SMS ignored (not a credit message)",
    ReconcileOutcomeKind.IGNORED_UNPARSEABLE: "SMS ignored (no amount found)",
    ReconcileOutcomeKind.NO_MATCH: "No matching payment found",
    ReconcileOutcomeKind.AMBIGUOUS: "Several payments match; confirm manually",
    ReconcileOutcomeKind.MATCHED: "Payment verified",
}


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.container.payments


def get_reconciler(request: Request) -> SmsReconciler:
    return request.app.state.container.reconciler


def get_override(request: Request) -> ManualOverride:
    return request.app.state.container.override


def get_sweeper(request: Request) -> TimeoutSweeper:
    return request.app.state.container.sweeper


@router.post(
    "/payments",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
)
def create_payment(
    request: CreatePaymentRequest, service: PaymentService = Depends(get_payment_service)
) -> CreatePaymentResponse:
    return service.create_payment(request)


@router.get("/payments/{payment_id}", response_model=PaymentRecord, tags=["Payments"])
def get_payment(payment_id: UUID, service: PaymentService = Depends(get_payment_service)) -> PaymentRecord:
    try:
        return service.get_payment(payment_id)
    except PaymentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payment {payment_id} not found")


@router.get("/merchants/{merchant_id}/payments", response_model=list[PaymentRecord], tags=["Payments"])
def list_payments(
    merchant_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    txn_type: Optional[TransactionType] = Query(default=None, alias="type"),
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    min_amount: Optional[str] = Query(default=None),
    max_amount: Optional[str] = Query(default=None),
    service: PaymentService = Depends(get_payment_service),
) -> list[PaymentRecord]:
    try:
        filters = TransactionFilter(
            type=txn_type,
            status=status_filter,
            start=start,
            end=end,
            min_amount=min_amount,
            max_amount=max_amount,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return service.list_payments(merchant_id, limit, offset, filters)


@router.post(
    "/merchants/{merchant_id}/transactions",
    response_model=PaymentRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
)
def add_transaction(
    merchant_id: str, request: ManualTransactionRequest, service: PaymentService = Depends(get_payment_service)
) -> PaymentRecord:
    return service.add_manual_transaction(merchant_id, request)


@router.get("/merchants/{merchant_id}/transactions/search", response_model=list[PaymentRecord], tags=["Payments"])
def search_transactions(
    merchant_id: str,
    q: str = Query(..., min_length=1),
    service: PaymentService = Depends(get_payment_service),
) -> list[PaymentRecord]:
    return service.search_transactions(merchant_id, q)


@router.get("/merchants/{merchant_id}/dashboard", response_model=DashboardStats, tags=["Payments"])
def dashboard_stats(merchant_id: str, service: PaymentService = Depends(get_payment_service)) -> DashboardStats:
    return service.get_dashboard_stats(merchant_id)


@router.post("/payments/{payment_id}/confirm", response_model=TransitionResponse, tags=["Payments"])
def confirm_payment(
    payment_id: UUID, request: ManualConfirmRequest, override: ManualOverride = Depends(get_override)
) -> TransitionResponse:
    try:
        result = override.confirm(payment_id, request.accepted)
    except PaymentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payment {payment_id} not found")
    if result.changed:
        message = "Payment confirmed" if request.accepted else "Payment marked as failed"
    else:
        message = f"Payment already {result.payment.status.value}; nothing changed"
    return TransitionResponse(payment=result.payment, changed=result.changed, message=message)


@router.post("/payments/sweep", response_model=SweepResponse, tags=["System"])
def sweep_timeouts(sweeper: TimeoutSweeper = Depends(get_sweeper)) -> SweepResponse:
    try:
        result = sweeper.run_once()
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return SweepResponse(
        escalated=result.escalated, skipped=result.skipped, failed=result.failed, ran_at=result.ran_at
    )


@router.post("/sms-webhook", response_model=SmsWebhookResponse, tags=["SMS"])
def sms_webhook(
    payload: SmsWebhookPayload,
    merchant_id: Optional[str] = Query(default=None, alias="merchantId"),
    reconciler: SmsReconciler = Depends(get_reconciler),
) -> SmsWebhookResponse:
    if not payload.text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No SMS text provided")
    merchant = payload.merchant_id or merchant_id
    if not merchant:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Merchant ID required")

    try:
        outcome = reconciler.reconcile(merchant, payload.text, payload.timestamp)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return SmsWebhookResponse(
        outcome=outcome.kind.value,
        success=outcome.matched,
        message=OUTCOME_MESSAGES[outcome.kind],
        payment_id=outcome.payment_id,
        candidates=outcome.candidates,
        amount=outcome.sms.amount if outcome.sms else None,
        utr=outcome.sms.utr if outcome.sms else None,
        duplicate=outcome.duplicate,
    )


@router.post(
    "/customers/{customer_id}/payments",
    response_model=KhataPaymentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Khata"],
)
def record_khata_payment(
    customer_id: UUID, request: KhataPaymentRequest, override: ManualOverride = Depends(get_override)
) -> KhataPaymentResponse:
    try:
        response, upi_link = override.record_khata_payment(
            customer_id,
            request.amount,
            note=request.note,
            mode=request.mode,
            upi_id=request.upi_id,
            merchant_name=request.merchant_name,
        )
    except CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Customer {customer_id} not found")
    except CustomerInactiveError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return KhataPaymentResponse(
        entry=response.entry, customer=response.customer, upi_link=upi_link, message="Payment recorded"
    )
