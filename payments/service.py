import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from uuid import UUID, uuid4

from common.clock import Clock, utc_now
from common.feed import Subscription
from common.money import ZERO
from .models import (
    PaymentStatus,
    PaymentRecord,
    TransactionType,
    TransactionSource,
    TransactionFilter,
    CreatePaymentRequest,
    CreatePaymentResponse,
    ManualTransactionRequest,
    DashboardStats,
    NotificationResult,
)
from .notifier import PaymentRequestSender
from .state import PaymentNotFoundError, PaymentStateMachine
from .store import PAYMENTS, PaymentStore
from .sweeper import DEFAULT_GRACE_PERIOD
from .upi import build_upi_link

logger = logging.getLogger(__name__)

OUTSTANDING_STATES = frozenset({PaymentStatus.WAITING_FOR_SMS, PaymentStatus.NEEDS_MANUAL_CONFIRMATION})


def _month_start(day: datetime, months_back: int = 0) -> datetime:
    month_index = day.year * 12 + day.month - 1 - months_back
    return day.replace(year=month_index // 12, month=month_index % 12 + 1, day=1)


class PaymentService:
    def __init__(
        self,
        store: Optional[PaymentStore] = None,
        state_machine: Optional[PaymentStateMachine] = None,
        sender: Optional[PaymentRequestSender] = None,
        payment_timeout: timedelta = DEFAULT_GRACE_PERIOD,
        clock: Clock = utc_now,
        business_tz: tzinfo = timezone.utc,
    ):
        self.store = store or PaymentStore()
        self.state_machine = state_machine or PaymentStateMachine(self.store, clock)
        self.sender = sender
        self.payment_timeout = payment_timeout
        self.clock = clock
        self.business_tz = business_tz

    def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResponse:
        now = self.clock()
        payment_id = uuid4()
        payment_data = {
            "id": payment_id,
            "merchant_id": request.merchant_id,
            "amount": request.amount,
            "note": request.note,
            "customer_name": request.customer_name,
            "customer_phone": request.customer_phone,
            "type": TransactionType.SALE,
            "source": TransactionSource.UPI_REQUEST,
            "status": PaymentStatus.CREATED,
            "created_at": now,
            "updated_at": now,
        }
        self.store.insert(payment_data)

        upi_link = None
        if request.upi_id:
            upi_link = build_upi_link(
                request.upi_id, request.amount, request.merchant_name, transaction_ref=str(payment_id)
            )

        # CREATED only lives until the link exists
        result = self.state_machine.advance(
            payment_id, PaymentStatus.WAITING_FOR_SMS, {"upi_link": upi_link, "updated_at": now}
        )
        logger.info("Payment %s of %s created for merchant %s", payment_id, request.amount, request.merchant_id)

        notification = None
        if request.send_sms:
            notification = self._send_request(request, payment_id)

        return CreatePaymentResponse(
            payment=result.payment,
            upi_link=upi_link,
            expires_at=now + self.payment_timeout,
            notification=notification,
            message="Payment created, waiting for confirmation",
        )

    def get_payment(self, payment_id: UUID) -> PaymentRecord:
        record = self.store.get(payment_id)
        if not record:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return PaymentRecord(**record)

    def list_payments(
        self,
        merchant_id: str,
        limit: int = 50,
        offset: int = 0,
        filters: Optional[TransactionFilter] = None,
    ) -> list[PaymentRecord]:
        """Newest first, narrowed by ``filters`` when given."""
        records = self.store.query(merchant_id=merchant_id)
        if filters is not None:
            records = [r for r in records if filters.matches(r)]
        records.reverse()
        return [PaymentRecord(**r) for r in records[offset:offset + limit]]

    def add_manual_transaction(self, merchant_id: str, request: ManualTransactionRequest) -> PaymentRecord:
        now = self.clock()
        record = self.store.insert({
            "id": uuid4(),
            "merchant_id": merchant_id,
            "amount": request.amount,
            "note": request.note,
            "customer_name": request.customer_name,
            "customer_phone": request.customer_phone,
            "type": request.type,
            "source": TransactionSource.MANUAL,
            "status": request.status,
            "created_at": now,
            "updated_at": now,
        })
        logger.info("Manual %s of %s recorded for merchant %s", request.type.value, request.amount, merchant_id)
        return PaymentRecord(**record)

    def search_transactions(self, merchant_id: str, text: str) -> list[PaymentRecord]:
        """Match ``text`` against amount, customer, phone, UTR and note, newest first."""
        needle = text.strip().lower()
        if not needle:
            return []
        found = []
        for record in reversed(self.store.query(merchant_id=merchant_id)):
            sms = record.get("sms_data") or {}
            haystack = (
                str(record["amount"]),
                record.get("customer_name", "").lower(),
                record.get("customer_phone", ""),
                (sms.get("utr") or "").lower(),
                record.get("note", "").lower(),
            )
            if any(needle in field for field in haystack):
                found.append(PaymentRecord(**record))
        return found

    def get_dashboard_stats(self, merchant_id: str) -> DashboardStats:
        now = self.clock()
        today = now.astimezone(self.business_tz).replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)
        month = _month_start(today)
        last_month = _month_start(today, months_back=1)

        stats = {
            "today_sales": ZERO, "yesterday_sales": ZERO, "month_revenue": ZERO, "last_month_revenue": ZERO,
            "today_expenses": ZERO, "month_expenses": ZERO, "pending_amount": ZERO,
            "today_transactions": 0, "yesterday_transactions": 0, "pending_payments": 0,
        }
        records = self.store.query(merchant_id=merchant_id)
        for record in records:
            status, amount, created = record["status"], record["amount"], record["created_at"]
            if status in OUTSTANDING_STATES:
                stats["pending_payments"] += 1
                stats["pending_amount"] += amount
            if status != PaymentStatus.SUCCESS:
                continue
            if record.get("type", TransactionType.SALE) == TransactionType.EXPENSE:
                if created >= today:
                    stats["today_expenses"] += amount
                if created >= month:
                    stats["month_expenses"] += amount
                continue
            if created >= today:
                stats["today_sales"] += amount
                stats["today_transactions"] += 1
            elif created >= yesterday:
                stats["yesterday_sales"] += amount
                stats["yesterday_transactions"] += 1
            if created >= month:
                stats["month_revenue"] += amount
            elif created >= last_month:
                stats["last_month_revenue"] += amount

        return DashboardStats(merchant_id=merchant_id, total_transactions=len(records), as_of=now, **stats)

    def subscribe_payment(self, payment_id: UUID) -> Subscription:
        return self.store.feed.subscribe(
            lambda event: event.collection == PAYMENTS and event.record.get("id") == payment_id
        )

    def _send_request(self, request: CreatePaymentRequest, payment_id: UUID) -> NotificationResult:
        if not request.customer_phone:
            return NotificationResult(success=False, error="Customer phone number is required")
        if not request.upi_id:
            return NotificationResult(success=False, error="Merchant UPI ID is required")
        if self.sender is None:
            return NotificationResult(success=False, error="SMS service not configured")

        sent = self.sender.send_payment_request(
            request.customer_phone,
            request.amount,
            request.merchant_name,
            request.upi_id,
            transaction_ref=str(payment_id),
        )
        if not sent.success:
            logger.warning("Payment request SMS for %s failed: %s", payment_id, sent.error)
        return NotificationResult(
            success=sent.success, message=sent.message, error=sent.error, request_id=sent.request_id
        )
