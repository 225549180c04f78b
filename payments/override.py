import logging
from typing import Optional
from uuid import UUID

from common.clock import Clock, utc_now
from common.money import parse_amount
from ledger.models import CreateEntryRequest, EntryType, EntryResponse
from ledger.service import LedgerService
from .models import PaymentMode, PaymentStatus, VerificationMethod
from .state import PaymentStateMachine, TransitionResult
from .upi import build_upi_link

logger = logging.getLogger(__name__)


class ManualOverride:
    """Merchant-driven resolution.

    ``confirm`` settles a collection attempt the SMS path could not verify.
    ``record_khata_payment`` is the other collection path: money received
    against a customer's khata becomes a DEBIT entry and never a
    PaymentRecord.
    """

    def __init__(self, state_machine: PaymentStateMachine, ledger: LedgerService, clock: Clock = utc_now):
        self.state_machine = state_machine
        self.ledger = ledger
        self.clock = clock

    def confirm(self, payment_id: UUID, accepted: bool) -> TransitionResult:
        target = PaymentStatus.SUCCESS if accepted else PaymentStatus.FAILED
        now = self.clock()
        result = self.state_machine.advance(
            payment_id,
            target,
            {
                "verified_at": now,
                "verification_method": VerificationMethod.MANUAL,
                "manually_confirmed": accepted,
                "updated_at": now,
            },
            only_from=[PaymentStatus.WAITING_FOR_SMS, PaymentStatus.NEEDS_MANUAL_CONFIRMATION],
        )
        if result.changed:
            logger.info("Payment %s manually %s", payment_id, "confirmed" if accepted else "rejected")
        return result

    def record_khata_payment(
        self,
        customer_id: UUID,
        amount,
        note: str = "",
        mode: PaymentMode = PaymentMode.CASH,
        upi_id: Optional[str] = None,
        merchant_name: str = "Merchant",
    ) -> tuple[EntryResponse, Optional[str]]:
        """Record money received from a khata customer.

        Returns the ledger mutation and, for UPI collection with a known
        merchant VPA, the deep link to show the payer.
        """
        amount = parse_amount(amount, allow_zero=False)
        label = "Cash" if mode == PaymentMode.CASH else "UPI"
        response = self.ledger.add_entry(
            customer_id,
            CreateEntryRequest(
                type=EntryType.DEBIT,
                amount=amount,
                description=f"Payment received – {label}",
                note=note or "",
            ),
        )
        upi_link = None
        if mode == PaymentMode.UPI and upi_id:
            upi_link = build_upi_link(upi_id, amount, merchant_name, transaction_ref=f"khata-{customer_id}")
        return response, upi_link
