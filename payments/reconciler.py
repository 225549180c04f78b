import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from common.clock import Clock, utc_now
from .models import PaymentRecord, PaymentStatus, VerificationMethod
from .sms import ParsedSms, SmsKind, parse_sms
from .state import PaymentStateMachine
from .store import PaymentStore

logger = logging.getLogger(__name__)

DEFAULT_MATCH_WINDOW = timedelta(minutes=5)
DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")


class ReconcileOutcomeKind(str, Enum):
    IGNORED_NON_CREDIT = "ignored-non-credit"
    IGNORED_UNPARSEABLE = "ignored-unparseable"
    NO_MATCH = "no-match"
    AMBIGUOUS = "ambiguous"
    MATCHED = "matched"


class AmbiguousMatchPolicy(str, Enum):
    MANUAL_REVIEW = "manual_review"
    EARLIEST = "earliest"


@dataclass
class ReconcileOutcome:
    kind: ReconcileOutcomeKind
    payment_id: Optional[UUID] = None
    candidates: list[UUID] = field(default_factory=list)
    sms: Optional[ParsedSms] = None
    duplicate: bool = False

    @property
    def matched(self) -> bool:
        return self.kind == ReconcileOutcomeKind.MATCHED


class SmsReconciler:
    """Match an inbound credit SMS to the one payment it confirms.

    Only WAITING_FOR_SMS payments of the merchant created within
    ``match_window`` of the delivery time are candidates, and only those
    whose amount is within ``tolerance`` of the SMS amount. Candidates are
    ordered by (created_at, id). With several candidates the default policy
    confirms nothing and leaves them for the merchant.
    """

    def __init__(
        self,
        store: PaymentStore,
        state_machine: PaymentStateMachine,
        match_window: timedelta = DEFAULT_MATCH_WINDOW,
        tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
        ambiguous_policy: AmbiguousMatchPolicy = AmbiguousMatchPolicy.MANUAL_REVIEW,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.state_machine = state_machine
        self.match_window = match_window
        self.tolerance = tolerance
        self.ambiguous_policy = ambiguous_policy
        self.clock = clock

    def reconcile(self, merchant_id: str, sms_text: str, delivered_at: Optional[datetime] = None) -> ReconcileOutcome:
        delivered_at = delivered_at or self.clock()
        parsed = parse_sms(sms_text, delivered_at)

        if parsed.kind == SmsKind.NON_CREDIT:
            logger.info("SMS for merchant %s ignored: not a credit message", merchant_id)
            return ReconcileOutcome(ReconcileOutcomeKind.IGNORED_NON_CREDIT)
        if parsed.kind == SmsKind.UNPARSEABLE:
            logger.info("SMS for merchant %s ignored: no amount found", merchant_id)
            return ReconcileOutcome(ReconcileOutcomeKind.IGNORED_UNPARSEABLE)

        sms = parsed.sms
        if sms.utr:
            already = self.store.find_by_utr(merchant_id, sms.utr)
            if already is not None:
                logger.info("SMS with UTR %s already reconciled to payment %s", sms.utr, already["id"])
                return ReconcileOutcome(
                    ReconcileOutcomeKind.MATCHED, payment_id=already["id"], sms=sms, duplicate=True
                )

        candidates = self.find_candidates(merchant_id, sms.amount, delivered_at)
        candidate_ids = [c.id for c in candidates]

        if not candidates:
            logger.info("No waiting payment of %s for merchant %s near %s", sms.amount, merchant_id, delivered_at)
            return ReconcileOutcome(ReconcileOutcomeKind.NO_MATCH, sms=sms)

        if len(candidates) > 1 and self.ambiguous_policy == AmbiguousMatchPolicy.MANUAL_REVIEW:
            logger.warning(
                "SMS amount %s matches %d payments for merchant %s; leaving for manual review",
                sms.amount, len(candidates), merchant_id,
            )
            return ReconcileOutcome(ReconcileOutcomeKind.AMBIGUOUS, candidates=candidate_ids, sms=sms)

        for candidate in candidates:
            result = self.state_machine.advance(
                candidate.id,
                PaymentStatus.SUCCESS,
                {
                    "verified_at": self.clock(),
                    "verification_method": VerificationMethod.SMS,
                    "sms_data": {
                        "amount": sms.amount,
                        "utr": sms.utr,
                        "raw_sms": sms.raw_sms,
                        "timestamp": sms.timestamp,
                    },
                },
                only_from=[PaymentStatus.WAITING_FOR_SMS],
            )
            if result.changed:
                return ReconcileOutcome(
                    ReconcileOutcomeKind.MATCHED, payment_id=candidate.id, candidates=candidate_ids, sms=sms
                )
            # lost a race with the sweeper or a manual action, try the next one

        return ReconcileOutcome(ReconcileOutcomeKind.NO_MATCH, candidates=candidate_ids, sms=sms)

    def find_candidates(self, merchant_id: str, amount: Decimal, delivered_at: datetime) -> list[PaymentRecord]:
        records = self.store.query(
            merchant_id=merchant_id,
            status=PaymentStatus.WAITING_FOR_SMS,
            created_from=delivered_at - self.match_window,
            created_to=delivered_at + self.match_window,
        )
        return [
            PaymentRecord(**r) for r in records
            if abs(r["amount"] - amount) <= self.tolerance
        ]
