import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from common.clock import Clock, utc_now
from .models import PaymentRecord, PaymentStatus, sources_for
from .store import PaymentStore

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    pass


class PaymentNotFoundError(PaymentServiceError):
    pass


class InvalidStateTransitionError(PaymentServiceError):
    pass


@dataclass
class TransitionResult:
    payment: PaymentRecord
    changed: bool


class PaymentStateMachine:
    """Single entry point for payment status changes.

    Each transition is a conditional write guarded by the states that may
    legally precede the target. A write that finds the record elsewhere
    (already terminal, already escalated) is reported as unchanged rather
    than raised, so late SMS deliveries, sweeps and double-clicks are no-ops.
    """

    def __init__(self, store: PaymentStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    def advance(
        self,
        payment_id: UUID,
        target: PaymentStatus,
        changes: Optional[dict] = None,
        only_from: Optional[Iterable[PaymentStatus]] = None,
    ) -> TransitionResult:
        """Move to ``target`` from any legal source, or only from ``only_from``."""
        sources = sources_for(target)
        if not sources:
            raise InvalidStateTransitionError(f"No transition leads to {target.value}")
        if only_from is not None:
            restricted = frozenset(only_from)
            if not restricted <= sources:
                raise InvalidStateTransitionError(
                    f"Cannot reach {target.value} from {sorted(s.value for s in restricted - sources)}"
                )
            sources = restricted

        fields = dict(changes or {})
        fields["status"] = target
        fields.setdefault("updated_at", self.clock())

        record, applied = self.store.compare_and_set(payment_id, sources, fields)
        if record is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")

        payment = PaymentRecord(**record)
        if applied:
            logger.info("Payment %s -> %s", payment_id, target.value)
        else:
            logger.info(
                "Payment %s is %s; transition to %s ignored", payment_id, payment.status.value, target.value
            )
        return TransitionResult(payment=payment, changed=applied)
