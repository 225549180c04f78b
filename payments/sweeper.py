import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from common.clock import Clock, utc_now
from .models import PaymentStatus
from .state import PaymentStateMachine
from .store import PaymentStore

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = timedelta(seconds=120)
DEFAULT_INTERVAL_SECONDS = 30.0


@dataclass
class SweepResult:
    ran_at: datetime
    escalated: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)


class TimeoutSweeper:
    """Escalate payments nobody confirmed in time to manual confirmation.

    ``run_once`` is one sweep. ``start``/``stop`` run it on a daemon thread
    every ``interval`` seconds; the owner of the process decides when.
    """

    def __init__(
        self,
        store: PaymentStore,
        state_machine: PaymentStateMachine,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.state_machine = state_machine
        self.grace_period = grace_period
        self.interval = interval
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.clock()
        result = SweepResult(ran_at=now)
        overdue = self.store.query(status=PaymentStatus.WAITING_FOR_SMS, created_to=now - self.grace_period)

        for record in overdue:
            payment_id = record["id"]
            try:
                transition = self.state_machine.advance(
                    payment_id,
                    PaymentStatus.NEEDS_MANUAL_CONFIRMATION,
                    {"timeout_at": now, "updated_at": now},
                    only_from=[PaymentStatus.WAITING_FOR_SMS],
                )
            except Exception:
                logger.exception("Could not escalate payment %s, retrying next sweep", payment_id)
                result.failed.append(payment_id)
                continue
            if transition.changed:
                result.escalated.append(payment_id)
            else:
                result.skipped.append(payment_id)

        if result.escalated:
            logger.info("Marked %d payments as needing manual confirmation", len(result.escalated))
        return result

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="payment-timeout-sweeper", daemon=True)
        self._thread.start()
        logger.info("Timeout sweeper running every %ss (grace %s)", self.interval, self.grace_period)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Timeout sweep failed")
