import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from assist.api import router as assist_router
from assist.entry_parser import EntryDraftParser
from common.feed import ChangeFeed
from common.log import configure_logging
from ledger.api import router as ledger_router
from ledger.service import LedgerService
from ledger.store import LedgerStore
from payments.api import router as payments_router
from payments.notifier import PaymentRequestSender
from payments.override import ManualOverride
from payments.reconciler import AmbiguousMatchPolicy, SmsReconciler
from payments.service import PaymentService
from payments.state import PaymentStateMachine
from payments.store import PaymentStore
from payments.sweeper import TimeoutSweeper
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Container:
    feed: ChangeFeed
    ledger_store: LedgerStore
    ledger: LedgerService
    payment_store: PaymentStore
    state_machine: PaymentStateMachine
    payments: PaymentService
    reconciler: SmsReconciler
    sweeper: TimeoutSweeper
    override: ManualOverride
    parser: EntryDraftParser
    sender: PaymentRequestSender


def build_container(settings: Settings) -> Container:
    feed = ChangeFeed()
    ledger_store = LedgerStore(feed)
    ledger = LedgerService(ledger_store)
    payment_store = PaymentStore(feed)
    state_machine = PaymentStateMachine(payment_store)
    sender = PaymentRequestSender(
        api_key=settings.FAST2SMS_API_KEY,
        url=settings.FAST2SMS_URL,
        timeout=settings.SMS_TIMEOUT_SECONDS,
    )
    timeout = timedelta(seconds=settings.PAYMENT_TIMEOUT_SECONDS)
    return Container(
        feed=feed,
        ledger_store=ledger_store,
        ledger=ledger,
        payment_store=payment_store,
        state_machine=state_machine,
        payments=PaymentService(
            payment_store,
            state_machine,
            sender,
            payment_timeout=timeout,
            business_tz=timezone(timedelta(minutes=settings.BUSINESS_UTC_OFFSET_MINUTES)),
        ),
        reconciler=SmsReconciler(
            payment_store,
            state_machine,
            match_window=timedelta(seconds=settings.SMS_MATCH_WINDOW_SECONDS),
            tolerance=Decimal(settings.SMS_AMOUNT_TOLERANCE),
            ambiguous_policy=AmbiguousMatchPolicy(settings.AMBIGUOUS_MATCH_POLICY),
        ),
        sweeper=TimeoutSweeper(
            payment_store, state_machine, grace_period=timeout, interval=settings.SWEEP_INTERVAL_SECONDS
        ),
        override=ManualOverride(state_machine, ledger),
        parser=EntryDraftParser(api_key=settings.GROQ_API_KEY, model=settings.GROQ_MODEL),
        sender=sender,
    )


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.SWEEPER_ENABLED:
            container.sweeper.start()
        yield
        container.sweeper.stop()
        container.sender.close()
        container.feed.close()

    app = FastAPI(
        title="Merchant Mitra Ledger API",
        description="Khata ledger and UPI payment reconciliation for small merchants",
        version="1.0.0",
        root_path=settings.API_ROOT_PATH,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "merchant-ledger",
            "environment": settings.ENVIRONMENT,
            "sweeper_running": container.sweeper.running,
            "sms_configured": container.sender.is_configured,
            "ai_parsing": container.parser.is_available,
        }

    app.include_router(ledger_router)
    app.include_router(payments_router)
    app.include_router(assist_router)

    logger.info("API ready (%s)", settings.ENVIRONMENT)
    return app


app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.index:app", host="0.0.0.0", port=8000, reload=True)
