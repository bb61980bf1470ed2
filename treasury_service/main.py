"""
Treasury Service
Platform revenue ledger and automated weekly payouts to the business bank account
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Query, Request

from common.error_handling import add_error_handlers
from common.schemas import BankAccountUpdate, ManualPayoutRequest, RevenueEvent
from common.settings import settings
from common.tracing import tracing_middleware, treasury_tracer
from treasury_service.bank_accounts import BankAccountRegistry
from treasury_service.commission import price_subscription
from treasury_service.gateway import gateway_from_settings
from treasury_service.ingestion import RevenueIngestor, start_consumer_thread
from treasury_service.ledger import Ledger
from treasury_service.notifications import KafkaPayoutNotifier, PayoutNotifier
from treasury_service.scheduler import PayoutScheduler
from treasury_service.storage import store_from_settings

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

def build_ledger() -> Ledger:
    return Ledger(
        registry=BankAccountRegistry.from_settings(),
        gateway=gateway_from_settings(),
        store=store_from_settings(settings.storage_backend),
    )

def create_app(ledger: Optional[Ledger] = None, scheduler: Optional[PayoutScheduler] = None,
               notifier: Optional[PayoutNotifier] = None, autostart: Optional[bool] = None,
               consume_events: Optional[bool] = None) -> FastAPI:
    ledger = ledger or build_ledger()
    if notifier is None:
        notifier = KafkaPayoutNotifier() if settings.kafka_enabled else PayoutNotifier()
    scheduler = scheduler or PayoutScheduler(ledger, notifier)
    ingestor = RevenueIngestor(ledger)
    autostart = settings.scheduler_autostart if autostart is None else autostart
    consume_events = settings.kafka_enabled if consume_events is None else consume_events

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop_consumer = threading.Event()
        if autostart:
            scheduler.start()
        if consume_events:
            start_consumer_thread(ingestor, stop_consumer)
        yield
        stop_consumer.set()
        scheduler.stop()
        logger.info("Treasury service shut down")

    app = FastAPI(title="Treasury Service", version="1.0.0", lifespan=lifespan)
    app.state.ledger = ledger
    app.state.scheduler = scheduler
    app.state.ingestor = ingestor
    add_error_handlers(app)

    # Add tracing middleware
    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, treasury_tracer)

    router = APIRouter(prefix="/treasury")

    @router.get("/snapshot")
    async def get_snapshot():
        """Current treasury totals, pending balance and next scheduled payout"""
        return ledger.snapshot().to_dict()

    @router.get("/payouts/history")
    async def payout_history(limit: int = Query(20)):
        payouts = ledger.get_payout_history(limit)
        return {"payouts": [p.to_dict() for p in payouts], "count": len(payouts)}

    @router.post("/bank-account")
    async def update_bank_account(update: BankAccountUpdate):
        summary = ledger.registry.update(
            account_number=update.account_number,
            routing_number=update.routing_number,
            account_holder=update.account_holder,
            bank_name=update.bank_name,
            account_type=update.account_type,
        )
        return {"success": True, "bank_account": summary}

    @router.post("/payouts/manual-trigger")
    async def manual_trigger(body: Optional[ManualPayoutRequest] = None):
        """Pay out now: the whole pending balance, or `amount` of it"""
        amount = body.amount if body else None
        result = await scheduler.manual_trigger(amount)
        return {"success": True, **result.to_dict()}

    @router.post("/scheduler/start")
    async def start_scheduler():
        started = scheduler.start()
        return {"success": True, "started": started, "status": scheduler.get_status().to_dict()}

    @router.post("/scheduler/stop")
    async def stop_scheduler():
        stopped = scheduler.stop()
        return {"success": True, "stopped": stopped, "status": scheduler.get_status().to_dict()}

    @router.get("/scheduler/status")
    async def scheduler_status():
        return scheduler.get_status().to_dict()

    # sync route: FastAPI runs it in the threadpool, off the event loop
    @router.post("/revenue")
    def record_revenue(event: RevenueEvent):
        """Record a finalized payment; missing commission is computed at the platform rate"""
        result = ingestor.ingest(event)
        return {
            "success": True,
            "duplicate": result.duplicate,
            "entry": result.entry.to_dict(),
            "treasury": result.snapshot.to_dict(),
        }

    @router.get("/plans/{plan}/quote")
    async def plan_quote(plan: str):
        return price_subscription(plan).to_dict()

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"ok": True, "scheduler_running": scheduler.running}

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
