from contextlib import asynccontextmanager
from fastapi import FastAPI

from upsync.config import settings
from upsync.database import async_session, engine, init_db
from upsync.observability.logger import setup_logging, get_logger
from upsync.budget.tracker import BudgetTracker
from upsync.security.tokens import TokenProvider
from upsync.sync.store import TransactionStore
from upsync.sync.queue import OutboundQueueProcessor
from upsync.sync.state import SyncProgressStore
from upsync.sync.full_sync import FullSync
from upsync.core.scheduler import Scheduler
from upsync.api.routes import router as api_router

setup_logging()
log = get_logger("main")

# Shared application state, accessed by API routes
app_state = {}


def build_components(session_factory) -> dict:
    budget = BudgetTracker(session_factory)
    tokens = TokenProvider(session_factory)
    store = TransactionStore(session_factory)
    progress = SyncProgressStore(session_factory)
    queue = OutboundQueueProcessor(session_factory, budget, tokens, store)
    full_sync = FullSync(budget, tokens, store, progress)
    scheduler = Scheduler(queue, full_sync, budget)
    return {
        "session_factory": session_factory,
        "budget": budget,
        "tokens": tokens,
        "store": store,
        "progress": progress,
        "queue": queue,
        "full_sync": full_sync,
        "scheduler": scheduler,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("upsync_starting", environment=settings.environment)

    # 1. Create database tables
    await init_db()
    log.info("database_initialized")

    # 2. Wire components and share them with the routes
    app_state.update(build_components(async_session))
    await app_state["progress"].load_or_create()

    # 3. Start background jobs
    scheduler = app_state["scheduler"]
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        log.info("scheduler_disabled")

    log.info("upsync_ready")

    yield

    # Shutdown
    log.info("upsync_shutting_down")
    await scheduler.stop()
    await engine.dispose()


app = FastAPI(title="upsync", version="0.1.0", lifespan=lifespan)

app.include_router(api_router)
