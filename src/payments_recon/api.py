from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .auth import limiter
from .database import DatabaseManager
from .reconciliation.api import router as reconciliation_router
from .reconciliation.service import create_reconciliation_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Engine, store, guard and ledgers share one database manager
    db_manager = DatabaseManager()
    await db_manager.initialize(create_tables=True)
    service = create_reconciliation_service(db_manager.session_factory)
    app.state.db_manager = db_manager
    app.state.reconciliation_service = service
    try:
        yield
    finally:
        await service.shutdown()
        await db_manager.shutdown()


app = FastAPI(title="Payments Reconciliation API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(reconciliation_router)


@app.get("/health")
async def health():
    return {"status": "healthy"}
