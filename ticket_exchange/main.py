import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ticket_exchange import __version__
from ticket_exchange.admin import router as admin_router
from ticket_exchange.admin.maintenance_service import SweepScheduler
from ticket_exchange.analytics import router as analytics_router
from ticket_exchange.auth import router as auth_router
from ticket_exchange.cash import router as cash_router
from ticket_exchange.config import settings
from ticket_exchange.database import init_db
from ticket_exchange.events import router as events_router
from ticket_exchange.exceptions import MarketplaceError
from ticket_exchange.handshake import router as handshake_router
from ticket_exchange.logging_config import bind_request_id, current_request_id, reset_request_id, setup_logging
from ticket_exchange.offers import router as offers_router
from ticket_exchange.payments import router as payments_router
from ticket_exchange.resale import router as resale_router
from ticket_exchange.subscriptions import router as subscriptions_router
from ticket_exchange.tickets import router as tickets_router
from ticket_exchange.wallet import router as wallet_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.LOG_FILE)
    init_db()
    scheduler = SweepScheduler() if settings.SWEEPER_ENABLED else None
    if scheduler:
        scheduler.start()
    logger.info("%s started (%s)", settings.PROJECT_NAME, settings.ENVIRONMENT)
    yield
    if scheduler:
        scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    description="Event ticketing and resale marketplace API",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    token = bind_request_id(request.headers.get("X-Request-ID"))
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = current_request_id()
        return response
    finally:
        reset_request_id(token)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(auth_router.router, prefix=f"{settings.API_V1_STR}/auth", tags=["Identity"])
app.include_router(events_router.router, prefix=f"{settings.API_V1_STR}/events", tags=["Events & Staff"])
app.include_router(tickets_router.router, prefix=f"{settings.API_V1_STR}/tickets", tags=["Tickets"])
app.include_router(payments_router.router, prefix=f"{settings.API_V1_STR}/payments", tags=["Payments"])
app.include_router(resale_router.router, prefix=f"{settings.API_V1_STR}/resale", tags=["Resale"])
app.include_router(offers_router.router, prefix=f"{settings.API_V1_STR}/offers", tags=["Favor Offers"])
app.include_router(handshake_router.router, prefix=f"{settings.API_V1_STR}/handshake", tags=["Proximity Payments"])
app.include_router(cash_router.router, prefix=f"{settings.API_V1_STR}/cash", tags=["Cash Sales"])
app.include_router(wallet_router.router, prefix=f"{settings.API_V1_STR}/wallet", tags=["Seller Balances"])
app.include_router(analytics_router.router, prefix=f"{settings.API_V1_STR}/analytics", tags=["Analytics"])
app.include_router(subscriptions_router.router, prefix=f"{settings.API_V1_STR}/subscriptions", tags=["Subscriptions"])
app.include_router(admin_router.router, prefix=f"{settings.API_V1_STR}/admin", tags=["Admin"])


@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": "Ticket Exchange API",
        "version": __version__,
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
