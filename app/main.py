import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from starlette.middleware.base import BaseHTTPMiddleware
from app.config import settings
from app.database import engine, Base, SessionLocal
from app.routes import auth, book, loan, noc, messaging
from app.services.errors import LibraryError
from app.services.loan_ledger import LoanLedger
from app.services.mqtt_service import mqtt_service

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log incoming requests for debugging."""
    async def dispatch(self, request: Request, call_next):
        auth_header = request.headers.get("Authorization")
        client_ip = request.client.host if request.client else "unknown"
        logger.info(f"{request.method} {request.url.path} - IP: {client_ip} - Auth: {'Present' if auth_header else 'Missing'}")
        if auth_header:
            # Only a prefix; never log the full token
            logger.debug(f"Token preview: {auth_header[:20]}...")

        response = await call_next(request)
        return response

Base.metadata.create_all(bind=engine)


def run_overdue_sweep() -> int:
    db = SessionLocal()
    try:
        return LoanLedger(db).mark_overdue()
    finally:
        db.close()


async def overdue_sweep_loop(interval: float):
    """Flip past-due loans to overdue every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_overdue_sweep)
        except Exception as e:
            # Idempotent, so the next tick simply retries
            logger.error(f"Overdue sweep failed, retrying in {interval}s: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the MQTT notifier and the overdue sweep with FastAPI."""
    logger.info("Starting MQTT service...")
    mqtt_service.connect()
    sweep = asyncio.create_task(overdue_sweep_loop(settings.overdue_sweep_interval_seconds))

    yield

    sweep.cancel()
    try:
        await sweep
    except asyncio.CancelledError:
        pass
    logger.info("Stopping MQTT service...")
    mqtt_service.disconnect()


app = FastAPI(
    title="College Library & Messaging API",
    description="Library loans, fines, clearance/NOC and realtime messaging for the college backend",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Logging middleware (last, to log everything)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(auth.router)
app.include_router(book.router)
app.include_router(loan.router)
app.include_router(noc.router)
app.include_router(noc.registration_router)
app.include_router(messaging.router)
app.include_router(messaging.ws_router)

@app.get("/")
async def root():
    return {"message": "College Library & Messaging API", "version": "1.0.0"}

@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "mqtt": mqtt_service.is_running()}

if __name__ == "__main__":
    import uvicorn
    ssl_options = {}
    if settings.ssl_enabled:
        ssl_options = {"ssl_certfile": settings.ssl_certfile, "ssl_keyfile": settings.ssl_keyfile}
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        **ssl_options
    )
