"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shopmeter.api import billing, credits, usage
from shopmeter.core.config import settings
from shopmeter.core.errors import BillingError
from shopmeter.core.logging import setup_logging
from shopmeter.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from shopmeter.db.session import SessionLocal, engine, init_db
from shopmeter.services.catalog_service import ensure_default_catalog
from shopmeter.services.email_service import EmailServiceError, validate_email_config

setup_logging()
logger = logging.getLogger(__name__)

DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def seed_catalog():
    """Insert the default plans and packages that are missing"""
    db = SessionLocal()
    try:
        created = ensure_default_catalog(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    if created["plans"] or created["packages"]:
        logger.info(f"Seeded catalog: {created['plans']} plan(s), {created['packages']} package(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if initialize_otel():
        instrument_sqlalchemy(engine)
        logger.info(f"Tracing to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")

    try:
        init_db()
        seed_catalog()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    logger.info("Database ready")

    email_ready, problem = validate_email_config()
    if not email_ready:
        logger.warning(f"Billing emails are not configured: {problem}")

    sweeper = None
    if settings.CYCLE_SWEEP_ENABLED:
        from shopmeter.tasks.cycle_sweeper import cycle_sweep_task
        sweeper = asyncio.create_task(cycle_sweep_task())
        logger.info(f"Cycle sweep every {settings.CYCLE_SWEEP_INTERVAL_SECONDS}s")

    yield

    if sweeper is not None:
        sweeper.cancel()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Shopmeter",
    description="Subscription billing and usage metering for shops",
    version="1.0.0",
    lifespan=lifespan
)

if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL] + (DEV_ORIGINS if settings.ENVIRONMENT == "development" else []),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

for module in (billing, credits, usage):
    app.include_router(module.router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Known billing failures keep their code and status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc}", exc_info=exc)
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(EmailServiceError)
async def email_error_handler(request: Request, exc: EmailServiceError):
    # Billing state is already committed; only the email failed
    return JSONResponse(
        status_code=502,
        content={"error": exc.code, "message": "The change was saved but the notification email could not be sent"}
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR", "message": "Internal server error"})


@app.get("/metrics")
def metrics_endpoint():
    """Prometheus scrape endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
