"""ITAM Subscription API entry point.

Run from backend/:  python server.py   (or uvicorn server:app)
"""
import os
import uuid
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv(Path(__file__).parent / '.env')

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("itam.server")

from database import database  # noqa: E402  (needs .env loaded)
from routes import subscriptions, webhooks, organization  # noqa: E402
from services.billing_errors import BillingError  # noqa: E402
from services.plan_registry import get_plan_catalog  # noqa: E402

SERVICE_NAME = "ITAM Subscription API"
SERVICE_VERSION = "1.0.0"


def log_stripe_config():
    """Report Stripe mode and configured price ids at startup (never the keys)."""
    stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if stripe_key:
        logger.info("STRIPE_MODE=%s", "test" if stripe_key.startswith(("sk_test_", "rk_test_")) else "live")
    else:
        logger.error("No Stripe secret key configured; checkout and plan changes will fail")
    if not (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.error("STRIPE_WEBHOOK_SECRET is not set; every webhook will be rejected")

    for plan in get_plan_catalog().ordered_plans():
        logger.info("plan=%s max_assets=%s price=%s", plan.id.value, plan.max_assets, plan.external_price_ref or "-")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s starting", SERVICE_NAME)
    await database.connect()
    log_stripe_config()
    try:
        yield
    finally:
        await database.close()
        logger.info("%s stopped", SERVICE_NAME)


app = FastAPI(
    title=SERVICE_NAME,
    description="Organization plans, entitlements and Stripe billing for the IT asset manager",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    # Gates report pending cancellation through this header
    expose_headers=["X-Subscription-Warning"],
)

for module in (subscriptions, webhooks, organization):
    app.include_router(module.router)


@app.get("/api")
async def root():
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "status": "operational"}


@app.get("/api/health")
async def health_check():
    """Liveness plus a database ping; 200 either way so health checks can read the body."""
    db_state = "disconnected"
    db = database.get_db()
    if db is not None:
        try:
            await db.command("ping")
            db_state = "connected"
        except Exception as e:
            logger.warning(f"Health check ping failed: {e}")
            db_state = "unreachable"
    return {
        "status": "healthy" if db_state == "connected" else "degraded",
        "database": db_state,
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    # Routes translate these themselves; this catches any raised from dependencies
    logger.warning(f"Billing error on {request.url.path}: {exc.error_code}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = uuid.uuid4().hex
    errors = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    logger.warning("Validation failed request_id=%s path=%s errors=%s", request_id, request.url.path, errors)
    return JSONResponse(status_code=422, content={"detail": errors, "request_id": request_id})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8001")),
        reload=os.getenv("ENVIRONMENT") == "development",
    )
