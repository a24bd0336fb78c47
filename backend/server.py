from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import portal, subscriptions, webhooks

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Subscription & Entitlement API")
    if os.getenv("PYTEST_RUNNING") != "1":
        await database.connect()

    # Stripe config: log mode (test/live) from key prefix and the price IDs in use (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.warning("STRIPE_SECRET_KEY is not set. Subscriptions will be recorded without a payment provider.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
    from services.plan_catalog import plan_catalog
    for plan in plan_catalog.list_plans():
        logger.info("Plan %s price_id=%s trial_days=%s", plan.id, plan.provider_price_id, plan.trial_days)

    yield

    # Shutdown
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Subscription & Entitlement API",
    description="Subscription lifecycle and entitlement enforcement for the legal assistance portal",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Redirect", "Retry-After"],
)

# Include routers
app.include_router(subscriptions.router)
app.include_router(portal.router)
app.include_router(webhooks.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + field errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors], "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
