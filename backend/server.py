from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import subscriptions, reports, usage, admin_plans
from services.plan_registry import plan_registry

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


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Incident Portal API")
    await database.connect()

    # One-time catalog seeding; plan reads never write
    await plan_registry.ensure_defaults()

    gateway = os.getenv("PAYMENT_GATEWAY", "paystack").lower()
    logger.info("PAYMENT_GATEWAY = %s", gateway)
    if gateway == "paystack" and not os.getenv("PAYSTACK_SECRET_KEY"):
        logger.error("PAYSTACK_SECRET_KEY is not set. Premium checkout will be unavailable.")
    if gateway == "intasend" and not (os.getenv("INTASEND_SECRET_KEY") and os.getenv("INTASEND_PUBLIC_KEY")):
        logger.error("INTASEND_SECRET_KEY / INTASEND_PUBLIC_KEY are not set. Premium checkout will be unavailable.")
    if gateway == "intasend" and not os.getenv("INTASEND_WEBHOOK_SECRET"):
        logger.warning("INTASEND_WEBHOOK_SECRET is not set. All payment webhooks will be rejected.")

    yield

    # Shutdown
    logger.info("Shutting down Incident Portal API")
    await database.close()


app = FastAPI(
    title="Incident Portal API",
    description="Incident reporting portal - subscriptions, usage gating and payments",
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
)

# Include routers
app.include_router(subscriptions.router)
app.include_router(reports.router)
app.include_router(usage.router)
app.include_router(admin_plans.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Incident Portal API",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Validation error handler: field-level messages, never retried by the client automatically
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
        status_code=400,
        content={
            "message": "Validation failed",
            "errors": [
                {
                    "field": ".".join(str(part) for part in e.get("loc", ()) if part != "body"),
                    "message": e.get("msg"),
                }
                for e in errors
            ],
            "request_id": request_id,
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    content = {"detail": "Internal server error"}
    if os.getenv("ENVIRONMENT") == "development":
        content["error"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
