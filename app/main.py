import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_slot_recovery,  # noqa: F401
    models_stripe,  # noqa: F401
    models_twilio,  # noqa: F401
)
from .database import Base, SessionLocal, engine
from .domain.cancellation.router import router as manage_router
from .domain.slot_recovery.router import router as slot_recovery_router
from .routes.jobs import router as jobs_router
from .routes.stripe_webhooks import router as stripe_webhooks_router
from .routes.twilio import router as twilio_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    try:
        from .redis_client import get_redis_client

        get_redis_client()  # Connection test
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(f"Redis connection failed - slot locks and rate limiting unavailable: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Booking Platform API", version="1.0.0", lifespan=lifespan)

# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(jobs_router)
app.include_router(manage_router)
app.include_router(slot_recovery_router)
app.include_router(stripe_webhooks_router)
app.include_router(twilio_router)


@app.get("/health")
def health():
    """Database and Redis reachability for monitoring"""
    checks = {}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"connected": True}
    except Exception as e:
        checks["database"] = {"connected": False, "error": str(e)}
    finally:
        db.close()

    try:
        from .redis_client import get_redis_client

        start_time = time.time()
        get_redis_client().ping()
        checks["redis"] = {
            "connected": True,
            "response_time_ms": round((time.time() - start_time) * 1000, 2),
        }
    except Exception as e:
        checks["redis"] = {"connected": False, "error": str(e)}

    healthy = all(check["connected"] for check in checks.values())
    return {"status": "healthy" if healthy else "unhealthy", **checks}
