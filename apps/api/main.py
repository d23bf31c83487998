"""
Premium Enhance - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import os

from config import settings, validate_runtime_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    enhance,
    credits,
    invite,
    billing,
)
from routers.rate_limit import close_redis_client
from services.runtime import build_services, set_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Premium Enhance API...")
    validate_runtime_settings()
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    if settings.STORE_BACKEND == "sql" and settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    services = build_services()
    set_services(services)
    recovered = await services.start()
    if recovered:
        print(f"♻️ Recovered {recovered} jobs from the last snapshot.")
    print(
        "📅 Job sweep loop enabled "
        f"(every {settings.JOB_SWEEP_INTERVAL_SECONDS:g}s, snapshot every {settings.JOB_SNAPSHOT_INTERVAL_SECONDS:g}s)."
    )
    yield
    # Shutdown
    await services.shutdown()
    await close_redis_client()
    set_services(None)
    print("👋 Shutting down API...")


app = FastAPI(
    title="Premium Enhance API",
    description="Credit-metered image and video enhancement jobs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(enhance.router, prefix="/enhance", tags=["Enhance"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(invite.router, prefix="/invite", tags=["Invite"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])

app.mount(
    settings.UPLOAD_URL_PREFIX,
    StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
    name="uploads",
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Premium Enhance API",
        "version": "0.1.0",
        "status": "running"
    }
