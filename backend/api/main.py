"""
HomeOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from db.session import get_database

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    database = get_database()
    await database.initialize()
    await database.create_all()
    logger.info("HomeOps API starting up", version=settings.app_version)
    yield
    await database.shutdown()
    logger.info("HomeOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Household procurement recommendations and spending anomaly detection",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import tools

app.include_router(tools.router)
