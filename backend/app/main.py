"""Haul Dispatch API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.errors import register_error_handlers
from app.core.logging import configure_logging, logger
from app.routers import capacity, dispatch, fleet, inventory, planning
from app.services.container import shutdown_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Haul Dispatch API starting",
        version="0.1.0",
        db_path=settings.dispatch_db_path,
        notifications_enabled=settings.notifications_enabled(),
    )
    yield
    # Shutdown
    shutdown_services()
    logger.info("Haul Dispatch API shutting down")


app = FastAPI(
    title="Haul Dispatch API",
    description="Delivery dispatch for bulk materials hauling - truck roster, slot booking, capacity and delivery lifecycle",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include routers
app.include_router(fleet.router)
app.include_router(dispatch.router)
app.include_router(capacity.router)
app.include_router(planning.router)
app.include_router(inventory.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Haul Dispatch API",
        "version": "0.1.0",
        "description": "Delivery dispatch for bulk materials hauling",
        "endpoints": {
            "fleet": "/fleet",
            "dispatch": "/dispatch",
            "capacity": "/capacity",
            "planning": "/planning",
            "inventory": "/inventory",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
