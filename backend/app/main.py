"""
Salla Merchant Integration Service
Main FastAPI application
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db, close_db
from app.routes import oauth, api

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Salla merchant service...")
    await init_db()
    logger.info("Salla merchant service started")

    yield

    # Shutdown
    logger.info("Shutting down Salla merchant service...")
    await close_db()
    logger.info("Salla merchant service stopped")


# Create FastAPI app
app = FastAPI(
    title="Salla Merchant App",
    description="Salla OAuth integration with encrypted token storage",
    version=settings.app_version,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "https://s.salla.sa",
        settings.app_url,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routes
app.include_router(oauth.router, prefix="/api/oauth", tags=["OAuth"])
app.include_router(api.router, prefix="/api", tags=["API"])


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "salla-merchant-app",
        "version": settings.app_version,
        "status": "running",
    }


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "salla-merchant-app",
        "version": settings.app_version,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
