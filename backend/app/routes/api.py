"""
API Routes for the Salla merchant app frontend
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.middleware.auth import AuthContext, require_salla_token
from app.routes.oauth import get_salla_client
from app.services.salla_client import SallaAPIError, SallaClient
from app.services.token_manager import (
    ProviderTransportError,
    ReauthorizationRequired,
    SallaTokenManager,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Store Endpoints ==============


@router.get("/store")
async def get_store_info(
    auth: AuthContext = Depends(require_salla_token),
    db: AsyncSession = Depends(get_db),
    client: SallaClient = Depends(get_salla_client),
):
    """Get the merchant's store information from the Salla Admin API."""
    manager = await SallaTokenManager(db, client=client).for_user(auth.user)

    try:
        response = await manager.request("GET", "store/info")
    except ReauthorizationRequired as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": str(e), "redirect": settings.reauthorize_url},
            headers={"WWW-Authenticate": "Bearer"},
        )
    except ProviderTransportError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"error": str(e)})
    except SallaAPIError as e:
        logger.error(f"Failed to fetch store info: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"error": e.message})

    return {"message": "success", "data": response.get("data", response)}


# ============== Health Endpoint ==============


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "salla-merchant-app",
    }
