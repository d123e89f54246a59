"""API routers for the fundledger backend."""
from fastapi import APIRouter

from . import admin, deposits, health, wallets, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(webhooks.router)
    api_router.include_router(deposits.router)
    api_router.include_router(wallets.router)
    api_router.include_router(admin.router)
    return api_router
