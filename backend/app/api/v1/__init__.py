"""API v1 router configuration."""

from fastapi import APIRouter

from app.api.v1 import admin, payments, subscriptions

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
