from fastapi import APIRouter

from orderflow.api.v1.endpoints import (
    orders,
    payments,
    admin,
    sellers,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Orders (buyers, sellers, admins) ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Payment gateway callbacks ====================
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["Payments"]
)

# ==================== Admin queues, verification, settlement ====================
api_router.include_router(
    admin.router,
    prefix="/admin",
    tags=["Admin"]
)

# ==================== Seller payout accounts ====================
api_router.include_router(
    sellers.router,
    prefix="/sellers",
    tags=["Sellers"]
)
