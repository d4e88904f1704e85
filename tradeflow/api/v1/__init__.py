"""
API v1 routers.
"""

from fastapi import APIRouter

from tradeflow.api.v1.orders import router as orders_router
from tradeflow.api.v1.payments import router as payments_router

api_router = APIRouter()
api_router.include_router(orders_router)
api_router.include_router(payments_router)

__all__ = ["api_router", "orders_router", "payments_router"]
