from fastapi import APIRouter

from .endpoints import balances, observability, redemptions, webhooks

router = APIRouter()
router.include_router(webhooks.router)
router.include_router(redemptions.router)
router.include_router(balances.router)
router.include_router(observability.router)

__all__ = ["router"]
