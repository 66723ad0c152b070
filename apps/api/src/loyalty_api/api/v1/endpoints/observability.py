from fastapi import APIRouter, Depends

from loyalty_api.api.dependencies.security import require_merchant_api_key
from loyalty_api.observability.loyalty import get_loyalty_store

router = APIRouter(prefix="/observability", tags=["observability"])


@router.get("/loyalty", dependencies=[Depends(require_merchant_api_key)])
async def loyalty_snapshot() -> dict[str, object]:
    return get_loyalty_store().snapshot().as_dict()
