from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.db.session import get_session
from loyalty_api.models.merchant import Merchant


async def require_merchant_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    if not settings.merchant_api_key:
        return

    if x_api_key != settings.merchant_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


async def require_merchant(
    merchant_id: str | None = Header(None, alias="X-Merchant-Id"),
    _: None = Depends(require_merchant_api_key),
    db: AsyncSession = Depends(get_session),
) -> Merchant:
    """Resolve the merchant terminal calling verify/confirm."""

    if not merchant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing merchant context")
    try:
        merchant_uuid = UUID(merchant_id)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid merchant identifier") from error

    merchant = await db.get(Merchant, merchant_uuid)
    if merchant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Merchant not found")
    return merchant
