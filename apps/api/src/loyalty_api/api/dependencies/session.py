"""Session-aware dependencies for customer loyalty APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.session import get_session
from loyalty_api.models.merchant import Customer


async def require_customer_session(
    session_customer: str | None = Header(None, alias="X-Session-Customer"),
    db: AsyncSession = Depends(get_session),
) -> Customer:
    """Resolve the authenticated customer from forwarded session headers."""

    if not session_customer:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session customer context",
        )

    try:
        customer_id = UUID(session_customer)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session customer identifier",
        ) from error

    stmt = select(Customer).where(Customer.id == customer_id)
    result = await db.execute(stmt)
    customer = result.scalar_one_or_none()
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session customer not found",
        )

    return customer
