"""Worker wiring for the redemption expiry sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.services.loyalty.redemptions import RedemptionStateMachine

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class RedemptionExpiryWorker:
    """Periodically cancels redemptions whose token TTL has elapsed."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.redemption_sweep_interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Redemption expiry worker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Redemption expiry worker stopped")

    async def run_once(self, *, now: datetime | None = None) -> Dict[str, int]:
        session = await self._ensure_session()
        async with session as managed_session:
            try:
                expired = await RedemptionStateMachine(managed_session).sweep_expired(now)
                await managed_session.commit()
            except Exception:
                await managed_session.rollback()
                raise
        return {"expired": expired}

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - loop keeps running
                logger.exception("Redemption expiry iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session
