"""Read-only reward and earn-program registry."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.reward import Reward, RewardProgram, RewardTypeEnum
from loyalty_api.schemas.reward_config import (
    ItemPointsParams,
    ItemRewardConfig,
    PointsPerDollarParams,
    PointsRewardConfig,
    parse_earn_params,
    parse_reward_config,
)
from loyalty_api.services.loyalty.errors import InvalidRewardConfigurationError, LoyaltyNotFoundError


@dataclass(slots=True)
class CatalogReward:
    """Reward row paired with its validated config."""

    reward: Reward
    config: PointsRewardConfig | ItemRewardConfig

    @property
    def is_item_based(self) -> bool:
        return isinstance(self.config, ItemRewardConfig)

    @property
    def cost_points(self) -> int:
        return self.config.cost_points if isinstance(self.config, PointsRewardConfig) else 0


@dataclass(slots=True)
class EarnProgram:
    program: RewardProgram
    params: PointsPerDollarParams | ItemPointsParams


class RewardCatalog:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_reward(self, reward_id: UUID) -> CatalogReward:
        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            raise LoyaltyNotFoundError("Reward not found", code="reward_not_found")
        return CatalogReward(reward=reward, config=parse_reward_config(reward.reward_type, reward.config_json))

    async def require_active_reward(self, reward_id: UUID, merchant_id: UUID) -> CatalogReward:
        """Return the reward when it exists, is active and belongs to the merchant."""

        reward = await self._db.get(Reward, reward_id)
        if reward is None or reward.merchant_id != merchant_id or not reward.is_active:
            raise LoyaltyNotFoundError("Reward not found or not enabled", code="reward_not_found")
        return CatalogReward(reward=reward, config=parse_reward_config(reward.reward_type, reward.config_json))

    async def list_item_rewards(self, merchant_id: UUID) -> list[CatalogReward]:
        """Active item-based rewards; rewards with a malformed config are skipped."""

        stmt = (
            select(Reward)
            .where(
                Reward.merchant_id == merchant_id,
                Reward.is_active.is_(True),
                Reward.reward_type == RewardTypeEnum.ITEM_BASED,
            )
            .order_by(Reward.created_at.asc(), Reward.id.asc())
        )
        result = await self._db.execute(stmt)
        rewards: list[CatalogReward] = []
        for reward in result.scalars().all():
            try:
                config = parse_reward_config(reward.reward_type, reward.config_json)
            except InvalidRewardConfigurationError as exc:
                logger.warning("Skipping reward with invalid config", reward_id=str(reward.id), error=str(exc))
                continue
            rewards.append(CatalogReward(reward=reward, config=config))
        return rewards

    async def enabled_programs(self, merchant_id: UUID) -> list[RewardProgram]:
        stmt = (
            select(RewardProgram)
            .where(RewardProgram.merchant_id == merchant_id, RewardProgram.enabled.is_(True))
            .order_by(RewardProgram.created_at.asc(), RewardProgram.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def earn_programs(self, merchant_id: UUID) -> list[EarnProgram]:
        """Enabled programs with validated params; raises on the first malformed one."""

        programs = await self.enabled_programs(merchant_id)
        return [
            EarnProgram(program=program, params=parse_earn_params(program.earn_type, program.earn_params))
            for program in programs
        ]


__all__ = ["CatalogReward", "EarnProgram", "RewardCatalog"]
