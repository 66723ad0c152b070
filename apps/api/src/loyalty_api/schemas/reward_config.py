"""Closed shapes for reward program earn params and reward configs."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from loyalty_api.models.reward import EarnTypeEnum, RewardTypeEnum
from loyalty_api.services.loyalty.errors import InvalidRewardConfigurationError


class PointsPerDollarParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    earn_type: Literal["POINTS_PER_DOLLAR"] = Field("POINTS_PER_DOLLAR", alias="earnType")
    version: Literal[1] = 1
    points_per_dollar: int = Field(..., gt=0, alias="pointsPerDollar")
    rounding: str = "FLOOR"
    min_subtotal_cents: int = Field(0, ge=0, alias="minSubtotalCents")


class ItemPointsRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    catalog_object_id: str = Field(
        ...,
        min_length=1,
        alias="catalogObjectId",
        validation_alias=AliasChoices("catalogObjectId", "squareCatalogObjectId", "catalog_object_id"),
    )
    points: int = Field(..., gt=0)


class ItemPointsParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    earn_type: Literal["ITEM_POINTS"] = Field("ITEM_POINTS", alias="earnType")
    version: Literal[1] = 1
    items: list[ItemPointsRule] = Field(..., min_length=1)


EarnParams = Annotated[
    Union[PointsPerDollarParams, ItemPointsParams],
    Field(discriminator="earn_type"),
]


class PointsRewardConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    reward_type: Literal["POINTS_BASED"] = Field("POINTS_BASED", alias="rewardType")
    cost_points: int = Field(..., gt=0, alias="costPoints")


class ItemRewardConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    reward_type: Literal["ITEM_BASED"] = Field("ITEM_BASED", alias="rewardType")
    item_name: str = Field(..., min_length=1, alias="itemName")
    item_count: int = Field(..., gt=0, alias="itemCount")
    catalog_object_id: str | None = Field(None, alias="catalogObjectId")


RewardConfig = Annotated[
    Union[PointsRewardConfig, ItemRewardConfig],
    Field(discriminator="reward_type"),
]

_earn_params_adapter: TypeAdapter[PointsPerDollarParams | ItemPointsParams] = TypeAdapter(EarnParams)
_reward_config_adapter: TypeAdapter[PointsRewardConfig | ItemRewardConfig] = TypeAdapter(RewardConfig)


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def parse_earn_params(
    earn_type: EarnTypeEnum | str, params: dict[str, Any] | None
) -> PointsPerDollarParams | ItemPointsParams:
    """Validate stored earn params for the given earn type."""

    tag = earn_type.name if isinstance(earn_type, EarnTypeEnum) else str(earn_type).upper()
    if not isinstance(params, dict):
        raise InvalidRewardConfigurationError("Earn params must be an object")
    try:
        return _earn_params_adapter.validate_python({**params, "earnType": tag})
    except ValidationError as exc:
        raise InvalidRewardConfigurationError(f"Invalid reward program config: {_describe(exc)}") from exc


def parse_reward_config(
    reward_type: RewardTypeEnum | str, config: dict[str, Any] | None
) -> PointsRewardConfig | ItemRewardConfig:
    """Validate a reward's stored config for its reward type."""

    tag = reward_type.name if isinstance(reward_type, RewardTypeEnum) else str(reward_type).upper()
    if not isinstance(config, dict):
        raise InvalidRewardConfigurationError("Reward config must be an object")
    try:
        return _reward_config_adapter.validate_python({**config, "rewardType": tag})
    except ValidationError as exc:
        raise InvalidRewardConfigurationError(f"Invalid reward config: {_describe(exc)}") from exc


__all__ = [
    "EarnParams",
    "ItemPointsParams",
    "ItemPointsRule",
    "ItemRewardConfig",
    "PointsPerDollarParams",
    "PointsRewardConfig",
    "RewardConfig",
    "parse_earn_params",
    "parse_reward_config",
]
