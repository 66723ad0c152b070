"""Pure points arithmetic for earn programs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from loyalty_api.schemas.reward_config import ItemPointsParams


@dataclass(frozen=True, slots=True)
class PointsResult:
    points: int
    eligible: bool


def compute_points(
    *,
    amount_cents: int,
    points_per_dollar: int,
    min_subtotal_cents: int = 0,
    rounding: str = "FLOOR",
) -> PointsResult:
    """Points earned for a payment amount.

    Amounts below the minimum subtotal are ineligible. FLOOR is the only rounding
    policy; anything else is treated as FLOOR.
    """

    if amount_cents < min_subtotal_cents:
        return PointsResult(points=0, eligible=False)

    # Integer form of floor(amount / 100 * rate), free of float drift.
    points = (amount_cents * points_per_dollar) // 100
    return PointsResult(points=points, eligible=True)


def compute_item_points(line_items: Iterable[Mapping[str, Any]], rule: ItemPointsParams) -> PointsResult:
    """Sum quantity * points across line items whose catalog object id has a rule.

    Item programs have no minimum, so the result is always eligible.
    """

    points_by_object = {item.catalog_object_id: item.points for item in rule.items}
    total = 0
    for line_item in line_items:
        object_id = line_item.get("catalog_object_id")
        if object_id not in points_by_object:
            continue
        total += _quantity(line_item.get("quantity")) * points_by_object[object_id]
    return PointsResult(points=total, eligible=True)


def _quantity(raw: Any) -> int:
    # Square encodes quantities as decimal strings ("2", "1.5").
    try:
        return max(int(float(raw)), 0)
    except (TypeError, ValueError):
        return 1 if raw is None else 0


__all__ = ["PointsResult", "compute_item_points", "compute_points"]
