"""Task cost and daily free-quota helpers.

The cost computed here directly gates the ledger debit, so these helpers are
pure and take the pricing table from the config snapshot rather than reading
anything themselves.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from .app_config import BillingConfig

DEFAULT_UNIT_PRICE = 1.0


@dataclass(frozen=True, slots=True)
class ChargeSplit:
    """How a task's cost is covered: free daily quota first, points for the rest."""

    cost_units: int
    quota_units: int
    points_units: int


def calculate_cost_units(
    *,
    selected_models: list[str],
    mode: str,
    billing: BillingConfig,
) -> int:
    """Return `sum(unit price per model, default 1) * mode multiplier` as whole units.

    Non-positive or missing prices count as 1, a missing/zero multiplier counts
    as 1, and the result is rounded up with a floor of 1.
    """
    base = 0.0
    for model_key in selected_models:
        unit_price = billing.model_unit_price.get(model_key)
        if isinstance(unit_price, (int, float)) and unit_price > 0:
            base += float(unit_price)
        else:
            base += DEFAULT_UNIT_PRICE
    multiplier = billing.search_multiplier.get(mode) or 1.0
    estimated = base * multiplier
    if not math.isfinite(estimated):
        return max(1, len(selected_models))
    return max(1, math.ceil(estimated))


def daily_limit_for(plan: str, billing: BillingConfig) -> int:
    limits = billing.daily_units_by_plan
    if plan in limits:
        return max(0, int(limits[plan]))
    return max(0, int(limits.get("FREE", 0)))


def split_charge(*, cost_units: int, daily_limit: int, used_quota_units: int) -> ChargeSplit:
    remaining_quota = max(0, daily_limit - used_quota_units)
    quota_units = min(cost_units, remaining_quota)
    return ChargeSplit(
        cost_units=cost_units,
        quota_units=quota_units,
        points_units=cost_units - quota_units,
    )


def usage_date_for(moment: datetime, *, timezone: str) -> str:
    """Bucket a timestamp into the YYYY-MM-DD usage day of `timezone`."""
    return moment.astimezone(ZoneInfo(timezone)).strftime("%Y-%m-%d")
