from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from timeengine.aggregation import Series, ZERO
from timeengine.months import MonthKey, shift_month_key

FORECAST_WINDOW = 6
FORECAST_HORIZON = 3


@dataclass(frozen=True)
class Forecast:
    labels: List[MonthKey]
    net: List[Optional[Decimal]]
    projected_breakeven_month: MonthKey | None


def forecast_time_burn(
    months: Sequence[MonthKey],
    time_burn_net: Series,
    *,
    window: int = FORECAST_WINDOW,
    horizon: int = FORECAST_HORIZON,
) -> Forecast | None:
    """Extend the net time-burn series ``horizon`` months with a linear trend.

    The trend is a least-squares line through the trailing ``window`` known
    months. History positions keep their actual values (``None`` where
    unknown). Returns ``None`` when no month of history is known.
    """
    if not months:
        return None
    points = [
        (index, time_burn_net[month])
        for index, month in enumerate(months)
        if time_burn_net.get(month) is not None
    ]
    if not points:
        return None

    slope, intercept = _linear_fit(points[-window:])
    history = [time_burn_net.get(month) for month in months]
    future = [shift_month_key(months[-1], step) for step in range(1, horizon + 1)]
    projections = [intercept + slope * (len(months) + step) for step in range(horizon)]

    return Forecast(
        labels=list(months) + future,
        net=history + projections,
        projected_breakeven_month=_breakeven(history, future, projections),
    )


def _linear_fit(points: Sequence[Tuple[int, Decimal]]) -> Tuple[Decimal, Decimal]:
    count = Decimal(len(points))
    sum_x = sum((Decimal(x) for x, _ in points), ZERO)
    sum_y = sum((y for _, y in points), ZERO)
    sum_xx = sum((Decimal(x) * x for x, _ in points), ZERO)
    sum_xy = sum((Decimal(x) * y for x, y in points), ZERO)
    denominator = count * sum_xx - sum_x * sum_x
    slope = ZERO if denominator == 0 else (count * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / count
    return slope, intercept


def _breakeven(
    history: Sequence[Optional[Decimal]],
    future: Sequence[MonthKey],
    projections: Sequence[Decimal],
) -> MonthKey | None:
    cumulative = sum((value for value in history if value is not None), ZERO)
    for month, value in zip(future, projections):
        previous = cumulative
        cumulative += value
        if previous > 0 and cumulative <= 0:
            return month
    return None
