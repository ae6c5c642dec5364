from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Callable, List, Tuple

from timeengine.months import MonthKey, shift_month_key, to_month_key

MINOR_UNIT = Decimal("0.01")

RateLookup = Callable[[MonthKey], Decimal | None]


def to_hours(amount: Decimal, month: MonthKey, rate_for: RateLookup) -> Decimal | None:
    """Money in user currency to hours at that month's rate; ``None`` if no rate."""
    rate = rate_for(month)
    if rate is None or rate <= 0:
        return None
    return amount / rate


def amortize(
    amount: Decimal, start_month: MonthKey, span_months: int | None
) -> List[Tuple[MonthKey, Decimal]]:
    """Spread ``amount`` in equal minor-unit installments over ``span_months``.

    The final installment absorbs the rounding remainder, so the installments
    always sum to ``amount``. A span of zero or less recognizes everything in
    ``start_month``.
    """
    start = to_month_key(start_month)
    span = span_months or 0
    if span <= 1:
        return [(start, amount)]

    installment = (amount / span).quantize(MINOR_UNIT, rounding=ROUND_DOWN)
    schedule = [(shift_month_key(start, offset), installment) for offset in range(span - 1)]
    schedule.append((shift_month_key(start, span - 1), amount - installment * (span - 1)))
    return schedule


def amortize_one_time(
    amount: Decimal, start_month: MonthKey, span_months: int | None
) -> List[Tuple[MonthKey, Decimal]]:
    return amortize(amount, start_month, span_months)


def amortize_capex(
    amount: Decimal, purchase_month: MonthKey, span_months: int | None
) -> List[Tuple[MonthKey, Decimal]]:
    return amortize(amount, purchase_month, span_months)
