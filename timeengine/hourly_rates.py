from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping, Tuple

from timeengine.months import MonthKey, to_month_key


@dataclass(frozen=True)
class HourlyRateEntry:
    effective_month: MonthKey
    rate: Decimal


@dataclass(frozen=True)
class HourlyRateTimeline:
    """Step function of hourly rates, carried forward from each effective month.

    Months before the first entry fall back to ``static_rate``. ``overrides``
    replace the computed value for single months only.
    """

    entries: Tuple[HourlyRateEntry, ...] = ()
    static_rate: Decimal | None = None
    overrides: Mapping[MonthKey, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        latest: dict[MonthKey, Decimal] = {}
        for entry in self.entries:
            latest[to_month_key(entry.effective_month)] = _coerce_rate(entry.rate)
        ordered = tuple(
            HourlyRateEntry(effective_month=month, rate=latest[month])
            for month in sorted(latest)
        )
        object.__setattr__(self, "entries", ordered)
        object.__setattr__(self, "static_rate", _coerce_optional_rate(self.static_rate))
        object.__setattr__(
            self,
            "overrides",
            {to_month_key(month): _coerce_rate(rate) for month, rate in self.overrides.items()},
        )

    @classmethod
    def build(
        cls,
        entries: Iterable[HourlyRateEntry],
        static_rate: Decimal | float | int | None = None,
    ) -> "HourlyRateTimeline":
        return cls(entries=tuple(entries), static_rate=static_rate)

    def with_overrides(
        self, overrides: Mapping[MonthKey, Decimal | float | int]
    ) -> "HourlyRateTimeline":
        merged = dict(self.overrides)
        merged.update(overrides)
        return HourlyRateTimeline(
            entries=self.entries, static_rate=self.static_rate, overrides=merged
        )

    def rate_for(self, month: MonthKey) -> Decimal | None:
        if month in self.overrides:
            return _positive_or_none(self.overrides[month])
        months = [entry.effective_month for entry in self.entries]
        index = bisect_right(months, month)
        if index == 0:
            return _positive_or_none(self.static_rate)
        return _positive_or_none(self.entries[index - 1].rate)

    def __call__(self, month: MonthKey) -> Decimal | None:
        return self.rate_for(month)


def _positive_or_none(rate: Decimal | None) -> Decimal | None:
    if rate is None or rate <= 0:
        return None
    return rate


def _coerce_rate(rate: Decimal | float | int | str) -> Decimal:
    if isinstance(rate, Decimal):
        return rate
    return Decimal(str(rate))


def _coerce_optional_rate(rate: Decimal | float | int | str | None) -> Decimal | None:
    if rate is None:
        return None
    return _coerce_rate(rate)
