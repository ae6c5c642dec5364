from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Protocol, Tuple

ONE = Decimal("1")
CENTS_PER_UNIT = Decimal("100")


@dataclass(frozen=True)
class RateObservation:
    """One stored FX quote: 1 unit of ``base`` is worth ``rate`` units of ``quote``."""

    day: date
    base: str
    quote: str
    rate: Decimal


class RateHistorySource(Protocol):
    def exchange_rate_history(
        self, currencies: Iterable[str], quote: str, until: date
    ) -> List[RateObservation]:
        ...


@dataclass
class RateTable:
    """Prefetched rate observations against a single anchor currency.

    Lookups only ever use observations dated on or before the query day.
    ``resolve`` reports a missing leg as ``None``; ``fx`` degrades it to a
    multiplier of 1.
    """

    anchor: str
    observations: Mapping[str, List[Tuple[date, Decimal]]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.anchor = normalize_currency(self.anchor)
        ordered: Dict[str, List[Tuple[date, Decimal]]] = {}
        for currency, entries in self.observations.items():
            ordered[normalize_currency(currency)] = sorted(entries, key=lambda entry: entry[0])
        self.observations = ordered
        self._days = {
            currency: [day for day, _ in entries] for currency, entries in ordered.items()
        }

    @classmethod
    def from_observations(
        cls, anchor: str, observations: Iterable[RateObservation]
    ) -> "RateTable":
        normalized_anchor = normalize_currency(anchor)
        grouped: Dict[str, List[Tuple[date, Decimal]]] = {}
        for observation in observations:
            if normalize_currency(observation.quote) != normalized_anchor:
                continue
            rate = _coerce_amount(observation.rate)
            if rate <= 0:
                continue
            grouped.setdefault(normalize_currency(observation.base), []).append(
                (_normalize_rate_date(observation.day), rate)
            )
        return cls(anchor=normalized_anchor, observations=grouped)

    @classmethod
    def prefetch(
        cls,
        source: RateHistorySource,
        anchor: str,
        currencies: Iterable[str],
        until: date,
    ) -> "RateTable":
        normalized_anchor = normalize_currency(anchor)
        needed = sorted(
            {normalize_currency(code) for code in currencies} - {normalized_anchor}
        )
        if not needed:
            return cls(anchor=normalized_anchor)
        return cls.from_observations(
            normalized_anchor,
            source.exchange_rate_history(needed, normalized_anchor, until),
        )

    def rate_to_anchor(self, currency: str, day: date | str) -> Decimal | None:
        normalized = normalize_currency(currency)
        if normalized == self.anchor:
            return ONE
        days = self._days.get(normalized)
        if not days:
            return None
        index = bisect_right(days, _normalize_rate_date(day))
        if index == 0:
            return None
        return self.observations[normalized][index - 1][1]

    def resolve(
        self, source_currency: str, target_currency: str, day: date | str
    ) -> Decimal | None:
        """Multiplier from ``source`` to ``target`` on ``day``; ``None`` when a leg is missing."""
        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)
        if normalized_source == normalized_target:
            return ONE

        lookup_day = _normalize_rate_date(day)
        source_rate = self.rate_to_anchor(normalized_source, lookup_day)
        target_rate = self.rate_to_anchor(normalized_target, lookup_day)
        if source_rate is None or target_rate is None:
            return None
        if normalized_target == self.anchor:
            return source_rate
        if normalized_source == self.anchor:
            return ONE / target_rate
        return source_rate / target_rate

    def fx(self, source_currency: str, target_currency: str, day: date | str) -> Decimal:
        rate = self.resolve(source_currency, target_currency, day)
        return ONE if rate is None else rate


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_table: RateTable,
    day: date | str,
) -> Decimal:
    """Convert a monetary amount using the latest rate not newer than ``day``."""
    coerced_amount = _coerce_amount(amount)
    return coerced_amount * rate_table.fx(source_currency, target_currency, day)


def cents_to_money(cents: int | Decimal) -> Decimal:
    return _coerce_amount(cents) / CENTS_PER_UNIT


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _normalize_rate_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
