from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal
from typing import Any, Protocol

from leadhub.otel import get_tracer


tracer = get_tracer("leadhub.analytics.valuation")

_CENT = Decimal("0.01")


class ValuationEstimator(Protocol):
    """Estimates the combined value of leads that carry no ``estimated_value``."""

    async def estimate(self, leads: Sequence[Mapping[str, Any]]) -> Decimal: ...


class HistoricalAverageEstimator:
    """Values each lead at its brand's historical average deal size.

    Leads of brands without history fall back to ``default_average`` when one
    is configured and count as zero otherwise.
    """

    def __init__(self, brand_averages: Mapping[str, Decimal], *, default_average: Decimal | None = None) -> None:
        self._brand_averages = {str(brand_id): Decimal(value) for brand_id, value in brand_averages.items()}
        self._default_average = default_average

    @classmethod
    def from_history(cls, leads: Iterable[Mapping[str, Any]], *, default_average: Decimal | None = None) -> HistoricalAverageEstimator:
        totals: dict[str, Decimal] = defaultdict(Decimal)
        counts: dict[str, int] = defaultdict(int)
        for lead in leads:
            value = lead.get("estimated_value")
            if lead.get("status") != "converted" or value is None:
                continue
            brand_id = str(lead["brand_id"])
            totals[brand_id] += Decimal(value)
            counts[brand_id] += 1
        averages = {brand_id: (totals[brand_id] / counts[brand_id]).quantize(_CENT) for brand_id in totals}
        return cls(averages, default_average=default_average)

    def average_for(self, brand_id: str) -> Decimal | None:
        return self._brand_averages.get(str(brand_id), self._default_average)

    async def estimate(self, leads: Sequence[Mapping[str, Any]]) -> Decimal:
        with tracer.start_as_current_span("leadhub.valuation.estimate") as span:
            span.set_attribute("lead_count", len(leads))
            total = Decimal("0")
            for lead in leads:
                average = self.average_for(str(lead.get("brand_id")))
                if average is not None:
                    total += average
            return total.quantize(_CENT)
