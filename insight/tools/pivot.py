from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List

from insight.planner.intent import Intent, pivot_key


@dataclass
class ChartSeries:
    chart_data: List[Dict[str, Any]] = field(default_factory=list)
    chart_keys: List[str] = field(default_factory=list)


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def pivot_chart_data(rows: List[Dict[str, Any]], intent: Intent) -> ChartSeries:
    """Reshape comparison rows into ``[{month, <series>: value, ...}]``.

    Series keys keep first-seen order so legends stay stable as the date range
    is refined. Single-series shapes pass rows through unchanged.
    """
    key = pivot_key(intent.query_type)
    if key is None:
        return ChartSeries(chart_data=list(rows), chart_keys=[])

    by_month: Dict[str, Dict[str, Any]] = {}
    keys: Dict[str, None] = {}
    for row in rows:
        month = row["month"]
        series_name = str(row[key])
        record = by_month.setdefault(month, {"month": month})
        value = row.get("median_price")
        if value is not None:
            record[series_name] = round_half_up(value)
        keys.setdefault(series_name, None)

    return ChartSeries(
        chart_data=[by_month[m] for m in sorted(by_month)],
        chart_keys=list(keys),
    )
