from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from insight.exec.filters import DAY_RE, MONTH_RE, FilterSet, normalize_date
from insight.utils.errors import ValidationError

TREND_PRICE = "trend_price"
TREND_RATE = "trend_rate"
TREND_VOLUME = "trend_volume"
COMPARE_PROJECTS = "compare_projects"
COMPARE_DISTRICTS = "compare_districts"
COMPARE_LAYOUTS = "compare_layouts"

QUERY_TYPES = (TREND_PRICE, TREND_RATE, TREND_VOLUME, COMPARE_PROJECTS, COMPARE_DISTRICTS, COMPARE_LAYOUTS)

# Vocabulary the intent model was originally prompted with
ALIASES = {
    "price_trend": TREND_PRICE,
    "rate_trend": TREND_RATE,
    "volume_trend": TREND_VOLUME,
    "project_comparison": COMPARE_PROJECTS,
    "district_comparison": COMPARE_DISTRICTS,
    "layout_distribution": COMPARE_LAYOUTS,
}

# Comparison shape -> series discriminator column
COMPARISON_KEYS = {
    COMPARE_PROJECTS: "project_name",
    COMPARE_DISTRICTS: "district",
    COMPARE_LAYOUTS: "layout",
}

_LIST_FIELDS = {
    "projects": "projects",
    "districts": "districts",
    "layouts": "layouts",
    "saleTypes": "sale_types",
    "propertyTypes": "property_types",
    "saleSequences": "sale_sequences",
}


def pivot_key(query_type: str) -> Optional[str]:
    return COMPARISON_KEYS.get(query_type)


@dataclass
class Intent:
    query_type: str
    filters: FilterSet = field(default_factory=FilterSet)
    chart_type: str = "line"
    title: str = ""
    needs_chart: bool = True

    @property
    def is_comparison(self) -> bool:
        return self.query_type in COMPARISON_KEYS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queryType": self.query_type,
            "filters": self.filters.to_dict(),
            "chartType": self.chart_type,
            "title": self.title,
            "needsChart": self.needs_chart,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Intent":
        """Validate an untrusted intent payload and build an Intent.

        Unknown query types are kept as-is; the compiler falls back to a price trend.
        """
        if not isinstance(data, Mapping):
            raise ValidationError("intent must be a JSON object")
        query_type = data.get("queryType")
        if not isinstance(query_type, str) or not query_type.strip():
            raise ValidationError("intent.queryType must be a non-empty string")
        query_type = query_type.strip()
        query_type = ALIASES.get(query_type, query_type)

        filters = _parse_filters(data.get("filters"))

        chart_type = data.get("chartType") or "line"
        title = data.get("title") or ""
        if not isinstance(chart_type, str) or not isinstance(title, str):
            raise ValidationError("intent.chartType and intent.title must be strings")
        needs_chart = data.get("needsChart", True)
        if not isinstance(needs_chart, bool):
            raise ValidationError("intent.needsChart must be a boolean")
        return cls(query_type=query_type, filters=filters, chart_type=chart_type, title=title[:60], needs_chart=needs_chart)


def _string_list(raw: Any, name: str) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        raise ValidationError(f"filters.{name} must be a list of strings")
    return [v for v in raw if v.strip()]


def _date(raw: Any, name: str) -> Optional[str]:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str) or not (MONTH_RE.match(raw) or DAY_RE.match(raw)):
        raise ValidationError(f"filters.{name} must be YYYY-MM or YYYY-MM-DD")
    fmt = "%Y-%m" if MONTH_RE.match(raw) else "%Y-%m-%d"
    try:
        datetime.strptime(raw, fmt)
    except ValueError as e:
        raise ValidationError(f"filters.{name} is not a calendar date: {raw}") from e
    return raw


def _number(raw: Any, name: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError(f"filters.{name} must be a number")
    return raw


def _parse_filters(raw: Any) -> FilterSet:
    if raw is None:
        return FilterSet()
    if not isinstance(raw, Mapping):
        raise ValidationError("intent.filters must be a JSON object")
    lists = {attr: _string_list(raw.get(key), key) for key, attr in _LIST_FIELDS.items()}
    filters = FilterSet(
        **lists,
        date_from=_date(raw.get("dateFrom"), "dateFrom"),
        date_to=_date(raw.get("dateTo"), "dateTo"),
        price_min=_number(raw.get("priceMin"), "priceMin"),
        price_max=_number(raw.get("priceMax"), "priceMax"),
    )
    if filters.date_from and filters.date_to:
        if normalize_date(filters.date_from) > normalize_date(filters.date_to, end=True):
            raise ValidationError("filters.dateFrom must not be after filters.dateTo")
    return filters
