from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


@dataclass
class FilterSet:
    projects: List[str] = field(default_factory=list)
    districts: List[str] = field(default_factory=list)
    layouts: List[str] = field(default_factory=list)
    sale_types: List[str] = field(default_factory=list)
    property_types: List[str] = field(default_factory=list)
    sale_sequences: List[str] = field(default_factory=list)
    date_from: Optional[str] = None  # 'YYYY-MM' or 'YYYY-MM-DD'
    date_to: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects": list(self.projects),
            "districts": list(self.districts),
            "layouts": list(self.layouts),
            "saleTypes": list(self.sale_types),
            "propertyTypes": list(self.property_types),
            "saleSequences": list(self.sale_sequences),
            "dateFrom": self.date_from,
            "dateTo": self.date_to,
            "priceMin": self.price_min,
            "priceMax": self.price_max,
        }


def normalize_date(value: Optional[str], end: bool = False) -> Optional[str]:
    """Expand a bare ``YYYY-MM`` to the first (or, with ``end``, last) day of the month.

    Full ``YYYY-MM-DD`` dates pass through unchanged; empty input gives None.
    """
    if not value:
        return None
    value = value.strip()
    m = MONTH_RE.match(value)
    if not m:
        return value
    year, month = int(m.group(1)), int(m.group(2))
    day = calendar.monthrange(year, month)[1] if end else 1
    return f"{year:04d}-{month:02d}-{day:02d}"


def normalize_filters(filters: Optional[FilterSet]) -> Optional[FilterSet]:
    if filters is None:
        return None
    return replace(
        filters,
        date_from=normalize_date(filters.date_from),
        date_to=normalize_date(filters.date_to, end=True),
    )
