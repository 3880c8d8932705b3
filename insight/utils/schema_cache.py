from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    name: str
    type: str


@dataclass
class SchemaSnapshot:
    columns: List[ColumnInfo]

    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


SALES_SCHEMA = SchemaSnapshot(
    columns=[
        ColumnInfo("asset_class", "VARCHAR"),
        ColumnInfo("property_type", "VARCHAR"),
        ColumnInfo("sale_date", "DATE"),
        ColumnInfo("area_sqm", "DOUBLE"),
        ColumnInfo("layout", "VARCHAR"),
        ColumnInfo("district", "VARCHAR"),
        ColumnInfo("community", "VARCHAR"),
        ColumnInfo("project_name", "VARCHAR"),
        ColumnInfo("price_aed", "DOUBLE"),
        ColumnInfo("sold_share", "DOUBLE"),
        ColumnInfo("rate_per_sqm", "DOUBLE"),
        ColumnInfo("sale_type", "VARCHAR"),
        ColumnInfo("sale_sequence", "VARCHAR"),
    ],
)

META_QUERY = """
SELECT
  (SELECT LIST(DISTINCT district ORDER BY district) FROM sales WHERE district IS NOT NULL) AS districts,
  (SELECT LIST(DISTINCT property_type ORDER BY property_type) FROM sales WHERE property_type IS NOT NULL) AS property_types,
  (SELECT LIST(DISTINCT layout ORDER BY layout) FROM sales WHERE layout IS NOT NULL AND layout != 'unclassified') AS layouts,
  (SELECT LIST(DISTINCT project_name ORDER BY project_name) FROM sales WHERE project_name IS NOT NULL) AS projects,
  MIN(sale_date) AS min_date,
  MAX(sale_date) AS max_date,
  MIN(price_aed) AS min_price,
  MAX(price_aed) AS max_price
FROM sales
WHERE price_aed > 0
"""


@dataclass
class DatasetMeta:
    """Distinct filter values and coverage, sent to the intent service."""

    projects: List[str] = field(default_factory=list)
    districts: List[str] = field(default_factory=list)
    layouts: List[str] = field(default_factory=list)
    property_types: List[str] = field(default_factory=list)
    min_date: Optional[str] = None
    max_date: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects": self.projects,
            "districts": self.districts,
            "layouts": self.layouts,
            "propertyTypes": self.property_types,
            "minDate": self.min_date,
            "maxDate": self.max_date,
            "minPrice": self.min_price,
            "maxPrice": self.max_price,
        }


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


class SchemaCache:
    def __init__(self) -> None:
        self._schema: Optional[SchemaSnapshot] = None
        self._meta: Optional[DatasetMeta] = None

    def get_or_load(self, executor) -> SchemaSnapshot:
        """Columns of the registered ``sales`` view, read once per executor."""
        if self._schema is None:
            rows = executor.query("DESCRIBE sales")
            self._schema = SchemaSnapshot(
                columns=[ColumnInfo(row["column_name"], row["column_type"]) for row in rows]
            )
            logger.debug("sales view exposes %d columns", len(self._schema.columns))
        return self._schema

    def get_meta(self, executor) -> DatasetMeta:
        if self._meta is not None:
            return self._meta
        rows = executor.query(META_QUERY)
        row = rows[0] if rows else {}
        self._meta = DatasetMeta(
            projects=list(row.get("projects") or []),
            districts=list(row.get("districts") or []),
            layouts=list(row.get("layouts") or []),
            property_types=list(row.get("property_types") or []),
            min_date=_iso(row.get("min_date")),
            max_date=_iso(row.get("max_date")),
            min_price=row.get("min_price"),
            max_price=row.get("max_price"),
        )
        return self._meta
