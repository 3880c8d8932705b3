from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import duckdb

from insight.utils.errors import ExecutionError

logger = logging.getLogger(__name__)

SALES_VIEW_SQL = """
CREATE OR REPLACE VIEW sales AS
SELECT
  "Asset Class"                                 AS asset_class,
  "Property Type"                               AS property_type,
  TRY_CAST("Sale Application Date" AS DATE)     AS sale_date,
  TRY_CAST("Property Sold Area (SQM)" AS DOUBLE) AS area_sqm,
  "Property Layout"                             AS layout,
  "District"                                    AS district,
  "Community"                                   AS community,
  "Project Name"                                AS project_name,
  TRY_CAST("Property Sale Price (AED)" AS DOUBLE) AS price_aed,
  TRY_CAST("Property Sold Share" AS DOUBLE)     AS sold_share,
  TRY_CAST("Rate (AED per SQM)" AS DOUBLE)      AS rate_per_sqm,
  "Sale Application Type"                       AS sale_type,
  "Sale Sequence"                               AS sale_sequence
FROM read_csv_auto('{path}', header=true, ignore_errors=true, all_varchar=true)
"""


@dataclass
class DuckDBConfig:
    csv_path: Optional[str] = None
    database: str = ':memory:'


class DuckDBExecutor:
    """Executes parameterized queries against the ``sales`` view.

    Use as a context manager so the connection is released deterministically.
    """

    def __init__(self, config: Optional[DuckDBConfig] = None):
        self.config = config or DuckDBConfig()
        self._con = duckdb.connect(database=self.config.database)
        if self.config.csv_path:
            self.register_csv(self.config.csv_path)

    def __enter__(self) -> "DuckDBExecutor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._con is not None:
            self._con.close()
            self._con = None

    def register_csv(self, path: str) -> None:
        if not os.path.exists(path):
            raise ExecutionError(f"Dataset not found: {path}")
        # View DDL cannot take prepared params; inline the escaped path
        path_sql = os.path.abspath(path).replace("'", "''")
        self._execute(SALES_VIEW_SQL.format(path=path_sql), [])
        logger.debug("registered sales view over %s", path)

    def _execute(self, sql: str, params: List[Any]):
        if self._con is None:
            raise ExecutionError("Connection is closed")
        # A cursor per call keeps concurrent callers (worker threads) off a shared handle
        cur = self._con.cursor()
        try:
            if params:
                cur.execute(sql, params)
            else:
                cur.execute(sql)
            if cur.description is None:
                return []
            cols = [d[0] for d in cur.description]
            return [dict(zip(cols, row)) for row in cur.fetchall()]
        except duckdb.Error as e:
            raise ExecutionError(str(e)) from e
        finally:
            cur.close()

    def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Run ``sql`` with positional ``params`` and return plain row dicts."""
        if not sql:
            raise ExecutionError("Empty query")
        return self._execute(sql, list(params or []))
