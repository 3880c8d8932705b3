from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

import pandas as pd

from insight.planner.intent import TREND_RATE, TREND_VOLUME, Intent, pivot_key
from insight.tools.pivot import round_half_up


def pct_change(first: float, last: float) -> float:
    """Percent change with one decimal; 0 when the starting value is 0."""
    if not first:
        return 0
    return math.floor((last - first) / first * 1000 + 0.5) / 10


def _date_range(df: pd.DataFrame) -> Dict[str, Optional[str]]:
    if df.empty:
        return {"from": None, "to": None}
    return {"from": df["month"].iloc[0], "to": df["month"].iloc[-1]}


def _series_stats(name: str, points: pd.DataFrame, value_col: str) -> Dict[str, Any]:
    # points: sorted by month, non-empty
    values = points[value_col].astype(float)
    peak_idx = values.idxmax()  # first occurrence in sorted order
    first = values.iloc[0]
    last = values.iloc[-1]
    return {
        "name": name,
        "first": round_half_up(first),
        "last": round_half_up(last),
        "pct_change": pct_change(first, last),
        "peak": round_half_up(values.max()),
        "peak_month": points.loc[peak_idx, "month"],
        "tx_count": int(points["tx_count"].fillna(0).sum()) if "tx_count" in points else 0,
    }


def _volume_stats(df: pd.DataFrame) -> Dict[str, Any]:
    counts = df["tx_count"].fillna(0).astype(int)
    total = int(counts.sum())
    peak_idx = counts.idxmax()
    return {
        "total_transactions": total,
        "avg_monthly": round_half_up(total / len(counts)),
        "peak_month": df.loc[peak_idx, "month"],
        "peak_count": int(counts.loc[peak_idx]),
        "date_range": _date_range(df),
    }


def compute_summary_stats(rows: List[Dict[str, Any]], intent: Intent) -> Dict[str, Any]:
    """Descriptive statistics fed to the explanation service.

    Volume intents get totals and the peak month, comparison intents one
    record per series, price/rate trends a single series named ``All``.
    """
    if not rows:
        return {"series": [], "date_range": {"from": None, "to": None}}

    df = pd.DataFrame(rows).sort_values("month", kind="stable").reset_index(drop=True)

    if intent.query_type == TREND_VOLUME:
        return _volume_stats(df)

    key = pivot_key(intent.query_type)
    if key is not None:
        df["median_price"] = pd.to_numeric(df["median_price"], errors="coerce")
        df[key] = df[key].astype(str)
        series = [
            _series_stats(name, group, "median_price")
            for name, group in df.dropna(subset=["median_price"]).groupby(key, sort=False)
        ]
        return {"series": series, "date_range": _date_range(df)}

    value_col = "median_rate" if intent.query_type == TREND_RATE else "median_price"
    df[value_col] = pd.to_numeric(df[value_col], errors="coerce")
    positive = df[df[value_col] > 0]
    if positive.empty:
        return {"series": [], "date_range": _date_range(df)}
    stats = _series_stats("All", positive, value_col)
    # Transactions count every month in range, including ones filtered above
    stats["tx_count"] = int(df["tx_count"].fillna(0).sum()) if "tx_count" in df else 0
    return {"series": [stats], "date_range": _date_range(df)}
