from __future__ import annotations

from typing import Any, Dict, Optional

from insight.report.store import Post


def _fmt(value: Any) -> str:
    try:
        return f"{float(value):,.0f}"
    except (TypeError, ValueError):
        return str(value)


def make_concise_answer(post: Post) -> str:
    """One-line headline for a post, derived from its summary statistics."""
    if post.status == "error":
        return f"Error: {post.error}"
    stats: Optional[Dict[str, Any]] = post.summary_stats
    if not stats:
        return f"Status: {post.status}"

    if "total_transactions" in stats:
        return (
            f"Answer: {_fmt(stats['total_transactions'])} transactions "
            f"(avg {_fmt(stats['avg_monthly'])}/month, peak {stats['peak_month']} with {_fmt(stats['peak_count'])})"
        )

    series = stats.get("series") or []
    if not series:
        return "Answer: no matching transactions."
    if len(series) == 1:
        s = series[0]
        return f"Answer: {_fmt(s['first'])} -> {_fmt(s['last'])} ({s['pct_change']:+}%), peak {_fmt(s['peak'])} in {s['peak_month']}"
    best = max(series, key=lambda s: s["pct_change"])
    return f"Answer: strongest series = {best['name']} ({best['pct_change']:+}%) across {len(series)} series"
