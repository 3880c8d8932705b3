from insight.planner.intent import Intent
from insight.tools.pivot import pivot_chart_data, round_half_up
from insight.tools.stats import compute_summary_stats, pct_change


def test_volume_summary():
    rows = [{"month": "2024-01", "tx_count": 100}, {"month": "2024-02", "tx_count": 150}]
    stats = compute_summary_stats(rows, Intent("trend_volume"))
    assert stats["total_transactions"] == 250
    assert stats["avg_monthly"] == 125
    assert stats["peak_month"] == "2024-02"
    assert stats["peak_count"] == 150
    assert stats["date_range"] == {"from": "2024-01", "to": "2024-02"}


def test_volume_peak_ties_keep_earliest_month():
    rows = [
        {"month": "2024-01", "tx_count": 5},
        {"month": "2024-02", "tx_count": 9},
        {"month": "2024-03", "tx_count": 9},
    ]
    stats = compute_summary_stats(rows, Intent("trend_volume"))
    assert stats["peak_month"] == "2024-02"
    assert stats["avg_monthly"] == 8  # 23 / 3 rounds half up


def test_single_series_trend_summary():
    rows = [
        {"month": "2024-01", "median_price": 2000000, "tx_count": 10},
        {"month": "2024-06", "median_price": 2400000, "tx_count": 12},
    ]
    stats = compute_summary_stats(rows, Intent("trend_price"))
    assert stats["series"] == [
        {
            "name": "All",
            "first": 2000000,
            "last": 2400000,
            "pct_change": 20,
            "peak": 2400000,
            "peak_month": "2024-06",
            "tx_count": 22,
        }
    ]


def test_single_series_skips_non_positive_values_but_counts_transactions():
    rows = [
        {"month": "2024-01", "median_rate": 0, "tx_count": 3},
        {"month": "2024-02", "median_rate": 10000.4, "tx_count": 4},
        {"month": "2024-03", "median_rate": 11000.5, "tx_count": 5},
    ]
    stats = compute_summary_stats(rows, Intent("trend_rate"))
    s = stats["series"][0]
    assert s["first"] == 10000
    assert s["last"] == 11001
    assert s["tx_count"] == 12
    assert stats["date_range"] == {"from": "2024-01", "to": "2024-03"}


def test_comparison_summary_per_series_in_first_seen_order():
    rows = [
        {"month": "2024-01", "district": "Yas Island", "median_price": 0, "tx_count": 1},
        {"month": "2024-01", "district": "Al Reem Island", "median_price": 100, "tx_count": 2},
        {"month": "2024-02", "district": "Yas Island", "median_price": 200, "tx_count": 3},
        {"month": "2024-02", "district": "Al Reem Island", "median_price": 90, "tx_count": 4},
    ]
    stats = compute_summary_stats(rows, Intent("compare_districts"))
    names = [s["name"] for s in stats["series"]]
    assert names == ["Yas Island", "Al Reem Island"]
    yas, reem = stats["series"]
    # a zero start yields no percentage
    assert yas["pct_change"] == 0
    assert reem["pct_change"] == -10
    assert reem["peak_month"] == "2024-01"
    assert reem["tx_count"] == 6


def test_empty_rows_give_empty_summary():
    for query_type in ("trend_price", "trend_volume", "compare_projects"):
        stats = compute_summary_stats([], Intent(query_type))
        assert stats == {"series": [], "date_range": {"from": None, "to": None}}


def test_pct_change_rounding():
    assert pct_change(0, 100) == 0
    assert pct_change(3, 4) == 33.3
    assert pct_change(200, 100) == -50


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(1999999.6) == 2000000


def test_comparison_pivot_two_projects():
    rows = [
        {"month": "2024-01", "project_name": "ProjectA", "median_price": 1000000.4, "tx_count": 3},
        {"month": "2024-01", "project_name": "ProjectB", "median_price": 2000000, "tx_count": 1},
        {"month": "2024-02", "project_name": "ProjectB", "median_price": 2100000, "tx_count": 2},
        {"month": "2024-02", "project_name": "ProjectA", "median_price": 1100000.5, "tx_count": 4},
    ]
    out = pivot_chart_data(rows, Intent("compare_projects"))
    assert out.chart_keys == ["ProjectA", "ProjectB"]
    assert out.chart_data == [
        {"month": "2024-01", "ProjectA": 1000000, "ProjectB": 2000000},
        {"month": "2024-02", "ProjectA": 1100001, "ProjectB": 2100000},
    ]


def test_pivot_keys_are_first_seen_not_sorted():
    rows = [
        {"month": "2024-02", "layout": "Studio", "median_price": 1},
        {"month": "2024-01", "layout": "1 Bedroom", "median_price": 2},
    ]
    out = pivot_chart_data(rows, Intent("compare_layouts"))
    assert out.chart_keys == ["Studio", "1 Bedroom"]
    assert [r["month"] for r in out.chart_data] == ["2024-01", "2024-02"]


def test_trend_rows_pass_through():
    rows = [{"month": "2024-01", "median_price": 5, "tx_count": 1}]
    out = pivot_chart_data(rows, Intent("trend_price"))
    assert out.chart_data == rows
    assert out.chart_keys == []
