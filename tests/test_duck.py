import pytest

from insight.exec.duck import DuckDBConfig, DuckDBExecutor
from insight.exec.filters import FilterSet
from insight.exec.sql_builder import compile_intent
from insight.planner.intent import Intent
from insight.utils.errors import ExecutionError
from insight.utils.schema_cache import SALES_SCHEMA, SchemaCache

HEADER = (
    "Asset Class,Property Type,Sale Application Date,Property Sold Area (SQM),Property Layout,District,"
    "Community,Project Name,Property Sale Price (AED),Property Sold Share,Rate (AED per SQM),"
    "Sale Application Type,Sale Sequence"
)
ROWS = [
    "Residential,Apartment,2024-01-10,100,1 Bedroom,Yas Island,Yas Acres,Noya - Phase 1,2000000,1,20000,Ready,Primary",
    "Residential,Apartment,2024-01-20,100,2 Bedrooms,Yas Island,Yas Acres,Noya - Phase 1,2200000,1,22000,Ready,Primary",
    "Residential,Apartment,2024-02-05,80,1 Bedroom,Al Reem Island,Reem,Sun Tower,1500000,1,18750,Off-Plan,Secondary",
    "Residential,Apartment,2024-02-15,100,1 Bedroom,Yas Island,Yas Acres,Noya - Phase 1,2400000,1,24000,Ready,Primary",
    "Residential,Villa,2024-03-01,300,4 Bedrooms,Saadiyat Island,Saadiyat,Mamsha,0,1,0,Ready,Primary",
]


@pytest.fixture
def executor(tmp_path):
    path = tmp_path / "sales.csv"
    path.write_text("\n".join([HEADER] + ROWS) + "\n")
    with DuckDBExecutor(DuckDBConfig(csv_path=str(path))) as ex:
        yield ex


def run(executor, intent):
    q = compile_intent(intent)
    return executor.query(q.query_text, q.params)


def test_price_trend_by_month(executor):
    rows = run(executor, Intent("trend_price", FilterSet(date_from="2024-01", date_to="2024-03")))
    assert [(r["month"], r["median_price"], r["tx_count"]) for r in rows] == [
        ("2024-01", 2100000.0, 2),
        ("2024-02", 1950000.0, 2),
    ]


def test_volume_counts_zero_priced_sales(executor):
    rows = run(executor, Intent("trend_volume"))
    assert [(r["month"], r["tx_count"]) for r in rows] == [("2024-01", 2), ("2024-02", 2), ("2024-03", 1)]


def test_filters_narrow_rows(executor):
    rows = run(executor, Intent("trend_price", FilterSet(districts=["Yas Island"], layouts=["1 Bedroom"])))
    assert [(r["month"], r["median_price"]) for r in rows] == [("2024-01", 2000000.0), ("2024-02", 2400000.0)]

    rows = run(executor, Intent("trend_price", FilterSet(price_min=2300000)))
    assert [r["month"] for r in rows] == ["2024-02"]


def test_project_comparison(executor):
    rows = run(executor, Intent("compare_projects", FilterSet(projects=["Noya - Phase 1", "Sun Tower"])))
    got = {(r["month"], r["project_name"], r["median_price"]) for r in rows}
    assert got == {
        ("2024-01", "Noya - Phase 1", 2100000.0),
        ("2024-02", "Noya - Phase 1", 2400000.0),
        ("2024-02", "Sun Tower", 1500000.0),
    }
    assert [r["month"] for r in rows] == sorted(r["month"] for r in rows)


def test_dataset_meta(executor):
    meta = SchemaCache().get_meta(executor)
    assert meta.projects == ["Mamsha", "Noya - Phase 1", "Sun Tower"]
    assert meta.districts == ["Al Reem Island", "Saadiyat Island", "Yas Island"]
    assert meta.min_date == "2024-01-10"
    assert meta.max_date == "2024-02-15"
    assert meta.to_dict()["layouts"] == ["1 Bedroom", "2 Bedrooms", "4 Bedrooms"]


def test_schema_snapshot(executor):
    cache = SchemaCache()
    schema = cache.get_or_load(executor)
    names = [c.name for c in schema.columns]
    assert "sale_date" in names and "price_aed" in names
    assert schema.column_names()[2] == "sale_date"
    # the view exposes the same columns as the static schema
    assert names == SALES_SCHEMA.column_names()
    assert cache.get_or_load(executor) is schema


def test_missing_dataset(tmp_path):
    with pytest.raises(ExecutionError):
        DuckDBExecutor(DuckDBConfig(csv_path=str(tmp_path / "nope.csv")))


def test_bad_sql_and_closed_connection(executor):
    with pytest.raises(ExecutionError):
        executor.query("SELECT nope FROM sales")
    with pytest.raises(ExecutionError):
        executor.query("")
    executor.close()
    with pytest.raises(ExecutionError):
        executor.query("SELECT 1")
