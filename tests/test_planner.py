import asyncio
import json
from types import SimpleNamespace

import openai
import pytest

from insight.planner.intent import Intent
from insight.planner.openai_planner import IntentService, parse_intent_text
from insight.utils.errors import ParseError, UpstreamError, ValidationError
from insight.utils.schema_cache import DatasetMeta

META = DatasetMeta(
    projects=["Noya - Phase 1", "Sun Tower"],
    districts=["Yas Island", "Al Reem Island"],
    layouts=["1 Bedroom", "2 Bedrooms"],
    property_types=["Apartment", "Villa"],
    min_date="2019-01-02",
    max_date="2025-06-30",
    min_price=350000.0,
    max_price=42000000.0,
)


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(content=None, error=None):
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(content, error)))


def test_intent_from_dict_maps_aliases():
    intent = Intent.from_dict({"queryType": "project_comparison", "filters": {"projects": ["Noya - Phase 1"]}})
    assert intent.query_type == "compare_projects"
    assert intent.is_comparison
    assert intent.filters.projects == ["Noya - Phase 1"]
    assert intent.needs_chart is True
    assert intent.chart_type == "line"


def test_intent_keeps_unknown_types_and_truncates_title():
    intent = Intent.from_dict({"queryType": "rental_yield", "title": "x" * 80})
    assert intent.query_type == "rental_yield"
    assert len(intent.title) == 60


def test_intent_round_trips_through_dict():
    raw = {
        "queryType": "trend_rate",
        "filters": {"districts": ["Yas Island"], "dateFrom": "2023-01", "dateTo": "2023-12", "priceMin": 1000},
        "chartType": "line",
        "title": "Yas rate",
        "needsChart": False,
    }
    intent = Intent.from_dict(raw)
    again = Intent.from_dict(intent.to_dict())
    assert again == intent
    assert intent.to_dict()["filters"]["dateFrom"] == "2023-01"


@pytest.mark.parametrize(
    "raw",
    [
        None,
        [],
        {},
        {"queryType": ""},
        {"queryType": "trend_price", "filters": []},
        {"queryType": "trend_price", "filters": {"projects": "Noya"}},
        {"queryType": "trend_price", "filters": {"dateFrom": "2024/01"}},
        {"queryType": "trend_price", "filters": {"dateFrom": "2024-13"}},
        {"queryType": "trend_price", "filters": {"priceMin": "cheap"}},
        {"queryType": "trend_price", "filters": {"priceMax": True}},
        {"queryType": "trend_price", "needsChart": "yes"},
    ],
)
def test_intent_validation_rejects_malformed_payloads(raw):
    with pytest.raises(ValidationError) as exc:
        Intent.from_dict(raw)
    assert exc.value.status == 400


def test_intent_rejects_inverted_date_range():
    with pytest.raises(ValidationError):
        Intent.from_dict({"queryType": "trend_price", "filters": {"dateFrom": "2024-05", "dateTo": "2024-04"}})
    # same bare month on both ends is a valid one-month window
    intent = Intent.from_dict({"queryType": "trend_price", "filters": {"dateFrom": "2024-05", "dateTo": "2024-05"}})
    assert intent.filters.date_from == "2024-05"


def test_parse_intent_text_tolerates_surrounding_prose():
    text = 'Sure!\n```json\n{"queryType": "volume_trend", "filters": {}, "title": "Volume"}\n```'
    intent = parse_intent_text(text)
    assert intent.query_type == "trend_volume"
    assert intent.title == "Volume"


def test_parse_intent_text_errors_are_422():
    for text in ("no json here", "{not json}", '{"filters": {}}'):
        with pytest.raises(ParseError) as exc:
            parse_intent_text(text)
        assert exc.value.status == 422


def test_fetch_intent_validates_before_calling_model():
    client = fake_client(content="{}")
    service = IntentService(api_key="k", client=client)
    with pytest.raises(ValidationError):
        asyncio.run(service.fetch_intent("", META))
    with pytest.raises(ValidationError):
        asyncio.run(service.fetch_intent("prices?", {"projects": [], "districts": [], "layouts": []}))
    assert client.chat.completions.calls == []


def test_fetch_intent_sends_meta_and_context():
    content = json.dumps({"queryType": "trend_price", "filters": {"districts": ["Yas Island"]}, "title": "Yas"})
    client = fake_client(content=content)
    service = IntentService(api_key="k", model="test-model", client=client)
    context = {"parentPrompt": "prices on Yas", "parentTitle": "Yas", "parentAnalysis": "Prices rose."}
    intent = asyncio.run(service.fetch_intent("and rates?", META, context=context))

    assert intent.filters.districts == ["Yas Island"]
    call = client.chat.completions.calls[0]
    assert call["model"] == "test-model"
    user = call["messages"][1]["content"]
    assert "Noya - Phase 1" in user
    assert "2019-01-02 to 2025-06-30" in user
    assert "Previous conversation" in user
    assert "Prices rose." in user
    assert "Property types: Apartment, Villa" in user
    assert "sale prices AED 350,000 to 42,000,000" in user
    assert "trend_price|trend_rate|trend_volume|compare_projects|compare_districts|compare_layouts" in user


def test_fetch_intent_wraps_upstream_errors():
    service = IntentService(api_key="k", client=fake_client(error=openai.OpenAIError("boom")))
    with pytest.raises(UpstreamError) as exc:
        asyncio.run(service.fetch_intent("prices?", META))
    assert exc.value.status == 502


def test_fetch_intent_without_key_is_upstream_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    service = IntentService(api_key=None)
    with pytest.raises(UpstreamError):
        asyncio.run(service.fetch_intent("prices?", META))


def test_intent_rejects_impossible_calendar_dates():
    for raw in ("2024-02-31", "2023-02-29", "2024-04-31", "2024-00"):
        with pytest.raises(ValidationError):
            Intent.from_dict({"queryType": "trend_price", "filters": {"dateFrom": raw}})
    intent = Intent.from_dict({"queryType": "trend_price", "filters": {"dateTo": "2024-02-29"}})
    assert intent.filters.date_to == "2024-02-29"
