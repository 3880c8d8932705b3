import json

from insight.exec.filters import FilterSet
from insight.planner.intent import Intent
from insight.report.store import Post, Reply
from insight.utils.deeplink import build_share_url, decode_post, encode_post, parse_share_url

import pytest


def sample_post():
    chart = [{"month": f"2024-{m:02d}", "Noya - Phase 1": 2000000 + m * 1000, "Sun Tower": 1500000} for m in range(1, 13)]
    return Post(
        id="abc123",
        prompt="Compare Noya and Sun Tower in 2024",
        title="Noya vs Sun Tower",
        status="done",
        short_text="Noya led on price.",
        intent=Intent("compare_projects", FilterSet(projects=["Noya - Phase 1", "Sun Tower"]), "multiline", "Noya vs Sun Tower"),
        chart_data=chart,
        chart_keys=["Noya - Phase 1", "Sun Tower"],
        summary_stats={"series": [], "date_range": {"from": "2024-01", "to": "2024-12"}},
        replies=[Reply(id="r1", prompt="why?", status="done", analysis_text="Because.")],
    )


def test_encode_decode_round_trip():
    post = sample_post()
    encoded = encode_post(post)
    assert decode_post(encoded) == post
    # URL safe and compressed
    assert all(c.isalnum() or c in "-_" for c in encoded)
    assert len(encoded) < len(json.dumps(post.to_dict()))


@pytest.mark.parametrize("value", [None, "", "!!!", "AAAA", "bm90IGNvbXByZXNzZWQ"])
def test_decode_corrupt_input_is_none(value):
    assert decode_post(value) is None


def test_encode_none():
    assert encode_post(None) == ""


def test_share_url_round_trip():
    post = sample_post()
    url = build_share_url(post, "http://localhost:5173/")
    assert url.startswith("http://localhost:5173/?post=abc123&d=")
    post_id, decoded = parse_share_url(url)
    assert post_id == "abc123"
    assert decoded == post


def test_share_url_without_payload():
    assert parse_share_url("http://localhost:5173/?post=abc123") == ("abc123", None)
    assert parse_share_url("http://localhost:5173/") == (None, None)


def test_share_url_requires_id():
    with pytest.raises(ValueError):
        build_share_url(Post(id="", prompt="x"), "http://localhost:5173/")
