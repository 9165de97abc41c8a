import re
from datetime import timedelta
from pathlib import Path

import pytest

from shinise.cache import CacheSet
from shinise.config import AppSettings
from shinise.db import Database
from shinise.dispatcher import Dispatcher
from shinise.errors import ConfigError, InvalidRequestError, NotFoundError, ParseError
from shinise.executor import Executor
from shinise.pipeline import (
    DETAILS_FAILED_REASONING,
    FALLBACK_REASONING,
    MAP_PLACEHOLDER_URL,
    UNJUDGED_REASONING,
    DiscoveryPipeline,
    parse_candidates,
    verdict_from,
)
from shinise.schemas import Candidate, LatLng
from tests.fakes import (
    CANDIDATES_MARKER,
    GUIDE_MARKER,
    REVIEW_AUDIT_MARKER,
    SCORE_MARKER,
    FakeGeminiClient,
    FakePlacesClient,
    make_shop,
)


NAME_RE = re.compile(r"店名: (.+)")


async def _no_sleep(_delay: float) -> None:
    return None


def score_by_name(scores):
    def _respond(prompt: str) -> dict:
        name = NAME_RE.search(prompt).group(1).strip()
        return {
            "score": scores.get(name, 10),
            "reasoning": f"{name}の評価",
            "short_summary": "昭和の味",
            "is_shinise": scores.get(name, 10) >= 80,
            "founding_year": "不明",
            "tabelog_rating": 0,
        }

    return _respond


async def build_pipeline(tmp_path: Path, llm: FakeGeminiClient, places: FakePlacesClient):
    settings = AppSettings(database_path=str(tmp_path / "pipe.db"), gemini_api_key="k", google_maps_api_key="m")
    db = Database(settings.database_path)
    await db.init()
    executor = Executor(llm, max_retries=1, base_delay=0.0, jitter=0.0, sleep=_no_sleep)
    caches = CacheSet(db, timedelta(days=settings.cache_ttl_days))
    return DiscoveryPipeline(settings, executor, places, Dispatcher(3), caches)


@pytest.mark.asyncio
async def test_empty_candidate_list_falls_back_to_keyword_search(tmp_path):
    nearby = [make_shop(1), make_shop(2)]
    llm = FakeGeminiClient(script=[(CANDIDATES_MARKER, {"candidates": []})])
    places = FakePlacesClient(nearby=nearby)
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops("浅草")
    assert payload["cached"] is False
    assert payload["count"] == 2
    for shop in payload["shops"]:
        assert shop["aiAnalysis"]["score"] == 50
        assert shop["aiAnalysis"]["reasoning"] == FALLBACK_REASONING
    assert places.calls_of("nearby")
    assert not llm.calls_matching(SCORE_MARKER)


@pytest.mark.asyncio
async def test_unparseable_candidates_fall_back_with_genre_text_search(tmp_path):
    llm = FakeGeminiClient(script=[(CANDIDATES_MARKER, ParseError("Malformed JSON"))])
    places = FakePlacesClient(text_results={"寿司": [make_shop(3)]})
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops("浅草", genre="寿司")
    assert [s["id"] for s in payload["shops"]] == ["place3"]
    assert payload["shops"][0]["aiAnalysis"]["score"] == 50
    assert places.calls_of("text") == ["寿司"]


@pytest.mark.asyncio
async def test_twelve_candidates_score_ten_and_sort(tmp_path):
    shops = {f"Cand {i} 浅草": make_shop(i) for i in range(1, 13)}
    candidates = [{"name": f"Cand {i}", "tabelog_rating": 3.5, "founding_year": f"{1900 + i}年創業"} for i in range(1, 13)]
    scores = {f"Shop {i}": 40 + i * 5 for i in range(1, 11)}
    llm = FakeGeminiClient(
        script=[
            (CANDIDATES_MARKER, {"candidates": candidates}),
            (SCORE_MARKER, score_by_name(scores)),
        ]
    )
    places = FakePlacesClient(
        text_handler=lambda q: [shops[q]] if q in shops else [],
        details={s.id: s for s in shops.values()},
    )
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops("浅草")
    result = payload["shops"]
    assert payload["count"] == 12
    assert len(llm.calls_matching(SCORE_MARKER)) == 10

    verdicts = [s["aiAnalysis"] for s in result]
    assert [v["score"] for v in verdicts] == sorted((v["score"] for v in verdicts), reverse=True)
    assert result[0]["id"] == "place10"
    assert verdicts[0]["founding_year"] == "1910年創業"
    assert verdicts[0]["tabelog_rating"] == 3.5

    unjudged = [s for s in result if s["aiAnalysis"]["reasoning"] == UNJUDGED_REASONING]
    assert [s["id"] for s in unjudged] == ["place11", "place12"]
    assert all(s["aiAnalysis"]["score"] == 0 for s in unjudged)


@pytest.mark.asyncio
async def test_unresolved_and_duplicate_candidates_are_dropped(tmp_path):
    shared = make_shop(1)
    lookup = {"A 浅草": [shared], "B 浅草": [], "C 浅草": [shared], "D 浅草": [make_shop(4)]}
    llm = FakeGeminiClient(
        script=[
            (CANDIDATES_MARKER, {"candidates": [{"name": n} for n in "ABCD"]}),
            (SCORE_MARKER, score_by_name({"Shop 1": 90, "Shop 4": 60})),
        ]
    )
    places = FakePlacesClient(text_handler=lambda q: lookup.get(q, []), details={"place1": shared, "place4": make_shop(4)})
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops("浅草")
    assert [s["id"] for s in payload["shops"]] == ["place1", "place4"]


@pytest.mark.asyncio
async def test_score_failure_marks_only_that_shop(tmp_path):
    def flaky_score(prompt: str):
        if "Shop 2" in prompt:
            return ParseError("Malformed JSON")
        return {"score": 85, "reasoning": "r", "short_summary": "s", "is_shinise": True}

    llm = FakeGeminiClient(script=[(SCORE_MARKER, flaky_score)])
    places = FakePlacesClient(nearby=[make_shop(1), make_shop(2)])
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops(lat=35.7, lng=139.8)
    by_id = {s["id"]: s["aiAnalysis"] for s in payload["shops"]}
    assert by_id["place1"]["score"] == 85
    assert by_id["place2"]["score"] == 0
    assert by_id["place2"]["reasoning"].startswith("AIエラー:")
    assert by_id["place2"]["short_summary"] == "判定不能"


@pytest.mark.asyncio
async def test_keyword_search_scores_top_five(tmp_path):
    nearby = [make_shop(i) for i in range(1, 8)]
    llm = FakeGeminiClient(script=[(SCORE_MARKER, score_by_name({}))])
    places = FakePlacesClient(nearby=nearby)
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops(lat=35.7, lng=139.8)
    assert payload["count"] == 7
    assert len(llm.calls_matching(SCORE_MARKER)) == 5
    assert not llm.calls_matching(CANDIDATES_MARKER)
    tail = [s["aiAnalysis"]["reasoning"] for s in payload["shops"][-2:]]
    assert tail == [UNJUDGED_REASONING, UNJUDGED_REASONING]


@pytest.mark.asyncio
async def test_missing_details_marks_verdict(tmp_path):
    llm = FakeGeminiClient()
    places = FakePlacesClient(nearby=[make_shop(1)], details={})
    pipeline = await build_pipeline(tmp_path, llm, places)

    payload = await pipeline.search_shops(lat=35.7, lng=139.8)
    assert payload["shops"][0]["aiAnalysis"]["reasoning"] == DETAILS_FAILED_REASONING
    assert not llm.calls


@pytest.mark.asyncio
async def test_repeat_search_is_served_from_cache(tmp_path):
    llm = FakeGeminiClient(script=[(CANDIDATES_MARKER, {"candidates": []})])
    places = FakePlacesClient(nearby=[make_shop(1)])
    pipeline = await build_pipeline(tmp_path, llm, places)

    first = await pipeline.search_shops("浅草")
    llm_calls = len(llm.calls)
    assert len(places.calls_of("geocode")) == 1
    second = await pipeline.search_shops("  浅草 ")
    assert second["cached"] is True
    assert second["shops"] == first["shops"]
    assert len(llm.calls) == llm_calls
    assert len(places.calls_of("geocode")) == 1
    assert len(places.calls_of("nearby")) == 1


@pytest.mark.asyncio
async def test_force_refresh_reruns_and_overwrites(tmp_path):
    llm = FakeGeminiClient(
        script=[
            (CANDIDATES_MARKER, {"candidates": []}),
            (SCORE_MARKER, score_by_name({"Shop 1": 70})),
        ]
    )
    places = FakePlacesClient(nearby=[make_shop(1)])
    pipeline = await build_pipeline(tmp_path, llm, places)

    await pipeline.search_shops("浅草")
    nearby_calls = len(places.calls_of("nearby"))
    refreshed = await pipeline.search_shops("浅草", force_refresh=True)
    assert refreshed["cached"] is False
    assert len(places.calls_of("nearby")) == nearby_calls + 1
    again = await pipeline.search_shops("浅草")
    assert again["cached"] is True


@pytest.mark.asyncio
async def test_no_results_raises_not_found(tmp_path):
    pipeline = await build_pipeline(tmp_path, FakeGeminiClient(), FakePlacesClient())
    with pytest.raises(NotFoundError):
        await pipeline.search_shops(lat=35.7, lng=139.8)


@pytest.mark.asyncio
async def test_location_resolution_errors(tmp_path):
    pipeline = await build_pipeline(tmp_path, FakeGeminiClient(), FakePlacesClient(geocode_result=None))
    with pytest.raises(InvalidRequestError):
        await pipeline.resolve_location(None)
    with pytest.raises(NotFoundError, match="Station not found"):
        await pipeline.resolve_location("存在しない駅")
    assert await pipeline.resolve_location(None, 35.0, 139.0) == LatLng(lat=35.0, lng=139.0)


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(tmp_path):
    pipeline = await build_pipeline(tmp_path, FakeGeminiClient(), FakePlacesClient())
    with pytest.raises(InvalidRequestError):
        await pipeline.search_shops("浅草", mode="karaoke")


@pytest.mark.asyncio
async def test_get_shop_caches_successful_guides(tmp_path):
    guide = {"history_background": "明治創業", "tabelog_url": "https://tabelog.com/x", "smoking_status": "禁煙"}
    llm = FakeGeminiClient(script=[(GUIDE_MARKER, guide)])
    places = FakePlacesClient(details={"place1": make_shop(1)})
    pipeline = await build_pipeline(tmp_path, llm, places)

    first = await pipeline.get_shop("place1")
    assert first["cached"] is False
    assert first["shop"]["name"] == "Shop 1"
    assert first["aiGuide"]["history_background"] == "明治創業"
    second = await pipeline.get_shop("place1")
    assert second["cached"] is True
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_get_shop_guide_failure_is_not_cached(tmp_path):
    llm = FakeGeminiClient(script=[(GUIDE_MARKER, ConfigError("no key"))])
    places = FakePlacesClient(details={"place1": make_shop(1)})
    pipeline = await build_pipeline(tmp_path, llm, places)

    first = await pipeline.get_shop("place1")
    assert first["aiGuide"]["history_background"] == "AI接続エラー"
    await pipeline.get_shop("place1")
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_get_shop_unknown_id(tmp_path):
    pipeline = await build_pipeline(tmp_path, FakeGeminiClient(), FakePlacesClient(details={}))
    with pytest.raises(NotFoundError):
        await pipeline.get_shop("nope")
    with pytest.raises(InvalidRequestError):
        await pipeline.get_shop("")


@pytest.mark.asyncio
async def test_analyze_reviews_without_reviews_skips_model(tmp_path):
    llm = FakeGeminiClient()
    places = FakePlacesClient(details={"place1": make_shop(1, reviews=[])})
    pipeline = await build_pipeline(tmp_path, llm, places)

    analysis = await pipeline.analyze_reviews("place1", "Shop 1")
    assert analysis.suspicion_reason == "口コミが見つかりませんでした"
    assert analysis.is_suspicious is False
    assert not llm.calls


@pytest.mark.asyncio
async def test_analyze_reviews_runs_ungrounded_audit(tmp_path):
    verdict = {
        "is_suspicious": True,
        "suspicion_level": "high",
        "suspicion_reason": "絶賛ばかり",
        "negative_points": ["待ち時間が長い"],
        "reality_summary": "味は普通",
    }
    llm = FakeGeminiClient(script=[(REVIEW_AUDIT_MARKER, verdict)])
    places = FakePlacesClient(details={"place1": make_shop(1, reviews=["最高!", "神"])})
    pipeline = await build_pipeline(tmp_path, llm, places)

    analysis = await pipeline.analyze_reviews("place1", "表示名")
    assert analysis.suspicion_level == "high"
    assert analysis.negative_points == ["待ち時間が長い"]
    call = llm.calls_matching(REVIEW_AUDIT_MARKER)[0]
    assert call["grounding"] is False
    assert "表示名" in call["prompt"]
    assert "最高!\n---\n神" in call["prompt"]


@pytest.mark.asyncio
async def test_analyze_reviews_requires_ids(tmp_path):
    pipeline = await build_pipeline(tmp_path, FakeGeminiClient(), FakePlacesClient())
    with pytest.raises(InvalidRequestError):
        await pipeline.analyze_reviews("", "Shop")


@pytest.mark.asyncio
async def test_course_map_image_and_placeholder(tmp_path):
    llm = FakeGeminiClient(image="data:image/png;base64,QUJD")
    pipeline = await build_pipeline(tmp_path, llm, FakePlacesClient())
    image = await pipeline.generate_course_map(["神谷バー", "", "駒形どぜう"], "浅草")
    assert image == "data:image/png;base64,QUJD"
    assert "神谷バー, 駒形どぜう" in llm.image_prompts[0]
    assert "浅草" in llm.image_prompts[0]

    llm.image = None
    assert await pipeline.generate_course_map(["神谷バー"]) == MAP_PLACEHOLDER_URL

    llm.enabled = False
    assert await pipeline.generate_course_map(["神谷バー"]) == MAP_PLACEHOLDER_URL
    assert len(llm.image_prompts) == 2

    with pytest.raises(InvalidRequestError):
        await pipeline.generate_course_map([])


def test_verdict_from_backfills_from_candidate():
    candidate = Candidate(name="A", tabelog_rating=3.6, founding_year="1890年創業")
    verdict = verdict_from({"score": "77.6", "reasoning": "r", "founding_year": "不明", "tabelog_rating": 0}, candidate)
    assert verdict.score == 78
    assert verdict.founding_year == "1890年創業"
    assert verdict.tabelog_rating == 3.6


def test_parse_candidates_skips_bad_items():
    parsed = parse_candidates({"candidates": [{"name": "A"}, {"reasoning": "no name"}, "junk", {"name": "B", "tabelog_rating": None}]})
    assert [c.name for c in parsed] == ["A", "B"]
    assert parsed[1].tabelog_rating == 3.0


def test_parse_candidates_coerces_numeric_years_and_suffixed_ratings():
    parsed = parse_candidates(
        {
            "candidates": [
                {"name": "A", "founding_year": 1965, "tabelog_rating": 3.55},
                {"name": "B", "tabelog_rating": "3.4点", "founding_year": "昭和初期"},
                {"name": "C", "tabelog_rating": "評価なし"},
            ]
        }
    )
    assert [c.name for c in parsed] == ["A", "B", "C"]
    assert parsed[0].founding_year == "1965"
    assert parsed[0].tabelog_rating == 3.55
    assert parsed[1].tabelog_rating == 3.4
    assert parsed[1].founding_year == "昭和初期"
    assert parsed[2].tabelog_rating == 3.0


@pytest.mark.asyncio
async def test_analyze_reviews_normalises_suspicion_level_case(tmp_path):
    verdict = {"is_suspicious": True, "suspicion_level": " Medium ", "reality_summary": "普通"}
    llm = FakeGeminiClient(script=[(REVIEW_AUDIT_MARKER, verdict)])
    places = FakePlacesClient(details={"place1": make_shop(1, reviews=["おいしい"])})
    pipeline = await build_pipeline(tmp_path, llm, places)

    analysis = await pipeline.analyze_reviews("place1", "Shop 1")
    assert analysis.is_suspicious is True
    assert analysis.suspicion_level == "medium"
