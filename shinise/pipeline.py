import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .agents import TaskType
from .cache import CacheSet, coordinates_key, search_cache_key
from .config import AppSettings
from .dispatcher import Dispatcher
from .errors import ConfigError, InvalidRequestError, NotFoundError
from .executor import Executor
from .llm import GeminiClient
from .places import PlacesClient
from .schemas import (
    AnalysisVerdict,
    Candidate,
    LatLng,
    ReviewAnalysis,
    ScoredShop,
    Shop,
    ShopGuide,
)


logger = logging.getLogger("uvicorn.error")

SEARCH_MODES = ("standard", "adventure")
FALLBACK_REASONING = "AIによる候補抽出ができなかったため、キーワード検索の結果を表示しています。"
FALLBACK_SCORE = 50
UNJUDGED_REASONING = "未判定"
DETAILS_FAILED_REASONING = "詳細情報取得失敗"
MAP_PLACEHOLDER_URL = "https://placehold.co/800x600/png?text=Generated+Walking+Course+Map"
NO_REVIEWS_ANALYSIS = ReviewAnalysis(
    is_suspicious=False,
    suspicion_level="low",
    suspicion_reason="口コミが見つかりませんでした",
    negative_points=[],
    reality_summary="口コミがないため分析不能",
)

MAP_PROMPT = """
Draw an artistic, hand-drawn style illustration map of a walking course in {station}, Japan.
Highlight these shops: {shops}.
The style should be a "Tabi no Shiori" (Travel Guidebook) aesthetic.
Use warm watercolor textures, soft pastel colors, and a golden/premium feel.
The map should be visually pleasing, cute but elegant.
White background with rough paper texture edges.
"""


def placeholder_verdict() -> AnalysisVerdict:
    return AnalysisVerdict(score=0, reasoning=UNJUDGED_REASONING, short_summary="-", is_shinise=False)


def fallback_verdict() -> AnalysisVerdict:
    return AnalysisVerdict(score=FALLBACK_SCORE, reasoning=FALLBACK_REASONING, short_summary="-", is_shinise=False)


def error_verdict(message: str) -> AnalysisVerdict:
    return AnalysisVerdict(score=0, reasoning=f"AIエラー: {message}", short_summary="判定不能", is_shinise=False)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def verdict_from(data: Dict[str, Any], candidate: Optional[Candidate] = None) -> AnalysisVerdict:
    """Merge the model's appraisal with what discovery already knew about the shop."""
    score = _number(data.get("score"))
    founding = str(data.get("founding_year") or "").strip() or "不明"
    if founding == "不明" and candidate and candidate.founding_year:
        founding = candidate.founding_year
    rating = _number(data.get("tabelog_rating"))
    if not rating and candidate:
        rating = candidate.tabelog_rating
    return AnalysisVerdict(
        score=int(round(score)) if score is not None else 0,
        reasoning=str(data.get("reasoning") or ""),
        short_summary=str(data.get("short_summary") or "-"),
        is_shinise=bool(data.get("is_shinise")),
        founding_year=founding,
        tabelog_rating=rating or None,
    )


def parse_candidates(data: Any) -> List[Candidate]:
    items = data.get("candidates") if isinstance(data, dict) else data
    candidates: List[Candidate] = []
    for item in items or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        try:
            candidates.append(Candidate.model_validate({k: v for k, v in item.items() if v is not None}))
        except ValidationError as exc:
            logger.warning("Dropping malformed candidate %r: %s", item.get("name"), exc)
    return candidates


def sort_by_score(results: Sequence[ScoredShop]) -> List[ScoredShop]:
    # sorted() is stable with reverse=True, so ties keep discovery order.
    return sorted(results, key=lambda r: r.ai_analysis.score, reverse=True)


class DiscoveryPipeline:
    def __init__(
        self,
        settings: AppSettings,
        executor: Executor,
        places: PlacesClient,
        dispatcher: Dispatcher,
        caches: CacheSet,
        llm: Optional[GeminiClient] = None,
    ):
        self.settings = settings
        self.executor = executor
        self.places = places
        self.dispatcher = dispatcher
        self.caches = caches
        self.llm = llm or executor.llm

    async def resolve_location(
        self,
        query: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> LatLng:
        if lat is not None and lng is not None:
            return LatLng(lat=lat, lng=lng)
        if not query or not query.strip():
            raise InvalidRequestError("Missing lat/lng or valid station")
        location = await self.places.geocode(query.strip())
        if location is None:
            raise NotFoundError("Station not found")
        return location

    def search_key(
        self,
        location_query: Optional[str],
        lat: Optional[float],
        lng: Optional[float],
        genre: Optional[str],
        mode: str,
    ) -> Optional[str]:
        """Cache key for a search; None when there is nothing to key on yet."""
        if location_query and location_query.strip():
            location = location_query
        elif lat is not None and lng is not None:
            location = coordinates_key(lat, lng)
        else:
            return None
        return search_cache_key(location, genre, mode, self.settings.search_cache_version)

    async def cached_search(
        self,
        location_query: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        genre: Optional[str] = None,
        mode: str = "standard",
    ) -> Optional[Dict[str, Any]]:
        """Serve a search from the cache without touching any provider."""
        key = self.search_key(location_query, lat, lng, genre, mode)
        if key is None:
            return None
        entry = await self.caches.searches.get(key)
        if entry is None or not isinstance(entry.payload.get("shops"), list):
            return None
        shops = entry.payload["shops"]
        return {"shops": shops, "count": len(shops), "cached": True}

    async def search_shops(
        self,
        location_query: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        genre: Optional[str] = None,
        mode: str = "standard",
        force_refresh: bool = False,
        radius: Optional[float] = None,
    ) -> Dict[str, Any]:
        if mode not in SEARCH_MODES:
            raise InvalidRequestError(f"Unknown search mode: {mode}")
        genre = genre.strip() if genre and genre.strip() else None
        if force_refresh:
            logger.info("Search cache bypassed (force refresh): %s", location_query or (lat, lng))
        else:
            cached = await self.cached_search(location_query, lat, lng, genre, mode)
            if cached is not None:
                return cached

        # Geocoding only happens on a cache miss.
        origin = await self.resolve_location(location_query, lat, lng)
        key = self.search_key(location_query, origin.lat, origin.lng, genre, mode)

        radius = radius or self.settings.search_radius_m
        if location_query and location_query.strip():
            results = await self._ai_discovery(location_query.strip(), origin, genre, mode, radius)
        else:
            results = await self._keyword_discovery(origin, genre, radius)
        if not results:
            raise NotFoundError("No shops found")

        shops = [r.to_payload() for r in sort_by_score(results)]
        # Written even when some verdicts are error placeholders.
        await self.caches.searches.set(key, {"shops": shops, "count": len(shops)})
        return {"shops": shops, "count": len(shops), "cached": False}

    async def discover_candidates(self, location: str, genre: Optional[str], mode: str) -> List[Candidate]:
        completion = await self.executor.complete(TaskType.CANDIDATES, None, location=location, genre=genre, mode=mode)
        if not completion.ok:
            if isinstance(completion.error, ConfigError):
                logger.warning("AI disabled; skipping candidate discovery")
            return []
        candidates = parse_candidates(completion.data)
        logger.info("Candidate discovery (%s, %s): %s candidates", location, mode, len(candidates))
        return candidates

    async def hydrate(
        self,
        candidates: Sequence[Candidate],
        location: str,
        origin: LatLng,
        radius: float,
    ) -> List[Tuple[Shop, Candidate]]:
        async def _lookup(candidate: Candidate) -> Optional[Shop]:
            matches = await self.places.search_by_text(f"{candidate.name} {location}", origin.lat, origin.lng, radius)
            return matches[0] if matches else None

        resolved: Dict[int, Tuple[Shop, Candidate]] = {}
        async for outcome in self.dispatcher.map(candidates, _lookup):
            if outcome.error is not None or outcome.result is None:
                logger.info("Candidate %r did not resolve to a place; dropped", outcome.item.name)
                continue
            resolved[outcome.index] = (outcome.result, outcome.item)

        hydrated: List[Tuple[Shop, Candidate]] = []
        seen = set()
        for idx in sorted(resolved):
            shop, candidate = resolved[idx]
            if shop.id and shop.id in seen:
                continue
            seen.add(shop.id)
            hydrated.append((shop, candidate))
        return hydrated

    async def score(
        self,
        entries: Sequence[Tuple[Shop, Optional[Candidate]]],
        limit: int,
    ) -> List[ScoredShop]:
        """Score the first `limit` entries; the rest get the placeholder verdict."""
        head = list(entries[:limit])

        async def _appraise(entry: Tuple[Shop, Optional[Candidate]]) -> AnalysisVerdict:
            shop, candidate = entry
            details = await self.places.get_details(shop.id) if shop.id else shop
            if details is None:
                return AnalysisVerdict(score=0, reasoning=DETAILS_FAILED_REASONING, short_summary="-")
            completion = await self.executor.complete(TaskType.SCORE, details)
            if not completion.ok:
                return error_verdict(str(completion.error))
            data = completion.data if isinstance(completion.data, dict) else {}
            return verdict_from(data, candidate)

        verdicts: Dict[int, AnalysisVerdict] = {}
        async for outcome in self.dispatcher.map(head, _appraise):
            if outcome.error is not None:
                verdicts[outcome.index] = AnalysisVerdict(
                    score=0, reasoning=f"{DETAILS_FAILED_REASONING}: {outcome.error}", short_summary="-"
                )
            else:
                verdicts[outcome.index] = outcome.result
        scored = [ScoredShop(shop=shop, ai_analysis=verdicts[i]) for i, (shop, _c) in enumerate(head)]
        rest = [ScoredShop(shop=shop, ai_analysis=placeholder_verdict()) for shop, _c in entries[limit:]]
        return scored + rest

    async def _keyword_search(self, origin: LatLng, genre: Optional[str], radius: float) -> List[Shop]:
        if genre:
            return await self.places.search_by_text(genre, origin.lat, origin.lng, radius)
        return await self.places.search_nearby(origin.lat, origin.lng, radius)

    async def _ai_discovery(
        self,
        location: str,
        origin: LatLng,
        genre: Optional[str],
        mode: str,
        radius: float,
    ) -> List[ScoredShop]:
        candidates = await self.discover_candidates(location, genre, mode)
        hydrated = await self.hydrate(candidates, location, origin, radius) if candidates else []
        if hydrated:
            return await self.score(hydrated, self.settings.ai_score_limit)
        logger.info("No AI candidates for %s; falling back to keyword search", location)
        shops = await self._keyword_search(origin, genre, radius)
        return [ScoredShop(shop=shop, ai_analysis=fallback_verdict()) for shop in shops]

    async def _keyword_discovery(self, origin: LatLng, genre: Optional[str], radius: float) -> List[ScoredShop]:
        shops = await self._keyword_search(origin, genre, radius)
        return await self.score([(shop, None) for shop in shops], self.settings.keyword_score_limit)

    async def get_shop(self, place_id: str, force_refresh: bool = False) -> Dict[str, Any]:
        if not place_id:
            raise InvalidRequestError("Missing ID")
        if not force_refresh:
            entry = await self.caches.shops.get(place_id)
            if entry is not None and entry.payload.get("shop"):
                return {"shop": entry.payload["shop"], "aiGuide": entry.payload.get("aiGuide"), "cached": True}
        details = await self.places.get_details(place_id)
        if details is None:
            raise NotFoundError("Shop not found")
        completion = await self.executor.complete(TaskType.GUIDE, details)
        if completion.ok and isinstance(completion.data, dict):
            guide = ShopGuide.model_validate({k: str(v) for k, v in completion.data.items() if v is not None})
        elif isinstance(completion.error, ConfigError):
            guide = ShopGuide(history_background="AI接続エラー")
        else:
            guide = ShopGuide(history_background=f"エラー: {completion.error}")
        payload = {"shop": details.to_payload(), "aiGuide": guide.to_payload()}
        if completion.ok:
            await self.caches.shops.set(place_id, payload)
        return {**payload, "cached": False}

    async def analyze_reviews(self, place_id: str, shop_name: str) -> ReviewAnalysis:
        if not place_id or not shop_name:
            raise InvalidRequestError("Missing placeId or shopName")
        details = await self.places.get_details(place_id)
        if details is None:
            raise NotFoundError("Shop details not found")
        if not details.reviews:
            return NO_REVIEWS_ANALYSIS.model_copy()
        subject = details.model_copy(update={"name": shop_name})
        completion = await self.executor.complete(TaskType.REVIEW_AUDIT, subject)
        if not completion.ok:
            reason = "AI未接続" if isinstance(completion.error, ConfigError) else f"エラー: {completion.error}"
            return ReviewAnalysis(suspicion_reason=reason, reality_summary="エラーにより分析失敗")
        try:
            return ReviewAnalysis.model_validate(completion.data)
        except ValidationError as exc:
            logger.warning("Review analysis had unexpected shape: %s", exc)
            return ReviewAnalysis(suspicion_reason=f"エラー: {exc.error_count()} invalid fields", reality_summary="エラーにより分析失敗")

    async def generate_course_map(self, shop_names: Sequence[str], station: Optional[str] = None) -> str:
        names = [n for n in shop_names if n]
        if not names:
            raise InvalidRequestError("Shops are required")
        prompt = MAP_PROMPT.format(station=station or "Unknown Location", shops=", ".join(names)).strip()
        if not self.llm.enabled:
            return MAP_PLACEHOLDER_URL
        logger.info("Generating course map for %s shops around %s", len(names), station)
        image = await self.llm.generate_image(prompt)
        return image or MAP_PLACEHOLDER_URL
