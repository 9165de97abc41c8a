import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from .agents import TaskType
from .cache import CacheSet
from .config import AppSettings, load_settings
from .db import Database
from .dispatcher import AgentService, Dispatcher
from .errors import InvalidRequestError, NotFoundError, ShiniseError, UpstreamError
from .executor import Executor
from .llm import GeminiClient
from .pipeline import SEARCH_MODES, DiscoveryPipeline
from .places import PlacesClient
from .schemas import (
    AgentBatchRequest,
    AgentRequest,
    AgentResult,
    AnalyzeReviewsRequest,
    CourseMapRequest,
    Shop,
)


logger = logging.getLogger("uvicorn.error")

MAX_PHOTO_PX = 400
STREAM_HEADERS = {"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"}
ERROR_STATUS = {
    InvalidRequestError: 400,
    NotFoundError: 404,
    UpstreamError: 502,
}

router = APIRouter()
_background: Set[asyncio.Future] = set()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_places_client(request: Request) -> PlacesClient:
    return request.app.state.places_client


def get_agent_service(request: Request) -> AgentService:
    return request.app.state.agent_service


def get_pipeline(request: Request) -> DiscoveryPipeline:
    return request.app.state.pipeline


def http_error(exc: ShiniseError) -> HTTPException:
    for cls, status in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal Server Error")


def error_payload(exc: BaseException) -> Dict[str, Any]:
    kind = getattr(exc, "kind", "internal")
    return {"error": str(exc) or "Internal Server Error", "kind": kind}


def agent_error_payload(agent_type: str, exc: BaseException) -> Dict[str, Any]:
    return {
        "agentType": agent_type,
        "agentName": "Error",
        "icon": "❌",
        "summary": "通信エラー",
        "details": [str(exc) or "Internal Server Error"],
        "riskLevel": "caution",
    }


def origin_allowed(origin: Optional[str], allowed: str) -> bool:
    if not origin:
        return True
    if "localhost" in origin or "127.0.0.1" in origin:
        return True
    return bool(allowed) and origin.startswith(allowed)


def clamp_px(raw: Optional[str]) -> int:
    try:
        value = int(raw) if raw is not None else MAX_PHOTO_PX
    except ValueError:
        return MAX_PHOTO_PX
    if value <= 0 or value > MAX_PHOTO_PX:
        return MAX_PHOTO_PX
    return value


def parse_agent_task(raw: Optional[str]) -> TaskType:
    try:
        task = TaskType(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown agent type: {raw}")
    if task not in TaskType.agents():
        raise HTTPException(status_code=400, detail=f"Not a selectable agent: {raw}")
    return task


def _detach(task: asyncio.Future) -> None:
    # The computation runs to completion even if the client went away.
    _background.add(task)
    task.add_done_callback(_background.discard)


async def keep_alive_stream(
    work: Awaitable[Dict[str, Any]],
    interval: float,
    on_error: Callable[[BaseException], Dict[str, Any]] = error_payload,
) -> AsyncIterator[str]:
    """Yield a space every `interval` seconds until `work` finishes, then its JSON."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=interval)
            if done:
                break
            yield " "
        try:
            payload = task.result()
        except Exception as exc:
            logger.exception("Streamed request failed")
            payload = on_error(exc)
        yield json.dumps(payload, ensure_ascii=False)
    finally:
        if not task.done():
            _detach(task)


async def ndjson_stream(results: AsyncIterator[AgentResult], interval: float) -> AsyncIterator[str]:
    """One JSON document per line, in completion order, with keep-alive spaces between."""
    iterator = results.__aiter__()
    pending: Optional[asyncio.Future] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield " "
                continue
            try:
                item = pending.result()
            except StopAsyncIteration:
                pending = None
                break
            except Exception as exc:
                logger.exception("Agent batch failed")
                pending = None
                yield json.dumps(error_payload(exc), ensure_ascii=False) + "\n"
                break
            pending = None
            yield json.dumps(item.to_payload(), ensure_ascii=False) + "\n"
    finally:
        if pending is not None and not pending.done():
            _detach(pending)


@router.get("/api/status")
async def status(
    settings: AppSettings = Depends(get_settings),
    places: PlacesClient = Depends(get_places_client),
):
    return {
        "ok": True,
        "aiEnabled": settings.ai_enabled,
        "placesEnabled": places.enabled,
        "model": settings.model_id,
        "agentConcurrency": settings.agent_concurrency,
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/agents")
async def list_agents(service: AgentService = Depends(get_agent_service)):
    return {"agents": service.catalog()}


@router.get("/api/search")
async def search(
    station: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    genre: Optional[str] = None,
    mode: str = "standard",
    force: bool = False,
    radius: Optional[int] = None,
    settings: AppSettings = Depends(get_settings),
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
):
    if mode not in SEARCH_MODES:
        raise HTTPException(status_code=400, detail=f"Unknown search mode: {mode}")
    if not force:
        cached = await pipeline.cached_search(station, lat, lng, genre, mode)
        if cached is not None:
            return cached
    try:
        origin = await pipeline.resolve_location(station, lat, lng)
    except ShiniseError as exc:
        raise http_error(exc)
    work = pipeline.search_shops(
        location_query=station,
        lat=origin.lat,
        lng=origin.lng,
        genre=genre,
        mode=mode,
        force_refresh=force,
        radius=radius,
    )
    return StreamingResponse(
        keep_alive_stream(work, settings.keep_alive_interval_s),
        media_type="application/json",
        headers=STREAM_HEADERS,
    )


@router.post("/api/agent")
async def run_agent(
    body: AgentRequest,
    settings: AppSettings = Depends(get_settings),
    service: AgentService = Depends(get_agent_service),
):
    if not body.agent_type or not body.shop_name:
        raise HTTPException(status_code=400, detail="Missing required fields")
    task = parse_agent_task(body.agent_type)
    shop = Shop(id=body.shop_id or "", name=body.shop_name, address=body.shop_address)
    logger.info("Deploying agent %s for %s", task.value, shop.name)

    async def work() -> Dict[str, Any]:
        result = await service.run_agent_task(task, shop, force_refresh=body.force)
        return result.to_payload()

    return StreamingResponse(
        keep_alive_stream(work(), settings.keep_alive_interval_s, lambda exc: agent_error_payload(task.value, exc)),
        media_type="application/json",
        headers=STREAM_HEADERS,
    )


@router.post("/api/agent/batch")
async def run_agent_batch(
    body: AgentBatchRequest,
    settings: AppSettings = Depends(get_settings),
    service: AgentService = Depends(get_agent_service),
):
    if not body.agent_types or not body.shop.name:
        raise HTTPException(status_code=400, detail="Missing required fields")
    tasks = [parse_agent_task(raw) for raw in body.agent_types]
    shop = Shop(id=body.shop.id or "", name=body.shop.name, address=body.shop.address)
    results = service.run_agent_batch(tasks, shop, force_refresh=body.force)
    return StreamingResponse(
        ndjson_stream(results, settings.keep_alive_interval_s),
        media_type="application/x-ndjson",
        headers=STREAM_HEADERS,
    )


@router.get("/api/shop/{place_id}")
async def get_shop(
    place_id: str,
    force: bool = False,
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
):
    try:
        return await pipeline.get_shop(place_id, force_refresh=force)
    except ShiniseError as exc:
        raise http_error(exc)


@router.post("/api/analyze-reviews")
async def analyze_reviews(
    body: AnalyzeReviewsRequest,
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
):
    try:
        analysis = await pipeline.analyze_reviews(body.place_id or "", body.shop_name or "")
    except ShiniseError as exc:
        raise http_error(exc)
    return {"analysis": analysis.to_payload()}


@router.post("/api/course/map")
async def course_map(
    body: CourseMapRequest,
    pipeline: DiscoveryPipeline = Depends(get_pipeline),
):
    names = [str(shop.get("name") or "") for shop in body.shops if isinstance(shop, dict)]
    try:
        map_url = await pipeline.generate_course_map(names, body.station)
    except ShiniseError as exc:
        raise http_error(exc)
    return {"mapUrl": map_url}


@router.get("/api/image")
async def photo_proxy(
    request: Request,
    name: Optional[str] = None,
    settings: AppSettings = Depends(get_settings),
    places: PlacesClient = Depends(get_places_client),
):
    origin = request.headers.get("origin") or request.headers.get("referer")
    if not origin_allowed(origin, settings.allowed_origin):
        logger.warning("[Security Block] Blocked request from unauthorized origin: %s", origin)
        raise HTTPException(status_code=403, detail="Forbidden: Unauthorized Origin")
    if not name:
        raise HTTPException(status_code=400, detail="Missing photo name")
    max_width = clamp_px(request.query_params.get("maxWidthPx"))
    max_height = clamp_px(request.query_params.get("maxHeightPx"))
    try:
        content, content_type = await places.fetch_photo(name, max_width, max_height)
    except ShiniseError as exc:
        raise http_error(exc)
    return Response(content=content, media_type=content_type, headers={"Cache-Control": "public, max-age=86400"})


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[GeminiClient] = None,
    places_client: Optional[PlacesClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if not app.state.settings.ai_enabled:
            logger.warning("AI credentials are not set; agents will return degraded results")
        try:
            yield
        finally:
            await app.state.llm_client.close()
            await app.state.places_client.close()

    app = FastAPI(title="Shinise Discovery API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or GeminiClient.from_settings(settings)
    app.state.places_client = places_client or PlacesClient.from_settings(settings)
    caches = CacheSet(app.state.db, timedelta(days=settings.cache_ttl_days))
    executor = Executor(
        app.state.llm_client,
        max_retries=settings.agent_max_retries,
        base_delay=settings.agent_base_delay_s,
        jitter=settings.agent_jitter_s,
    )
    dispatcher = Dispatcher(settings.agent_concurrency)
    app.state.caches = caches
    app.state.agent_service = AgentService(executor, dispatcher, caches.agents)
    app.state.pipeline = DiscoveryPipeline(settings, executor, app.state.places_client, dispatcher, caches)

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SHINISE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "shinise.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
