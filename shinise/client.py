"""Client tier: session-scoped response cache and a reader for the service's streams."""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import urlencode

import httpx

from .errors import ShiniseError
from .schemas import AgentResult


logger = logging.getLogger("uvicorn.error")

DEFAULT_API_BASE = "http://127.0.0.1:8000"


class ApiError(ShiniseError):
    kind = "api"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class SessionCache:
    """URL -> parsed response. No TTL; lives as long as the client session."""

    def __init__(self):
        self._entries: Dict[str, Any] = {}

    def get(self, url: str) -> Optional[Any]:
        return self._entries.get(url)

    def set(self, url: str, value: Any) -> None:
        self._entries[url] = value

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def search_url(
    station: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    genre: Optional[str] = None,
    mode: str = "standard",
    force: bool = False,
) -> str:
    params = []
    if station:
        params.append(("station", station))
    if lat is not None and lng is not None:
        params.extend([("lat", str(lat)), ("lng", str(lng))])
    if genre:
        params.append(("genre", genre))
    if mode:
        params.append(("mode", mode))
    if force:
        params.append(("force", "true"))
    return "/api/search?" + urlencode(params)


def parse_keep_alive(body: str) -> Any:
    """Keep-alive bodies are leading spaces followed by a single JSON document."""
    text = body.strip()
    if not text:
        raise ApiError("Empty response body")
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ApiError(f"Malformed response body: {exc}") from exc


class AgentBoard:
    """Owns agent results per shop; only `apply` mutates it."""

    def __init__(self):
        self.results: Dict[str, Dict[str, AgentResult]] = {}
        self.pending: Dict[str, Set[str]] = {}

    def start(self, shop_key: str, tasks: Iterable[str]) -> None:
        self.pending.setdefault(shop_key, set()).update(tasks)

    def apply(self, shop_key: str, result: AgentResult) -> None:
        self.results.setdefault(shop_key, {})[result.agent_type] = result
        self.pending.get(shop_key, set()).discard(result.agent_type)

    def is_done(self, shop_key: str) -> bool:
        return not self.pending.get(shop_key)

    def results_for(self, shop_key: str) -> List[AgentResult]:
        return list(self.results.get(shop_key, {}).values())

    async def consume(self, shop_key: str, inbox: asyncio.Queue) -> None:
        while True:
            message = await inbox.get()
            if message is None:
                return
            self.apply(shop_key, message)


class ShiniseClient:
    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session_cache: Optional[SessionCache] = None,
        timeout: float = 300.0,
    ):
        self.client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.session_cache = session_cache if session_cache is not None else SessionCache()
        self.board = AgentBoard()

    async def _check(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            await resp.aread()
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            raise ApiError(f"HTTP {resp.status_code}: {detail}", resp.status_code)

    async def search(
        self,
        station: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        genre: Optional[str] = None,
        mode: str = "standard",
        force: bool = False,
    ) -> Dict[str, Any]:
        cache_key = search_url(station, lat, lng, genre, mode)
        if not force:
            cached = self.session_cache.get(cache_key)
            if cached is not None:
                logger.debug("Session cache hit: %s", cache_key)
                return cached
        resp = await self.client.get(search_url(station, lat, lng, genre, mode, force=force))
        await self._check(resp)
        data = parse_keep_alive(resp.text)
        if isinstance(data, dict) and data.get("error"):
            raise ApiError(str(data["error"]))
        self.session_cache.set(cache_key, data)
        return data

    async def list_agents(self) -> List[Dict[str, str]]:
        resp = await self.client.get("/api/agents")
        await self._check(resp)
        return resp.json().get("agents") or []

    async def get_shop(self, place_id: str, force: bool = False) -> Dict[str, Any]:
        resp = await self.client.get(f"/api/shop/{place_id}", params={"force": "true"} if force else None)
        await self._check(resp)
        return resp.json()

    async def run_agent(self, agent_type: str, shop: Dict[str, Any], force: bool = False) -> AgentResult:
        payload = {
            "agentType": agent_type,
            "shopName": shop.get("name"),
            "shopAddress": shop.get("address") or "",
            "shopId": shop.get("id"),
            "force": force,
        }
        resp = await self.client.post("/api/agent", json=payload)
        await self._check(resp)
        result = AgentResult.model_validate(parse_keep_alive(resp.text))
        self.board.apply(shop.get("id") or shop.get("name") or "", result)
        return result

    async def run_agents(self, shop: Dict[str, Any], tasks: Iterable[str], force: bool = False) -> List[AgentResult]:
        """Run a batch; results land on the board one by one as the stream delivers them."""
        task_list = list(dict.fromkeys(tasks))
        shop_key = shop.get("id") or shop.get("name") or ""
        self.board.start(shop_key, task_list)
        inbox: asyncio.Queue = asyncio.Queue()
        consumer = asyncio.create_task(self.board.consume(shop_key, inbox))
        payload = {
            "agentTypes": task_list,
            "shop": {"id": shop.get("id"), "name": shop.get("name"), "address": shop.get("address") or ""},
            "force": force,
        }
        try:
            async with self.client.stream("POST", "/api/agent/batch", json=payload) as resp:
                await self._check(resp)
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise ApiError(str(data["error"]))
                    await inbox.put(AgentResult.model_validate(data))
        finally:
            await inbox.put(None)
            await consumer
        return self.board.results_for(shop_key)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
