import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import AppSettings
from .errors import UpstreamError
from .schemas import LatLng, Shop


logger = logging.getLogger("uvicorn.error")

PLACES_API_BASE = "https://places.googleapis.com/v1"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

SUMMARY_FIELDS = [
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "photos",
    "types",
    "rating",
]
DETAIL_FIELDS = SUMMARY_FIELDS + ["reviews"]


def _field_mask(fields: List[str], prefix: str = "") -> str:
    return ",".join(f"{prefix}{name}" for name in fields)


class PlacesClient:
    """Google Places (New) + Geocoding client.

    Transport failures raise UpstreamError; "nothing found" is an empty list or None.
    """

    def __init__(self, api_key: Optional[str], language: str = "ja", max_results: int = 20):
        self.api_key = api_key
        self.language = language
        self.max_results = max_results
        self.client = httpx.AsyncClient(
            timeout=30,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "PlacesClient":
        return cls(settings.google_maps_api_key, language=settings.places_language)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self, fields: List[str], prefix: str = "places.") -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamError("GOOGLE_MAPS_API_KEY is not configured")
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": _field_mask(fields, prefix),
        }

    async def search_nearby(self, lat: float, lng: float, radius: float) -> List[Shop]:
        payload = {
            "includedTypes": ["restaurant"],
            "maxResultCount": self.max_results,
            "languageCode": self.language,
            "locationRestriction": {
                "circle": {"center": {"latitude": lat, "longitude": lng}, "radius": float(radius)}
            },
        }
        data = await self._post(f"{PLACES_API_BASE}/places:searchNearby", payload, self._headers(SUMMARY_FIELDS))
        return [Shop.from_place(place) for place in data.get("places") or []]

    async def search_by_text(
        self,
        query: str,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius: Optional[float] = None,
    ) -> List[Shop]:
        payload: Dict[str, Any] = {
            "textQuery": query,
            "maxResultCount": self.max_results,
            "languageCode": self.language,
        }
        if lat is not None and lng is not None:
            payload["locationBias"] = {
                "circle": {"center": {"latitude": lat, "longitude": lng}, "radius": float(radius or 1000)}
            }
        data = await self._post(f"{PLACES_API_BASE}/places:searchText", payload, self._headers(SUMMARY_FIELDS))
        return [Shop.from_place(place) for place in data.get("places") or []]

    async def get_details(self, place_id: str) -> Optional[Shop]:
        headers = self._headers(DETAIL_FIELDS, prefix="")
        headers["Accept-Language"] = self.language
        try:
            resp = await self.client.get(f"{PLACES_API_BASE}/places/{place_id}", headers=headers)
        except httpx.RequestError as exc:
            raise UpstreamError(f"Place details request failed: {exc}") from exc
        if resp.status_code in (400, 404):
            logger.info("Place %s not found (%s)", place_id, resp.status_code)
            return None
        if resp.is_error:
            raise UpstreamError(f"Place details HTTP {resp.status_code}: {resp.text[:200]}")
        return Shop.from_place(resp.json())

    async def geocode(self, address: str) -> Optional[LatLng]:
        if not self.api_key:
            raise UpstreamError("GOOGLE_MAPS_API_KEY is not configured")
        params = {"address": address, "key": self.api_key, "language": self.language}
        try:
            resp = await self.client.get(GEOCODE_URL, params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(f"Geocoding failed: {exc}") from exc
        results = data.get("results") or []
        if not results:
            logger.info("Geocoding returned no results for %r (status=%s)", address, data.get("status"))
            return None
        loc = results[0]["geometry"]["location"]
        return LatLng(lat=loc["lat"], lng=loc["lng"])

    async def fetch_photo(self, name: str, max_width: int, max_height: int) -> Tuple[bytes, str]:
        if not self.api_key:
            raise UpstreamError("GOOGLE_MAPS_API_KEY is not configured")
        params = {"maxHeightPx": max_height, "maxWidthPx": max_width, "key": self.api_key}
        try:
            resp = await self.client.get(f"{PLACES_API_BASE}/{name}/media", params=params, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"Photo fetch HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Photo fetch failed: {exc}") from exc
        return resp.content, resp.headers.get("content-type", "image/jpeg")

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"Places HTTP {exc.response.status_code}: {exc.response.text[:200]}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Places request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("Places returned a non-JSON body") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
