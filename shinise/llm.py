import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import AppSettings
from .errors import ConfigError, ModelError, ParseError, RateLimitError


logger = logging.getLogger("uvicorn.error")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_BRACED_RE = re.compile(r"(\{[\s\S]*\})")


def clean_json(text: str) -> str:
    """Locate the JSON document inside a model reply.

    Fallback order: fenced ```json block, then the widest {...} span, then the
    text with every fence marker stripped.
    """
    match = _FENCED_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    match = _BRACED_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.replace("```json", "").replace("```", "").strip()


def response_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    chunks = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text") and not p.get("thought")]
    return "".join(chunks)


def grounding_queries(data: Dict[str, Any]) -> List[str]:
    candidates = data.get("candidates") or []
    if not candidates:
        return []
    metadata = candidates[0].get("groundingMetadata") or {}
    queries = metadata.get("webSearchQueries") or []
    return [str(q) for q in queries if q]


@dataclass
class Completion:
    """Result of one model call: parsed JSON or the failure that prevented it."""

    data: Any = None
    error: Optional[ModelError] = None
    search_queries: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        project: Optional[str] = None,
        access_token: Optional[str] = None,
        location: str = "global",
        model_id: str = "gemini-3-pro-preview",
        image_model_id: str = "gemini-3-pro-image-preview",
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.project = project
        self.access_token = access_token
        self.location = location
        self.model_id = model_id
        self.image_model_id = image_model_id
        self.client = httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "GeminiClient":
        return cls(
            settings.gemini_api_key,
            project=settings.google_cloud_project,
            access_token=settings.google_access_token,
            location=settings.vertex_location,
            model_id=settings.model_id,
            image_model_id=settings.image_model_id,
            timeout=settings.model_timeout_s,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key or (self.project and self.access_token))

    def _endpoint(self, model: str) -> Tuple[str, Dict[str, str]]:
        if self.api_key:
            return f"{GEMINI_API_BASE}/models/{model}:generateContent", {"x-goog-api-key": self.api_key}
        if self.project and self.access_token:
            host = "aiplatform.googleapis.com"
            if self.location != "global":
                host = f"{self.location}-{host}"
            url = (
                f"https://{host}/v1/projects/{self.project}/locations/{self.location}"
                f"/publishers/google/models/{model}:generateContent"
            )
            return url, {"Authorization": f"Bearer {self.access_token}"}
        raise ConfigError("AI credentials are not configured (GEMINI_API_KEY or GOOGLE_CLOUD_PROJECT).")

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=False)
        except ValueError:
            pass
        return response.text

    async def generate(
        self,
        prompt: str,
        *,
        grounding: bool = False,
        json_output: bool = True,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Raw generateContent call. Raises ModelError subclasses."""
        url, headers = self._endpoint(model or self.model_id)
        payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if grounding:
            payload["tools"] = [{"googleSearch": {}}]
        if json_output:
            payload["generationConfig"] = {"responseMimeType": "application/json"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = self._extract_error_detail(exc.response)
            if status == 429 or "RESOURCE_EXHAUSTED" in detail:
                raise RateLimitError(f"429 Too Many Requests: {detail}") from exc
            raise ModelError(f"HTTP {status}: {detail}") from exc
        except httpx.RequestError as exc:
            raise ModelError(f"{type(exc).__name__}: {exc}") from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseError("Provider returned a non-JSON envelope") from exc

    async def complete(self, prompt: str, use_grounding: bool = False) -> Completion:
        try:
            data = await self.generate(prompt, grounding=use_grounding)
        except ModelError as exc:
            return Completion(error=exc)
        queries = grounding_queries(data)
        if queries:
            logger.info("[Web Grounding] queries: %s", queries)
        text = response_text(data)
        if not text:
            return Completion(error=ParseError("No text response from model"), search_queries=queries)
        logger.debug("Raw model response: %s...", text[:100])
        try:
            parsed = json.loads(clean_json(text))
        except ValueError as exc:
            return Completion(error=ParseError(f"Malformed JSON in model output: {exc}"), search_queries=queries)
        return Completion(data=parsed, search_queries=queries)

    async def generate_image(self, prompt: str) -> Optional[str]:
        """Ask the image model for an illustration; returns a data URI or None."""
        try:
            data = await self.generate(prompt, json_output=False, model=self.image_model_id)
        except ModelError as exc:
            logger.warning("Image generation failed: %s", exc)
            return None
        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        for part in parts:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if inline and inline.get("data"):
                mime = inline.get("mimeType") or "image/png"
                return f"data:{mime};base64,{inline['data']}"
            if isinstance(part, dict) and part.get("text"):
                logger.warning("Image model returned text instead of an image: %s", part["text"][:200])
        return None

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
