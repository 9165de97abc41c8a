import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


RiskLevel = Literal["safe", "caution", "danger"]
SearchMode = Literal["standard", "adventure"]

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

CAMEL_CONFIG = {"alias_generator": to_camel, "populate_by_name": True, "protected_namespaces": ()}


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    model_config = CAMEL_CONFIG


class PlainModel(BaseModel):
    """Model-authored JSON keeps its snake_case keys on the wire."""

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    model_config = {"protected_namespaces": ()}


class LatLng(CamelModel):
    lat: float
    lng: float


class Shop(CamelModel):
    """A place record as returned by the places provider."""

    id: str = ""
    name: str
    address: str = ""
    location: Optional[LatLng] = None
    photos: List[str] = Field(default_factory=list)
    reviews: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    rating: Optional[float] = None

    @classmethod
    def from_place(cls, place: Dict[str, Any]) -> "Shop":
        display = place.get("displayName") or {}
        name = display.get("text") if isinstance(display, dict) else str(display)
        location = None
        raw_loc = place.get("location") or {}
        if "latitude" in raw_loc and "longitude" in raw_loc:
            location = LatLng(lat=raw_loc["latitude"], lng=raw_loc["longitude"])
        reviews = []
        for review in place.get("reviews") or []:
            text = (review.get("text") or {}).get("text") if isinstance(review, dict) else None
            if text:
                reviews.append(text)
        return cls(
            id=place.get("id") or "",
            name=name or "",
            address=place.get("formattedAddress") or "",
            location=location,
            photos=[p["name"] for p in place.get("photos") or [] if isinstance(p, dict) and p.get("name")],
            reviews=reviews,
            types=list(place.get("types") or []),
            rating=place.get("rating"),
        )


class AgentResult(CamelModel):
    agent_type: str
    agent_name: str
    icon: str
    summary: str
    details: List[str] = Field(default_factory=list)
    score: Optional[int] = None
    risk_level: Optional[RiskLevel] = None


class AnalysisVerdict(PlainModel):
    score: int = 0
    reasoning: str = ""
    short_summary: str = "-"
    is_shinise: bool = False
    founding_year: str = "不明"
    tabelog_rating: Optional[float] = None


class ScoredShop(CamelModel):
    shop: Shop
    ai_analysis: AnalysisVerdict

    def to_payload(self) -> Dict[str, Any]:
        return {**self.shop.to_payload(), "aiAnalysis": self.ai_analysis.to_payload()}


class Candidate(PlainModel):
    name: str
    tabelog_rating: float = 3.0
    reasoning: str = ""
    founding_year: str = "不明"

    @field_validator("name", "reasoning", "founding_year", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("tabelog_rating", mode="before")
    @classmethod
    def _parse_rating(cls, value: Any) -> float:
        # Model replies like "3.4点" or "約3.5"; anything unreadable keeps the neutral rating.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        match = _NUMBER_RE.search(str(value)) if isinstance(value, str) else None
        return float(match.group(0)) if match else 3.0


class ShopGuide(PlainModel):
    history_background: str = ""
    recommended_points: str = ""
    atmosphere: str = ""
    best_time_to_visit: str = ""
    tabelog_url: str = ""
    smoking_status: str = "不明"


class ReviewAnalysis(PlainModel):
    is_suspicious: bool = False
    suspicion_level: Literal["low", "medium", "high"] = "low"
    suspicion_reason: str = ""
    negative_points: List[str] = Field(default_factory=list)
    reality_summary: str = ""

    @field_validator("suspicion_level", mode="before")
    @classmethod
    def _lower_level(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class AgentRequest(CamelModel):
    agent_type: Optional[str] = None
    shop_name: Optional[str] = None
    shop_address: str = ""
    shop_id: Optional[str] = None
    force: bool = False


class ShopRef(CamelModel):
    id: Optional[str] = None
    name: str
    address: str = ""


class AgentBatchRequest(CamelModel):
    agent_types: List[str] = Field(default_factory=list)
    shop: ShopRef
    force: bool = False


class AnalyzeReviewsRequest(CamelModel):
    place_id: Optional[str] = None
    shop_name: Optional[str] = None


class CourseMapRequest(CamelModel):
    shops: List[Dict[str, Any]] = Field(default_factory=list)
    station: Optional[str] = None
