# src/models/ai_responses.py
"""
Decoders for JSON extracted from completion responses.

The model speaks camelCase (the tool schemas in src/agents/tools.py), so every
field carries its camelCase alias. Two policies apply:

- ClusteringResponse fails closed: a missing required field rejects the
  whole batch.
- EnrichmentResponse and InsightResponse fail open: malformed optional values
  fall back to defaults, only the fields an insight cannot exist without are
  required.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Any, Iterable, List, Optional
from src.models.schemas import Sentiment, SentimentLabel, Severity, Urgency, clamp

RECOMMENDATION_CATEGORIES = ("bug-fix", "enhancement", "new-feature", "process-improvement")
PRIORITIES = ("critical", "high", "medium", "low")
EFFORTS = ("small", "medium", "large", "extra-large")
REVENUE_IMPACTS = ("positive", "negative", "neutral")
CHURN_IMPACTS = ("increase", "decrease", "neutral")
SATISFACTION_IMPACTS = ("improve", "decline", "maintain")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def one_of(value: Any, allowed: Iterable[str], default: str) -> str:
    return value if isinstance(value, str) and value in allowed else default


def strings_only(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _as_int(value: Any, default: int = 0) -> int:
    return int(round(value)) if is_number(value) else default


def _first_object(data: Any, wrapper_key: Optional[str] = None) -> Any:
    """Unwrap `[obj]` or `{wrapper_key: [obj]}` responses to the single object."""
    if wrapper_key and isinstance(data, dict) and isinstance(data.get(wrapper_key), list):
        data = data[wrapper_key]
    if isinstance(data, list):
        return next((d for d in data if isinstance(d, dict)), None)
    return data


class _AIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------- Enrichment ----------

class AreaLinkResponse(_AIModel):
    id: str
    confidence: float

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return clamp(value, 0.0, 1.0)


class EnrichmentResponse(_AIModel):
    id: Optional[str] = None
    linked_product_areas: List[AreaLinkResponse] = Field(default_factory=list, alias="linkedProductAreas")
    sentiment: Sentiment = Field(default_factory=Sentiment)
    extracted_features: List[str] = Field(default_factory=list, alias="extractedFeatures")
    urgency: Urgency = Urgency.MEDIUM
    category: List[str] = Field(default_factory=lambda: ["uncategorized"])

    @field_validator("linked_product_areas", mode="before")
    @classmethod
    def _well_formed_links(cls, value):
        if not isinstance(value, list):
            return []
        return [
            link for link in value
            if isinstance(link, dict) and isinstance(link.get("id"), str) and is_number(link.get("confidence"))
        ]

    @field_validator("sentiment", mode="before")
    @classmethod
    def _normalize_sentiment(cls, value):
        if isinstance(value, Sentiment):
            return value
        value = value if isinstance(value, dict) else {}
        labels = [s.value for s in SentimentLabel]
        return {
            "label": one_of(value.get("label"), labels, SentimentLabel.NEUTRAL.value),
            "score": value["score"] if is_number(value.get("score")) else 0.0,
            "confidence": value["confidence"] if is_number(value.get("confidence")) else 0.5,
        }

    @field_validator("extracted_features", mode="before")
    @classmethod
    def _features(cls, value):
        return strings_only(value)

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency(cls, value):
        return one_of(value, [u.value for u in Urgency], Urgency.MEDIUM.value)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value):
        if not isinstance(value, list):
            return ["uncategorized"]
        return strings_only(value)

    @classmethod
    def from_payload(cls, data: Any) -> "EnrichmentResponse":
        """Accept an object, an array holding one object, or `{"enrichedEntries": [...]}`."""
        obj = _first_object(data, wrapper_key="enrichedEntries")
        if not isinstance(obj, dict):
            raise ValueError("enrichment response holds no JSON object")
        return cls.model_validate(obj)


# ---------- Clustering ----------

class ClusterResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    id: str
    theme: str
    description: str
    entry_ids: List[str] = Field(alias="entryIds")


class ClusteringResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    clusters: List[ClusterResponse]

    @classmethod
    def from_payload(cls, data: Any) -> "ClusteringResponse":
        """Accept `{"clusters": [...]}` or a bare array of clusters."""
        if isinstance(data, list):
            data = {"clusters": data}
        return cls.model_validate(data)


# ---------- Insight generation ----------

class PainPointResponse(_AIModel):
    description: str = ""
    severity: Severity = Severity.MEDIUM
    user_journey_stage: str = Field("usage", alias="userJourneyStage")
    frequency_of_mention: int = Field(0, alias="frequencyOfMention")

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value):
        return one_of(value, [s.value for s in Severity], Severity.MEDIUM.value)

    @field_validator("frequency_of_mention", mode="before")
    @classmethod
    def _frequency(cls, value):
        return max(0, _as_int(value))


class BusinessImpactResponse(_AIModel):
    revenue: str = "neutral"
    churn: str = "neutral"
    satisfaction: str = "maintain"

    @field_validator("revenue", mode="before")
    @classmethod
    def _revenue(cls, value):
        return one_of(value, REVENUE_IMPACTS, "neutral")

    @field_validator("churn", mode="before")
    @classmethod
    def _churn(cls, value):
        return one_of(value, CHURN_IMPACTS, "neutral")

    @field_validator("satisfaction", mode="before")
    @classmethod
    def _satisfaction(cls, value):
        return one_of(value, SATISFACTION_IMPACTS, "maintain")


class QuantifiedEstimateResponse(_AIModel):
    metric: str
    estimated_change: str = Field(alias="estimatedChange")
    confidence: float = 0.5

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value):
        return clamp(value, 0.0, 1.0) if is_number(value) else 0.5


class ImpactResponse(_AIModel):
    users_affected: int = Field(0, alias="usersAffected")
    user_segments: List[str] = Field(default_factory=list, alias="userSegments")
    business_impact: BusinessImpactResponse = Field(default_factory=BusinessImpactResponse, alias="businessImpact")
    quantified_estimates: List[QuantifiedEstimateResponse] = Field(default_factory=list, alias="quantifiedEstimates")

    @field_validator("users_affected", mode="before")
    @classmethod
    def _users(cls, value):
        return max(0, _as_int(value))

    @field_validator("user_segments", mode="before")
    @classmethod
    def _segments(cls, value):
        return strings_only(value)

    @field_validator("business_impact", mode="before")
    @classmethod
    def _business_impact(cls, value):
        return value if isinstance(value, (dict, BusinessImpactResponse)) else {}

    @field_validator("quantified_estimates", mode="before")
    @classmethod
    def _estimates(cls, value):
        if not isinstance(value, list):
            return []
        return [
            e for e in value
            if isinstance(e, QuantifiedEstimateResponse)
            or (isinstance(e, dict) and isinstance(e.get("metric"), str) and isinstance(e.get("estimatedChange"), str))
        ]


class RecommendationResponse(_AIModel):
    title: str
    description: str = ""
    category: str = "enhancement"
    priority: str = "medium"
    effort: str = "medium"
    timeline: str = "TBD"
    success_metrics: List[str] = Field(default_factory=list, alias="successMetrics")

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value):
        return one_of(value, RECOMMENDATION_CATEGORIES, "enhancement")

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value):
        return one_of(value, PRIORITIES, "medium")

    @field_validator("effort", mode="before")
    @classmethod
    def _effort(cls, value):
        return one_of(value, EFFORTS, "medium")

    @field_validator("description", "timeline", mode="before")
    @classmethod
    def _text(cls, value, info):
        if isinstance(value, str) and value:
            return value
        return "" if info.field_name == "description" else "TBD"

    @field_validator("success_metrics", mode="before")
    @classmethod
    def _metrics(cls, value):
        return strings_only(value)


class InsightResponse(_AIModel):
    title: str = Field(..., min_length=1)
    executive_summary: str = Field("", alias="executiveSummary")
    detailed_analysis: str = Field("", alias="detailedAnalysis")
    pain_point: PainPointResponse = Field(..., alias="painPoint")
    impact: ImpactResponse
    recommendations: List[RecommendationResponse] = Field(..., min_length=1)

    @field_validator("executive_summary", "detailed_analysis", mode="before")
    @classmethod
    def _optional_text(cls, value):
        return value if isinstance(value, str) else ""

    @field_validator("recommendations", mode="before")
    @classmethod
    def _well_formed_recommendations(cls, value):
        if not isinstance(value, list):
            return value
        return [
            r for r in value
            if isinstance(r, RecommendationResponse)
            or (isinstance(r, dict) and isinstance(r.get("title"), str) and r["title"].strip())
        ]

    @classmethod
    def from_payload(cls, data: Any) -> "InsightResponse":
        """Accept an object or an array holding one object."""
        obj = _first_object(data)
        if not isinstance(obj, dict):
            raise ValueError("insight response holds no JSON object")
        return cls.model_validate(obj)
