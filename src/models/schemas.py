from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict
from enum import Enum


def clamp(value: float, low: float, high: float) -> float:
    """Clamp a number into [low, high]."""
    return max(low, min(high, value))


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


# Tie-break order when picking a cluster's dominant sentiment
SENTIMENT_PRIORITY = [SentimentLabel.POSITIVE.value, SentimentLabel.NEGATIVE.value, SentimentLabel.NEUTRAL.value]


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FeedbackSource(str, Enum):
    SURVEY = "survey"
    SUPPORT = "support"
    INTERVIEW = "interview"
    SLACK = "slack"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class UserMetadata(BaseModel):
    """Optional account context attached to a feedback author."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    plan: Optional[str] = None
    segment: Optional[str] = None
    team_size: Optional[int] = None
    usage: Optional[str] = None


class FeedbackItem(BaseModel):
    """Raw customer feedback item."""
    model_config = ConfigDict(use_enum_values=True, frozen=True, validate_default=True)

    id: str
    text: str
    user_id: str
    timestamp: datetime
    source: FeedbackSource = FeedbackSource.OTHER
    company_id: Optional[str] = None
    product_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    user_metadata: Optional[UserMetadata] = None

    @field_validator("source", mode="before")
    @classmethod
    def _unknown_source_is_other(cls, value):
        valid = {s.value for s in FeedbackSource}
        if isinstance(value, FeedbackSource):
            return value
        if isinstance(value, str) and value.lower() in valid:
            return value.lower()
        return FeedbackSource.OTHER


class ProductArea(BaseModel):
    """Taxonomy entry a feedback item can be linked to."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class LinkedProductArea(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    confidence: float

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return clamp(value, 0.0, 1.0)


class Sentiment(BaseModel):
    model_config = ConfigDict(use_enum_values=True, frozen=True, validate_default=True)

    label: SentimentLabel = SentimentLabel.NEUTRAL
    score: float = 0.0
    confidence: float = 0.5

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return clamp(value, -1.0, 1.0)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return clamp(value, 0.0, 1.0)


class EnrichedFeedbackItem(FeedbackItem):
    """Feedback item with AI-derived sentiment, urgency, area links and tags."""

    linked_product_areas: List[LinkedProductArea] = Field(default_factory=list, max_length=3)
    sentiment: Sentiment = Field(default_factory=Sentiment)
    extracted_features: List[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM
    category: List[str] = Field(default_factory=list)


class SentimentDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    positive: int = 0
    negative: int = 0
    neutral: int = 0


class UrgencyDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    low: int = 0
    medium: int = 0
    high: int = 0


class FeedbackCluster(BaseModel):
    """Thematic group of enriched feedback items."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str
    theme: str
    description: str
    entry_ids: List[str]
    entries: List[EnrichedFeedbackItem] = Field(default_factory=list, repr=False)
    size: int
    dominant_sentiment: SentimentLabel
    sentiment_distribution: SentimentDistribution
    urgency_distribution: UrgencyDistribution
    product_areas: List[str] = Field(default_factory=list)
    user_segments: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _size_matches_members(self):
        if len(set(self.entry_ids)) != len(self.entry_ids):
            raise ValueError(f"Cluster {self.id} lists duplicate entry ids")
        if self.size != len(self.entry_ids):
            raise ValueError(f"Cluster {self.id} size {self.size} != {len(self.entry_ids)} members")
        return self


class PainPoint(BaseModel):
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    description: str
    severity: Severity
    user_journey_stage: str
    frequency_of_mention: int


class BusinessImpact(BaseModel):
    model_config = ConfigDict(frozen=True)

    revenue: str = "neutral"
    churn: str = "neutral"
    satisfaction: str = "maintain"


class QuantifiedEstimate(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric: str
    estimated_change: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class Impact(BaseModel):
    model_config = ConfigDict(frozen=True)

    users_affected: int
    user_segments: List[str] = Field(default_factory=list)
    business_impact: BusinessImpact = Field(default_factory=BusinessImpact)
    quantified_estimates: List[QuantifiedEstimate] = Field(default_factory=list)


class RecommendedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    category: str
    priority: str
    effort: str
    timeline: str
    success_metrics: List[str] = Field(default_factory=list)


class SourceClusterSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    theme: str
    size: int
    confidence: float


class SupportingFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    feedback_id: str
    text: str
    user_segment: str
    relevance_score: float = Field(..., ge=0.0, le=1.0)
    quote_extract: str


class DerivationPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    analysis_method: str
    ai_reasoning_steps: List[str] = Field(default_factory=list)
    confidence_factors: List[str] = Field(default_factory=list)


class EvidenceChain(BaseModel):
    """Traceable link from an insight back to its cluster and feedback."""
    model_config = ConfigDict(frozen=True)

    source_cluster: SourceClusterSummary
    supporting_feedback: List[SupportingFeedback] = Field(default_factory=list)
    derivation_path: DerivationPath


class StakeholderFormats(BaseModel):
    model_config = ConfigDict(frozen=True)

    executive: str
    product: str
    engineering: str
    customer_success: str


class GeneratedInsight(BaseModel):
    """Actionable business insight generated from one cluster."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: str
    cluster_id: str
    title: str
    executive_summary: str
    detailed_analysis: str
    pain_point: PainPoint
    impact: Impact
    recommendations: List[RecommendedAction]
    evidence: EvidenceChain
    confidence: float = Field(..., ge=0.0, le=1.0)
    stakeholder_formats: StakeholderFormats
    fallback_used: bool = False
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processing_time_ms: float = 0.0


class PipelineSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    feedback_count: int
    enriched_count: int
    cluster_count: int
    insight_count: int
    processing_time_ms: float


class PipelineOutput(BaseModel):
    """Result of a complete pipeline run."""
    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    insights: List[GeneratedInsight]
    summary: PipelineSummary
    enriched_feedback: List[EnrichedFeedbackItem] = Field(default_factory=list)
    clusters: List[FeedbackCluster] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "feedback": self.summary.feedback_count,
            "enriched": self.summary.enriched_count,
            "clusters": self.summary.cluster_count,
            "insights": self.summary.insight_count,
        }
