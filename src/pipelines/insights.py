"""
Insight generation stage: turn each feedback cluster into an actionable,
evidence-backed business insight.

One completion call per cluster through the bounded executor. When the call
fails or its response cannot be decoded, a deterministic insight built from
the cluster statistics is used instead, so every cluster yields an insight.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4
import logging
import re
import time

from pydantic import BaseModel, ConfigDict

from src.agents.llm_agent import ChatAgent
from src.agents.tools import GENERATE_INSIGHT_TOOL, force_tool
from src.config.settings import Settings
from src.events.event_bus import PipelineEventBus
from src.models.ai_responses import (
    BusinessImpactResponse,
    ImpactResponse,
    InsightResponse,
    PainPointResponse,
    RecommendationResponse,
)
from src.models.events import EventType
from src.models.schemas import (
    BusinessImpact,
    DerivationPath,
    EvidenceChain,
    FeedbackCluster,
    GeneratedInsight,
    Impact,
    PainPoint,
    QuantifiedEstimate,
    RecommendedAction,
    SourceClusterSummary,
    StakeholderFormats,
    SupportingFeedback,
)
from src.utils.json_extractor import extract_json
from src.utils.parallel import create_progress_logger, process_in_parallel

logger = logging.getLogger(__name__)

ANALYSIS_METHOD = "ai-semantic-clustering-v1"
PROMPT_EVIDENCE_ITEMS = 5
MAX_QUOTE_CHARS = 120
QUOTE_FALLBACK_CHARS = 100
_SENTENCE_SPLIT = re.compile(r"[.!?]+")

SYSTEM_PROMPT = """You are a Senior Product Analyst with expertise in user research, product strategy, and evidence-based decision making.

Your role is to analyze customer feedback clusters and generate actionable business insights that help product teams make data-driven decisions.

Core Principles:
- Evidence-Based Analysis: Every claim must be supported by specific feedback entries
- Business Impact Focus: Quantify impact on users, revenue, churn, and satisfaction
- Actionable Recommendations: Provide specific, prioritized next steps with effort estimates
- Multi-Stakeholder Communication: Consider different audience needs (executives, product, engineering, customer success)

Analysis Framework:
- Use Jobs-to-be-Done methodology to understand user intent
- Apply Impact/Effort prioritization for recommendations
- Focus on root cause analysis, not just symptoms
- Provide confidence levels for all estimates

Always use the insight generation tool to return structured results."""


class InsightConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float = 0.2
    concurrency: int = 3
    max_recommendations: int = 5
    max_evidence_items: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "InsightConfig":
        return cls(
            temperature=settings.insight_temperature,
            concurrency=settings.insight_concurrency,
            max_recommendations=settings.max_recommendations,
            max_evidence_items=settings.max_evidence_items,
        )


def extract_key_quote(text: str) -> str:
    """First meaningful sentence if it is short enough, else the first 100 characters."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > 10]
    if sentences and len(sentences[0]) <= MAX_QUOTE_CHARS:
        return sentences[0]
    return text[:QUOTE_FALLBACK_CHARS] + ("..." if len(text) > QUOTE_FALLBACK_CHARS else "")


def insight_confidence(
    cluster_size: int,
    cluster_confidence: float,
    recommendation_count: int,
    has_quantified_estimates: bool,
) -> float:
    confidence = 0.7
    if cluster_size >= 5:
        confidence += 0.1
    if cluster_size >= 10:
        confidence += 0.1
    confidence += cluster_confidence * 0.2
    if recommendation_count >= 2:
        confidence += 0.05
    if has_quantified_estimates:
        confidence += 0.1
    return min(max(confidence, 0.0), 1.0)


def build_evidence_chain(cluster: FeedbackCluster, max_items: int = 10) -> EvidenceChain:
    """
    Rank cluster members as supporting evidence.

    Relevance is 0.5, plus 0.25 when the member's sentiment matches the
    cluster's dominant sentiment, plus 0.25 x the member's sentiment confidence.
    """
    ranked = sorted(
        cluster.entries,
        key=lambda e: -_relevance(e.sentiment.label, e.sentiment.confidence, cluster.dominant_sentiment),
    )[:max_items]

    supporting = [
        SupportingFeedback(
            feedback_id=e.id,
            text=e.text,
            user_segment=(e.user_metadata.segment if e.user_metadata and e.user_metadata.segment else "unknown"),
            relevance_score=_relevance(e.sentiment.label, e.sentiment.confidence, cluster.dominant_sentiment),
            quote_extract=extract_key_quote(e.text),
        )
        for e in ranked
    ]

    return EvidenceChain(
        source_cluster=SourceClusterSummary(
            id=cluster.id, theme=cluster.theme, size=cluster.size, confidence=cluster.confidence
        ),
        supporting_feedback=supporting,
        derivation_path=DerivationPath(
            analysis_method=ANALYSIS_METHOD,
            ai_reasoning_steps=[
                "Semantic similarity analysis of feedback entries",
                "AI-powered theme extraction and labeling",
                "Evidence-based insight generation",
                "Impact assessment and recommendation prioritization",
            ],
            confidence_factors=[
                f"Cluster confidence: {cluster.confidence * 100:.1f}%",
                f"Sample size: {cluster.size} feedback entries",
                f"Sentiment consistency: {cluster.dominant_sentiment}",
                f"Product area alignment: {', '.join(cluster.product_areas) or 'none'}",
            ],
        ),
    )


def _relevance(label: str, confidence: float, dominant: str) -> float:
    return min(1.0, 0.5 + (0.25 if label == dominant else 0.0) + 0.25 * confidence)


def fallback_insight(cluster: FeedbackCluster) -> InsightResponse:
    """Deterministic insight derived only from cluster statistics."""
    urgency = cluster.urgency_distribution
    theme = cluster.theme
    negative = cluster.dominant_sentiment == "negative"
    severity = "high" if urgency.high > 0 else ("medium" if urgency.medium > 0 else "low")

    return InsightResponse(
        title=f"{theme} - Requires Investigation",
        executive_summary=(
            f"Analysis of {cluster.size} feedback entries reveals {cluster.dominant_sentiment} sentiment "
            f"regarding {theme.lower()}. Product team attention required."
        ),
        detailed_analysis=(
            f"Cluster analysis shows consistent {cluster.dominant_sentiment} sentiment across {cluster.size} "
            f"feedback entries. The issue affects {' and '.join(cluster.user_segments) or 'unspecified'} user "
            f"segments and relates to {', '.join(cluster.product_areas) or 'unmapped'} product areas. "
            f"{urgency.high} entries marked as high urgency."
        ),
        pain_point=PainPointResponse(
            description=f"Users experiencing challenges with {theme.lower()}",
            severity=severity,
            user_journey_stage="usage",
            frequency_of_mention=cluster.size,
        ),
        impact=ImpactResponse(
            users_affected=cluster.size,
            user_segments=list(cluster.user_segments),
            business_impact=BusinessImpactResponse(
                revenue="neutral",
                churn="increase" if negative else "neutral",
                satisfaction="decline" if negative else "maintain",
            ),
            quantified_estimates=[],
        ),
        recommendations=[RecommendationResponse(
            title=f"Investigate {theme} Issues",
            description=f"Conduct detailed analysis of {theme.lower()} to identify root causes and potential solutions",
            category="process-improvement",
            priority="high" if urgency.high > 0 else "medium",
            effort="medium",
            timeline="2-3 weeks",
            success_metrics=[
                "Root cause identified",
                "Solution approach defined",
                "User satisfaction improvement plan created",
            ],
        )],
    )


def stakeholder_formats(core: InsightResponse) -> StakeholderFormats:
    pain = core.pain_point
    impact = core.impact
    top = next((r for r in core.recommendations if r.priority in ("critical", "high")), None) or (
        core.recommendations[0] if core.recommendations else None
    )
    segments = ", ".join(impact.user_segments) or "all segments"

    executive_parts = [f"{impact.users_affected} users affected by {pain.description.lower()}."]
    if impact.business_impact.revenue != "neutral":
        executive_parts.append("Revenue impact expected.")
    executive_parts.append(f"Recommend: {top.title}" if top else "Investigation needed.")

    return StakeholderFormats(
        executive=" ".join(executive_parts),
        product=(
            f"**Pain Point**: {pain.description}\n"
            f"**Impact**: {impact.users_affected} users ({segments})\n"
            f"**Priority**: {pain.severity}\n"
            f"**Next Steps**: {top.title if top else 'Investigate and plan solution'}"
        ),
        engineering=(
            f"**Technical Issue**: {pain.description}\n"
            f"**Scope**: {impact.users_affected} users affected\n"
            f"**Priority**: {pain.severity} severity\n"
            f"**Effort**: {f'{top.effort} effort, {top.timeline}' if top else 'TBD'}"
        ),
        customer_success=(
            f"**Customer Impact**: {pain.description}\n"
            f"**Affected Segments**: {segments}\n"
            f"**Satisfaction Impact**: {impact.business_impact.satisfaction}\n"
            f"**Communication**: "
            f"{'Proactive outreach recommended' if pain.severity == 'critical' else 'Monitor for escalations'}"
        ),
    )


class InsightGenerator:
    """Generates one business insight per feedback cluster."""

    def __init__(self, chat_agent: ChatAgent, event_bus: PipelineEventBus, config: Optional[InsightConfig] = None):
        self.chat_agent = chat_agent
        self.event_bus = event_bus
        self.config = config or InsightConfig()

    async def generate_insights(
        self,
        clusters: Sequence[FeedbackCluster],
        concurrency: Optional[int] = None,
    ) -> List[GeneratedInsight]:
        """
        Generate insights for every cluster in parallel.

        Args:
            clusters: Clusters from the clustering stage
            concurrency: Max concurrent completion calls (defaults to config)

        Returns:
            Insights in cluster order
        """
        clusters = list(clusters)
        concurrency = concurrency or self.config.concurrency
        started = time.monotonic()

        self.event_bus.emit(EventType.INSIGHT_GENERATION_STARTED, {
            "cluster_count": len(clusters),
            "concurrency": concurrency,
        })
        logger.info(f"Starting insight generation for {len(clusters)} clusters with concurrency {concurrency}")

        async def process(cluster: FeedbackCluster, index: int) -> GeneratedInsight:
            return await self._generate_single(cluster)

        results, stats = await process_in_parallel(
            clusters,
            process,
            concurrency=concurrency,
            continue_on_error=True,
            **create_progress_logger("Insight generation"),
        )

        insights = []
        for cluster, result in zip(clusters, results):
            if result.success:
                insights.append(result.result)
            else:
                logger.error(f"Insight generation failed for cluster {cluster.id}: {result.error}")

        duration_ms = (time.monotonic() - started) * 1000
        self.event_bus.emit(EventType.INSIGHT_GENERATION_COMPLETE, {
            "insight_count": len(insights),
            "fallback_count": sum(1 for i in insights if i.fallback_used),
            "failure_count": stats.failure_count,
            "duration_ms": duration_ms,
        })
        logger.info(f"Generated {len(insights)} insights from {len(clusters)} clusters in {duration_ms:.0f}ms")
        return insights

    async def _generate_single(self, cluster: FeedbackCluster) -> GeneratedInsight:
        started = time.monotonic()
        insight_id = f"insight_{cluster.id}_{int(time.time() * 1000)}"

        self.event_bus.emit(EventType.INSIGHT_CLUSTER_PROCESSING, {
            "cluster_id": cluster.id,
            "theme": cluster.theme,
            "size": cluster.size,
        })
        logger.info(f"Processing cluster: {cluster.theme} ({cluster.size} items)")

        evidence = build_evidence_chain(cluster, self.config.max_evidence_items)
        core, fallback_used = await self._generate_core(cluster, evidence)
        recommendations = core.recommendations[:self.config.max_recommendations]

        insight = GeneratedInsight(
            id=insight_id,
            cluster_id=cluster.id,
            title=core.title,
            executive_summary=core.executive_summary,
            detailed_analysis=core.detailed_analysis,
            pain_point=PainPoint(**core.pain_point.model_dump()),
            impact=Impact(
                users_affected=core.impact.users_affected,
                user_segments=core.impact.user_segments,
                business_impact=BusinessImpact(**core.impact.business_impact.model_dump()),
                quantified_estimates=[QuantifiedEstimate(**q.model_dump()) for q in core.impact.quantified_estimates],
            ),
            recommendations=[
                RecommendedAction(id=f"{insight_id}_rec_{n}", **rec.model_dump())
                for n, rec in enumerate(recommendations, start=1)
            ],
            evidence=evidence,
            confidence=insight_confidence(
                cluster.size,
                cluster.confidence,
                len(recommendations),
                bool(core.impact.quantified_estimates),
            ),
            stakeholder_formats=stakeholder_formats(core),
            fallback_used=fallback_used,
            generated_at=datetime.now(timezone.utc),
            processing_time_ms=(time.monotonic() - started) * 1000,
        )

        self.event_bus.emit(EventType.INSIGHT_CREATED, {
            "insight_id": insight.id,
            "cluster_id": cluster.id,
            "title": insight.title,
            "summary": insight.executive_summary,
            "severity": insight.pain_point.severity,
            "confidence": insight.confidence,
            "users_affected": insight.impact.users_affected,
            "recommendation_count": len(insight.recommendations),
            "evidence_count": len(insight.evidence.supporting_feedback),
            "stakeholder_formats": list(StakeholderFormats.model_fields),
            "fallback_used": fallback_used,
        })
        return insight

    async def _generate_core(self, cluster: FeedbackCluster, evidence: EvidenceChain) -> Tuple[InsightResponse, bool]:
        """Ask the model for the insight core; fall back to the deterministic insight on any failure."""
        prompt = self.build_prompt(cluster, evidence)
        messages = [{"role": "user", "content": prompt}]
        call_id = f"insight_{uuid4().hex[:12]}"

        self.event_bus.emit(EventType.INSIGHT_AI_CALL, {
            "cluster_id": cluster.id,
            "call_id": call_id,
            "messages": [{"role": "system", "content": SYSTEM_PROMPT}, *messages],
        })

        try:
            response = await self.chat_agent.complete(
                SYSTEM_PROMPT,
                messages,
                tools=[GENERATE_INSIGHT_TOOL],
                tool_choice=force_tool(GENERATE_INSIGHT_TOOL),
                temperature=self.config.temperature,
            )
        except Exception as e:
            logger.error(f"AI insight generation failed for cluster '{cluster.theme}': {e}")
            return self._fallback(cluster, f"completion call failed: {e}"), True

        extraction = extract_json(response)
        self.event_bus.emit(EventType.INSIGHT_AI_RESPONSE, {
            "cluster_id": cluster.id,
            "call_id": call_id,
            "response": response,
            "extracted_data": extraction.data if extraction.success else None,
            "extraction_error": None if extraction.success else extraction.error,
        })

        if not extraction.success:
            return self._fallback(cluster, f"extraction failed: {extraction.error}"), True

        try:
            return InsightResponse.from_payload(extraction.data), False
        except ValueError as e:
            return self._fallback(cluster, f"validation failed: {e}"), True

    def _fallback(self, cluster: FeedbackCluster, reason: str) -> InsightResponse:
        logger.warning(f"Using fallback insight for cluster {cluster.id}: {reason}")
        self.event_bus.emit(EventType.INSIGHT_FALLBACK_USED, {
            "cluster_id": cluster.id,
            "theme": cluster.theme,
            "reason": reason,
        })
        return fallback_insight(cluster)

    @staticmethod
    def build_prompt(cluster: FeedbackCluster, evidence: EvidenceChain) -> str:
        feedback_context = "\n\n".join(
            f"{n}. ID: {f.feedback_id} ({f.user_segment})\n"
            f"   Text: \"{f.text}\"\n"
            f"   Key Quote: \"{f.quote_extract}\""
            for n, f in enumerate(evidence.supporting_feedback[:PROMPT_EVIDENCE_ITEMS], start=1)
        )
        segments = ", ".join(cluster.user_segments) or "unknown"
        urgency = cluster.urgency_distribution

        return f"""Analyze this customer feedback cluster and generate actionable business insights.

## Cluster Overview
Theme: {cluster.theme}
Description: {cluster.description}
Size: {cluster.size} feedback entries
Dominant Sentiment: {cluster.dominant_sentiment}
User Segments: {segments}
Product Areas: {', '.join(cluster.product_areas) or 'none'}
Urgency Distribution: High: {urgency.high}, Medium: {urgency.medium}, Low: {urgency.low}

## Supporting Feedback Evidence
{feedback_context}

## Analysis Requirements

1. Pain Point Identification
   - What specific job are users trying to accomplish?
   - What obstacles prevent success? (Reference specific feedback IDs)
   - How severe is this pain point based on urgency and sentiment?

2. Impact Assessment
   - Estimate users affected (use evidence from {cluster.size} feedback entries)
   - Assess business impact on revenue, churn, satisfaction
   - Provide quantified estimates where possible

3. Strategic Recommendations
   - Generate 2-4 specific, actionable recommendations
   - Prioritize by impact and effort
   - Include realistic timelines and success metrics
   - Consider user segments: {segments}

Use the generate_insight tool to provide structured results with evidence references and confidence levels."""
