"""
Semantic clustering stage: group enriched feedback into thematic clusters.

A single completion call covers the whole batch. The raw grouping is then
repaired (duplicate themes merged, foreign and repeated ids removed, orphans
assigned), passed through a quality gate and enriched with per-cluster
statistics. Every input id ends up in exactly one cluster.
"""

from collections import Counter
from typing import Any, Dict, List, Literal, Optional, Sequence
from uuid import uuid4
import logging
import math
import time

from pydantic import BaseModel, ConfigDict, ValidationError

from src.agents.llm_agent import ChatAgent
from src.agents.tools import CLUSTER_FEEDBACK_TOOL, force_tool
from src.config.settings import Settings
from src.events.event_bus import PipelineEventBus
from src.models.ai_responses import ClusteringResponse
from src.models.events import EventType
from src.models.schemas import (
    SENTIMENT_PRIORITY,
    EnrichedFeedbackItem,
    FeedbackCluster,
    SentimentDistribution,
    UrgencyDistribution,
)
from src.pipelines.errors import ClusteringError
from src.utils.json_extractor import extract_json

logger = logging.getLogger(__name__)

CLUSTER_CONFIDENCE = 0.8
SINGLE_CLUSTER_CONFIDENCE = 0.6
MIN_THEME_LENGTH = 5
MAX_KEYWORDS = 10

SYSTEM_PROMPT = """You are an expert at semantic clustering of customer feedback. Your job is to analyze enriched feedback entries and group them into meaningful, actionable clusters.

Clustering Guidelines:
- Focus on core themes, pain points, feature requests, and user journey stages
- Group feedback that shares common underlying issues or requests
- Create specific, actionable theme names (not generic categories)
- Ensure every feedback entry is assigned to exactly one cluster
- Prefer fewer, well-defined clusters over many small clusters
- Consider product areas, sentiment patterns, and urgency levels when grouping

Quality Requirements:
- Themes should be specific and actionable
- Descriptions should explain the common thread connecting feedback
- Each cluster should represent a distinct, addressable concern or opportunity
- Avoid overlap between clusters - each should be unique

Always use the clustering tool to return structured results."""


class ClusteringConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_clusters: int = 8
    min_cluster_size: int = 2
    quality_threshold: float = 0.5
    temperature: float = 0.1
    orphan_assignment: Literal["largest", "area_overlap"] = "largest"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClusteringConfig":
        return cls(
            max_clusters=settings.max_clusters,
            min_cluster_size=settings.min_cluster_size,
            quality_threshold=settings.cluster_quality_threshold,
            temperature=settings.clustering_temperature,
            orphan_assignment=settings.orphan_assignment,
        )


class ClusterDraft(BaseModel):
    """Mutable working copy of a cluster while the grouping is repaired."""

    id: str
    theme: str
    description: str
    entry_ids: List[str]
    confidence: float = CLUSTER_CONFIDENCE


class BatchAnalysis(BaseModel):
    product_area_distribution: Dict[str, int]
    sentiment_distribution: Dict[str, int]
    urgency_distribution: Dict[str, int]
    user_segments: List[str]
    diversity: float


# ---------- statistics helpers ----------

def dominant_sentiment(entries: Sequence[EnrichedFeedbackItem]) -> str:
    """Most frequent sentiment label; ties broken positive > negative > neutral."""
    counts = Counter(e.sentiment.label for e in entries)
    return max(SENTIMENT_PRIORITY, key=lambda label: (counts[label], -SENTIMENT_PRIORITY.index(label)))


def sentiment_distribution(entries: Sequence[EnrichedFeedbackItem]) -> SentimentDistribution:
    counts = Counter(e.sentiment.label for e in entries)
    return SentimentDistribution(**{label: counts[label] for label in ("positive", "negative", "neutral")})


def urgency_distribution(entries: Sequence[EnrichedFeedbackItem]) -> UrgencyDistribution:
    counts = Counter(e.urgency for e in entries)
    return UrgencyDistribution(**{level: counts[level] for level in ("low", "medium", "high")})


def product_area_names(entries: Sequence[EnrichedFeedbackItem]) -> List[str]:
    return list(dict.fromkeys(area.name for e in entries for area in e.linked_product_areas))


def user_segments(entries: Sequence[EnrichedFeedbackItem]) -> List[str]:
    return list(dict.fromkeys(
        e.user_metadata.segment for e in entries if e.user_metadata and e.user_metadata.segment
    ))


def top_keywords(entries: Sequence[EnrichedFeedbackItem], limit: int = MAX_KEYWORDS) -> List[str]:
    counts = Counter(tag for e in entries for tag in [*e.category, *e.extracted_features])
    return [keyword for keyword, _ in counts.most_common(limit)]


def diversity_score(entries: Sequence[EnrichedFeedbackItem]) -> float:
    unique_areas = {area.name for e in entries for area in e.linked_product_areas}
    unique_sentiments = {e.sentiment.label for e in entries}
    unique_categories = {c for e in entries for c in e.category}
    return (len(unique_areas) + len(unique_sentiments) + len(unique_categories)) / (len(entries) + 3)


def build_cluster(draft: ClusterDraft, entries: List[EnrichedFeedbackItem]) -> FeedbackCluster:
    return FeedbackCluster(
        id=draft.id,
        theme=draft.theme,
        description=draft.description,
        entry_ids=[e.id for e in entries],
        entries=entries,
        size=len(entries),
        dominant_sentiment=dominant_sentiment(entries),
        sentiment_distribution=sentiment_distribution(entries),
        urgency_distribution=urgency_distribution(entries),
        product_areas=product_area_names(entries),
        user_segments=user_segments(entries),
        keywords=top_keywords(entries),
        confidence=draft.confidence,
    )


class SemanticClusterer:
    """Groups enriched feedback into semantic clusters with one completion call per batch."""

    def __init__(self, chat_agent: ChatAgent, event_bus: PipelineEventBus, config: Optional[ClusteringConfig] = None):
        self.chat_agent = chat_agent
        self.event_bus = event_bus
        self.config = config or ClusteringConfig()

    async def cluster_feedback(self, items: Sequence[EnrichedFeedbackItem]) -> List[FeedbackCluster]:
        """
        Cluster enriched feedback items.

        Args:
            items: Enriched items from the enrichment stage

        Returns:
            Clusters sorted by size (largest first)

        Raises:
            ClusteringError: The completion response could not be decoded
        """
        items = list(items)
        started = time.monotonic()
        logger.info(f"Starting semantic clustering of {len(items)} entries")
        self.event_bus.emit(EventType.CLUSTERING_STARTED, {"enriched_feedback_count": len(items)})

        if not items:
            self._emit_complete([], started)
            return []

        if len(items) == 1:
            clusters = [build_cluster(
                ClusterDraft(
                    id="cluster_single",
                    theme="General Feedback",
                    description="Mixed feedback topics",
                    entry_ids=[items[0].id],
                    confidence=SINGLE_CLUSTER_CONFIDENCE,
                ),
                items,
            )]
            self._emit_created(clusters)
            self._emit_complete(clusters, started)
            return clusters

        try:
            analysis = self.analyze(items)
            target = self.optimal_cluster_count(len(items), analysis)
            drafts = await self._request_clusters(items, target)
            drafts = self.deduplicate(drafts)
            drafts = self.repair_membership(drafts, items)
            drafts, dissolved = self.apply_quality_gate(drafts, items)
        except Exception as e:
            logger.error(f"Clustering failed: {e}")
            self.event_bus.emit(EventType.ERROR, {
                "error_type": "clustering_failure",
                "message": str(e),
                "recoverable": False,
                "context": {"feedback_count": len(items)},
            }, stage="clustering")
            raise

        by_id = {item.id: item for item in items}
        clusters = [build_cluster(d, [by_id[i] for i in d.entry_ids]) for d in drafts]
        clusters.sort(key=lambda c: c.size, reverse=True)

        self._emit_created(clusters)
        self._emit_complete(clusters, started, target_cluster_count=target, dissolved_count=dissolved)
        logger.info(f"Clustering complete: {len(clusters)} clusters generated ({dissolved} dissolved)")
        return clusters

    # ---------- pre-analysis ----------

    def analyze(self, items: Sequence[EnrichedFeedbackItem]) -> BatchAnalysis:
        areas = Counter(area.name for e in items for area in e.linked_product_areas)
        return BatchAnalysis(
            product_area_distribution=dict(areas),
            sentiment_distribution=sentiment_distribution(items).model_dump(),
            urgency_distribution=urgency_distribution(items).model_dump(),
            user_segments=user_segments(items),
            diversity=diversity_score(items),
        )

    def optimal_cluster_count(self, item_count: int, analysis: BatchAnalysis) -> int:
        max_clusters = self.config.max_clusters
        count = min(max(2, math.floor(math.sqrt(item_count))), max_clusters)

        if analysis.diversity > 0.8:
            count = min(count + 2, max_clusters)
        elif analysis.diversity < 0.3:
            count = max(count - 1, 2)

        distinct_areas = len(analysis.product_area_distribution)
        if distinct_areas > count:
            count = min(distinct_areas, max_clusters)

        logger.info(f"Optimal cluster count: {count} (entries: {item_count}, diversity: {analysis.diversity:.2f})")
        return count

    # ---------- completion call ----------

    async def _request_clusters(self, items: List[EnrichedFeedbackItem], target: int) -> List[ClusterDraft]:
        prompt = self.build_prompt(items, target)
        messages = [{"role": "user", "content": prompt}]
        call_id = f"clustering_{uuid4().hex[:12]}"

        self.event_bus.emit(EventType.CLUSTERING_AI_CALL, {
            "call_id": call_id,
            "target_cluster_count": target,
            "messages": [{"role": "system", "content": SYSTEM_PROMPT}, *messages],
        })

        response = await self.chat_agent.complete(
            SYSTEM_PROMPT,
            messages,
            tools=[CLUSTER_FEEDBACK_TOOL],
            tool_choice=force_tool(CLUSTER_FEEDBACK_TOOL),
            temperature=self.config.temperature,
        )
        extraction = extract_json(response)

        self.event_bus.emit(EventType.CLUSTERING_AI_RESPONSE, {
            "call_id": call_id,
            "response": response,
            "extracted_data": extraction.data if extraction.success else None,
            "extraction_error": None if extraction.success else extraction.error,
        })

        if not extraction.success:
            raise ClusteringError(f"Failed to parse clustering response: {extraction.error}", raw_response=response)

        try:
            decoded = ClusteringResponse.from_payload(extraction.data)
        except ValidationError as e:
            raise ClusteringError(
                f"Clustering response failed validation ({e.error_count()} errors): {e.errors()[0]['msg']}",
                raw_response=response,
            ) from e

        if not decoded.clusters:
            raise ClusteringError("Clustering response contained no clusters", raw_response=response)

        drafts: List[ClusterDraft] = []
        seen_ids = set()
        for n, raw in enumerate(decoded.clusters, start=1):
            cluster_id = raw.id or f"cluster_{n}"
            if cluster_id in seen_ids:
                cluster_id = f"{cluster_id}_{n}"
            seen_ids.add(cluster_id)
            drafts.append(ClusterDraft(
                id=cluster_id,
                theme=raw.theme,
                description=raw.description,
                entry_ids=list(raw.entry_ids),
            ))
        logger.info(f"Model returned {len(drafts)} clusters (target {target})")
        return drafts

    @staticmethod
    def build_prompt(items: Sequence[EnrichedFeedbackItem], target: int) -> str:
        def describe(idx: int, e: EnrichedFeedbackItem) -> str:
            areas = ", ".join(f"{a.name} ({a.confidence * 100:.0f}%)" for a in e.linked_product_areas)
            meta = e.user_metadata
            user = (
                f"{meta.plan or 'unknown'} plan, {meta.team_size or '?'} users, {meta.usage or 'unknown'} usage"
                if meta else "Unknown user"
            )
            return (
                f"{idx}. ID: {e.id}\n"
                f"   Text: \"{e.text}\"\n"
                f"   Product Areas: {areas or 'None'}\n"
                f"   Features: {', '.join(e.extracted_features) or 'None'}\n"
                f"   Sentiment: {e.sentiment.label} ({e.sentiment.score:.2f})\n"
                f"   Urgency: {e.urgency}\n"
                f"   Categories: {', '.join(e.category)}\n"
                f"   User: {user}\n"
                f"   Source: {e.source}"
            )

        entries = "\n\n".join(describe(i, e) for i, e in enumerate(items, start=1))
        return f"""Analyze these {len(items)} feedback entries and group them into {target} meaningful semantic clusters.

Group feedback based on:
1. Core themes and topics - What are users talking about?
2. Pain points and problems - What issues are being reported?
3. Feature requests and suggestions - What do users want?
4. User journey stages - Where in the product experience do these occur?
5. Product areas and context - Which parts of the product are affected?

Feedback entries to cluster:

{entries}

Create exactly {target} clusters. Each cluster should have:
- A clear, specific theme that captures the essence of the grouped feedback
- A detailed description explaining what this cluster represents
- All entry IDs that belong to this cluster

CRITICAL REQUIREMENTS:
- Every feedback entry ID must appear in exactly one cluster
- Themes should be specific and actionable, not generic
- Descriptions should explain the common thread connecting the feedback
- Use the cluster_feedback tool to return structured results"""

    # ---------- repair ----------

    @staticmethod
    def deduplicate(drafts: List[ClusterDraft]) -> List[ClusterDraft]:
        """Merge clusters that share an identical theme string."""
        merged: Dict[str, ClusterDraft] = {}
        for draft in drafts:
            existing = merged.get(draft.theme)
            if existing is None:
                merged[draft.theme] = draft.model_copy(deep=True)
                continue
            existing.entry_ids = list(dict.fromkeys([*existing.entry_ids, *draft.entry_ids]))
            logger.info(f"Merged duplicate cluster theme '{draft.theme}' ({len(draft.entry_ids)} entries merged)")
        return list(merged.values())

    def repair_membership(self, drafts: List[ClusterDraft], items: Sequence[EnrichedFeedbackItem]) -> List[ClusterDraft]:
        """Drop unknown and already-claimed ids, then assign every unclaimed item to a cluster."""
        batch_ids = {item.id for item in items}
        claimed = set()
        for draft in drafts:
            kept = []
            for entry_id in draft.entry_ids:
                if entry_id not in batch_ids:
                    logger.warning(f"Cluster '{draft.theme}' references unknown entry {entry_id}; dropping it")
                    continue
                if entry_id in claimed:
                    continue
                claimed.add(entry_id)
                kept.append(entry_id)
            draft.entry_ids = kept

        orphans = [item for item in items if item.id not in claimed]
        if orphans:
            logger.info(f"Assigning {len(orphans)} unassigned entries to existing clusters")
            self.event_bus.emit(EventType.WARNING, {
                "message": f"{len(orphans)} entries were not assigned by the model",
                "feedback_ids": [o.id for o in orphans],
                "strategy": self.config.orphan_assignment,
            }, stage="clustering")
            self._assign(orphans, drafts, items)

        return [d for d in drafts if d.entry_ids]

    def apply_quality_gate(self, drafts: List[ClusterDraft], items: Sequence[EnrichedFeedbackItem]):
        """
        Dissolve clusters with a short theme, too few members or low confidence.

        Members of dissolved clusters are re-homed into the survivors. When no
        cluster passes, the largest one is kept and absorbs the rest.

        Returns:
            Tuple of (surviving drafts, number of dissolved clusters)
        """
        passing = [d for d in drafts if self._passes(d)]
        failing = [d for d in drafts if not self._passes(d)]
        if not failing:
            return drafts, 0

        if not passing:
            keeper = max(drafts, key=lambda d: len(d.entry_ids))
            passing = [keeper]
            failing = [d for d in drafts if d is not keeper]
            logger.warning(f"No cluster passed the quality gate; keeping '{keeper.theme}' and folding the rest into it")

        by_id = {item.id: item for item in items}
        displaced = [by_id[i] for d in failing for i in d.entry_ids]
        for draft in failing:
            logger.info(f"Dissolving cluster '{draft.theme}' ({len(draft.entry_ids)} entries, confidence {draft.confidence})")
        if displaced:
            self._assign(displaced, passing, items)
        return passing, len(failing)

    def _passes(self, draft: ClusterDraft) -> bool:
        return (
            len(draft.theme.strip()) > MIN_THEME_LENGTH
            and len(draft.entry_ids) >= self.config.min_cluster_size
            and draft.confidence >= self.config.quality_threshold
        )

    def _assign(
        self,
        orphans: Sequence[EnrichedFeedbackItem],
        drafts: List[ClusterDraft],
        items: Sequence[EnrichedFeedbackItem],
    ):
        largest = max(drafts, key=lambda d: len(d.entry_ids))
        if self.config.orphan_assignment != "area_overlap":
            largest.entry_ids.extend(o.id for o in orphans)
            return

        by_id = {item.id: item for item in items}
        cluster_areas = {
            d.id: {a.name for i in d.entry_ids for a in by_id[i].linked_product_areas}
            for d in drafts
        }
        for orphan in orphans:
            orphan_areas = {a.name for a in orphan.linked_product_areas}
            best, best_overlap = largest, 0
            for draft in drafts:
                overlap = len(orphan_areas & cluster_areas[draft.id])
                if overlap > best_overlap:
                    best, best_overlap = draft, overlap
            best.entry_ids.append(orphan.id)

    # ---------- events ----------

    def _emit_created(self, clusters: List[FeedbackCluster]):
        for cluster in clusters:
            self.event_bus.emit(EventType.CLUSTER_CREATED, {
                "cluster_id": cluster.id,
                "theme": cluster.theme,
                "description": cluster.description,
                "size": cluster.size,
                "dominant_sentiment": cluster.dominant_sentiment,
                "confidence": cluster.confidence,
                "product_areas": cluster.product_areas,
                "feedback_ids": cluster.entry_ids,
            })

    def _emit_complete(self, clusters: List[FeedbackCluster], started: float, **extra: Any):
        self.event_bus.emit(EventType.CLUSTERING_COMPLETE, {
            "cluster_count": len(clusters),
            "duration_ms": (time.monotonic() - started) * 1000,
            **extra,
        })
