"""
Enrichment stage: attach sentiment, urgency, features, categories and
product-area links to each raw feedback item.

One completion call per item, fanned out through the bounded executor. A
failed item is dropped from the output and its error is carried in the
`feedback_enrichment_complete` event; the batch always runs to completion.
"""

from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4
import json
import logging
import time

from pydantic import BaseModel, ConfigDict

from src.agents.llm_agent import ChatAgent
from src.agents.tools import ENRICH_FEEDBACK_TOOL, force_tool
from src.config.settings import Settings
from src.events.event_bus import PipelineEventBus
from src.models.ai_responses import AreaLinkResponse, EnrichmentResponse
from src.models.events import EventType
from src.models.schemas import EnrichedFeedbackItem, FeedbackItem, LinkedProductArea, ProductArea
from src.pipelines.errors import EnrichmentError, ExtractionError
from src.utils.json_extractor import extract_json
from src.utils.parallel import ProcessingResult, create_progress_logger, process_in_parallel

logger = logging.getLogger(__name__)

MAX_AREA_LINKS = 3
PREVIEW_CHARS = 100

SYSTEM_PROMPT = """You are a feedback enrichment specialist. Analyze customer feedback and link it to existing product areas.

Analyze these aspects:
- Product area linking: Match feedback to existing product areas using their exact IDs
- Sentiment analysis: Determine positive/negative/neutral with confidence scores
- Feature extraction: Identify specific features mentioned in the feedback
- Urgency assessment: Classify as low/medium/high based on language indicators
- Category tagging: Add relevant classification tags

Language patterns to recognize:
- Urgency indicators: "urgent", "immediately", "ASAP", "critical", "broken", "emergency"
- Positive sentiment: "love", "great", "awesome", "perfect", "works well", "excellent"
- Negative sentiment: "hate", "terrible", "broken", "frustrated", "annoying", "awful"

Always return valid JSON with structured analysis. Be precise and consistent."""


class EnrichmentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float = 0.0
    concurrency: int = 3
    permissive_area_links: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnrichmentConfig":
        return cls(
            temperature=settings.enrichment_temperature,
            concurrency=settings.enrichment_concurrency,
            permissive_area_links=settings.permissive_area_links,
        )


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class FeedbackEnricher:
    """Enriches feedback items with structured AI analysis."""

    def __init__(self, chat_agent: ChatAgent, event_bus: PipelineEventBus, config: Optional[EnrichmentConfig] = None):
        self.chat_agent = chat_agent
        self.event_bus = event_bus
        self.config = config or EnrichmentConfig()

    async def enrich_feedback(
        self,
        items: Sequence[FeedbackItem],
        product_areas: Sequence[ProductArea],
        concurrency: Optional[int] = None,
    ) -> List[EnrichedFeedbackItem]:
        """
        Enrich feedback items in parallel with bounded concurrency.

        Args:
            items: Raw feedback items
            product_areas: Candidate taxonomy areas for the owning product
            concurrency: Max concurrent completion calls (defaults to config)

        Returns:
            Enriched items for every item that succeeded, in input order
        """
        items = list(items)
        if not items:
            return []

        concurrency = concurrency or self.config.concurrency
        product_areas = list(product_areas)
        areas_by_id = {area.id: area for area in product_areas}

        self.event_bus.emit(EventType.ENRICHMENT_STARTED, {
            "feedback_count": len(items),
            "product_area_count": len(product_areas),
            "concurrency": concurrency,
        })
        logger.info(f"Starting enrichment of {len(items)} items with concurrency {concurrency} ({len(product_areas)} product areas)")

        progress = create_progress_logger("Feedback enrichment")
        completed = 0

        def on_item_complete(index: int, total: int, result: ProcessingResult):
            nonlocal completed
            completed += 1
            progress["on_item_complete"](index, total, result)
            self.event_bus.emit(EventType.STAGE_PROGRESS, {
                "completed": completed,
                "total": total,
                "feedback_id": items[index].id,
                "success": result.success,
            }, stage="enrichment")

        async def process(item: FeedbackItem, index: int) -> EnrichedFeedbackItem:
            return await self._enrich_with_events(item, index, len(items), product_areas, areas_by_id)

        results, stats = await process_in_parallel(
            items,
            process,
            concurrency=concurrency,
            continue_on_error=True,
            on_item_complete=on_item_complete,
            on_batch_complete=progress["on_batch_complete"],
        )

        enriched = [r.result for r in results if r.success]

        self.event_bus.emit(EventType.ENRICHMENT_COMPLETE, {
            "processed_count": stats.total_items,
            "success_count": stats.success_count,
            "failure_count": stats.failure_count,
            "duration_ms": stats.total_duration_ms,
            "throughput": stats.throughput,
        })

        logger.info(
            f"Enrichment complete: {stats.success_count}/{stats.total_items} succeeded, "
            f"{stats.failure_count} failed in {stats.total_duration_ms:.0f}ms "
            f"(avg {stats.average_duration_ms:.0f}ms/item, {stats.throughput:.2f} items/sec)"
        )
        return enriched

    async def _enrich_with_events(
        self,
        item: FeedbackItem,
        index: int,
        total: int,
        product_areas: List[ProductArea],
        areas_by_id: Dict[str, ProductArea],
    ) -> EnrichedFeedbackItem:
        started = time.monotonic()
        self.event_bus.emit(EventType.FEEDBACK_ENRICHMENT_STARTED, {
            "feedback_id": item.id,
            "text": preview(item.text),
            "source": item.source,
            "position": index + 1,
            "total": total,
        })

        try:
            enriched = await self._enrich_single(item, product_areas, areas_by_id)
        except Exception as e:
            message = f"Error enriching feedback {item.id}: {e}"
            logger.error(message)
            self.event_bus.emit(EventType.FEEDBACK_ENRICHMENT_COMPLETE, {
                "feedback_id": item.id,
                "success": False,
                "duration_ms": (time.monotonic() - started) * 1000,
                "error": message,
            })
            raise EnrichmentError(message, raw_response=getattr(e, "raw_response", None)) from e

        self.event_bus.emit(EventType.FEEDBACK_ENRICHMENT_COMPLETE, {
            "feedback_id": item.id,
            "success": True,
            "duration_ms": (time.monotonic() - started) * 1000,
            "enrichment_data": enriched.model_dump(
                mode="json",
                include={"id", "linked_product_areas", "sentiment", "extracted_features", "urgency", "category"},
            ),
        })
        return enriched

    async def _enrich_single(
        self,
        item: FeedbackItem,
        product_areas: List[ProductArea],
        areas_by_id: Dict[str, ProductArea],
    ) -> EnrichedFeedbackItem:
        prompt = self.build_prompt(item, product_areas)
        messages = [{"role": "user", "content": prompt}]
        call_id = f"enrichment_{uuid4().hex[:12]}"

        self.event_bus.emit(EventType.ENRICHMENT_AI_CALL, {
            "feedback_id": item.id,
            "call_id": call_id,
            "messages": [{"role": "system", "content": SYSTEM_PROMPT}, *messages],
        })

        response = await self.chat_agent.complete(
            SYSTEM_PROMPT,
            messages,
            tools=[ENRICH_FEEDBACK_TOOL],
            tool_choice=force_tool(ENRICH_FEEDBACK_TOOL),
            temperature=self.config.temperature,
        )
        extraction = extract_json(response)

        self.event_bus.emit(EventType.ENRICHMENT_AI_RESPONSE, {
            "feedback_id": item.id,
            "call_id": call_id,
            "response": response,
            "extracted_data": extraction.data if extraction.success else None,
            "extraction_error": None if extraction.success else extraction.error,
        })

        if not extraction.success:
            raise ExtractionError(f"Failed to extract JSON from AI response: {extraction.error}", raw_response=response)

        try:
            decoded = EnrichmentResponse.from_payload(extraction.data)
        except ValueError as e:
            raise ExtractionError(f"Unexpected enrichment structure: {e}", raw_response=response) from e

        return EnrichedFeedbackItem(
            **item.model_dump(),
            linked_product_areas=self.resolve_area_links(decoded.linked_product_areas, areas_by_id),
            sentiment=decoded.sentiment,
            extracted_features=decoded.extracted_features,
            urgency=decoded.urgency,
            category=decoded.category,
        )

    def resolve_area_links(
        self,
        links: List[AreaLinkResponse],
        areas_by_id: Dict[str, ProductArea],
    ) -> List[LinkedProductArea]:
        """Map raw links onto the taxonomy: drop unknown ids (unless permissive) and duplicates, keep at most 3."""
        resolved: List[LinkedProductArea] = []
        seen = set()
        for link in links:
            if link.id in seen:
                continue
            area = areas_by_id.get(link.id)
            if area is None and not self.config.permissive_area_links:
                logger.debug(f"Dropping link to unknown product area {link.id}")
                continue
            seen.add(link.id)
            resolved.append(LinkedProductArea(
                id=link.id,
                name=area.name if area else link.id,
                confidence=link.confidence,
            ))
            if len(resolved) == MAX_AREA_LINKS:
                break
        return resolved

    @staticmethod
    def build_prompt(item: FeedbackItem, product_areas: List[ProductArea]) -> str:
        areas = "\n".join(
            f"- ID: {area.id}\n"
            f"  Name: \"{area.name}\"\n"
            f"  Description: {area.description or 'No description'}\n"
            f"  Keywords: {', '.join(area.keywords) or 'None'}"
            for area in product_areas
        ) or "(no product areas defined)"
        metadata = json.dumps(item.user_metadata.model_dump(exclude_none=True)) if item.user_metadata else "None"

        return f"""Analyze the following customer feedback and enrich it with structured insights.

Available Product Areas (use these exact IDs):
{areas}

Feedback to analyze:
ID: {item.id}
Text: "{item.text}"
Source: {item.source}
User: {item.user_id}
User Metadata: {metadata}

Provide analysis for this feedback entry:
- linkedProductAreas: Link to 1-3 most relevant product areas using ONLY the IDs listed above, with confidence scores (0.0-1.0)
- sentiment: Classify as positive/negative/neutral with score (-1.0 to 1.0) and confidence (0.0-1.0)
- extractedFeatures: List specific features or topics mentioned
- urgency: Classify as low/medium/high based on language urgency indicators
- category: Add relevant classification tags

Guidelines:
- High urgency: Contains words like "urgent", "critical", "broken", "immediately", "ASAP", "emergency"
- Medium urgency: Requests improvements or mentions issues without urgency indicators
- Low urgency: General feedback, suggestions, or positive comments
- Only link to product areas from the provided list using exact IDs
- If no product areas match well, return an empty array for linkedProductAreas

Return ONLY the JSON object for this feedback entry. No preamble, no explanation."""

    @staticmethod
    def get_enrichment_stats(enriched: Sequence[EnrichedFeedbackItem]) -> Dict[str, Any]:
        """
        Summarize a batch of enriched items.

        Returns:
            Dict with totals by product area name, sentiment and urgency, the
            average sentiment confidence and the total number of extracted features
        """
        stats: Dict[str, Any] = {
            "total": len(enriched),
            "by_product_area": {},
            "by_sentiment": {"positive": 0, "negative": 0, "neutral": 0},
            "by_urgency": {"low": 0, "medium": 0, "high": 0},
            "average_confidence": 0.0,
            "total_features": 0,
        }
        for item in enriched:
            for area in item.linked_product_areas:
                stats["by_product_area"][area.name] = stats["by_product_area"].get(area.name, 0) + 1
            stats["by_sentiment"][item.sentiment.label] += 1
            stats["by_urgency"][item.urgency] += 1
            stats["average_confidence"] += item.sentiment.confidence
            stats["total_features"] += len(item.extracted_features)

        if enriched:
            stats["average_confidence"] /= len(enriched)
        return stats
