"""
Feedback insight pipeline: enrichment -> clustering -> insight generation.

Each run is a PipelineRun that owns its event bus and moves through an
explicit state machine. The orchestrator sequences the stages, emits the
lifecycle events and assembles the summary; stage failures are reported with
`pipeline_failed` and re-raised.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence
from uuid import uuid4
import argparse
import asyncio
import logging
import sys
import time

from src.agents.llm_agent import ChatAgent
from src.config.log_setup import configure_logging
from src.config.settings import Settings
from src.data_access.event_store import PostgresEventStore
from src.data_access.sql_client import SQLClient
from src.events.event_bus import PipelineEventBus
from src.models.events import EventType
from src.models.schemas import FeedbackItem, PipelineOutput, PipelineSummary
from src.pipelines.clustering import ClusteringConfig, SemanticClusterer
from src.pipelines.enrichment import EnrichmentConfig, FeedbackEnricher
from src.pipelines.errors import InvalidStateTransition
from src.pipelines.insights import InsightConfig, InsightGenerator

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    ENRICHING = "enriching"
    CLUSTERING = "clustering"
    GENERATING_INSIGHTS = "generating_insights"
    COMPLETE = "complete"
    FAILED = "failed"


# Terminal states - no transitions allowed out of these
TERMINAL_STATES = {PipelineState.COMPLETE, PipelineState.FAILED}

VALID_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.ENRICHING},
    PipelineState.ENRICHING: {PipelineState.CLUSTERING, PipelineState.FAILED},
    PipelineState.CLUSTERING: {PipelineState.GENERATING_INSIGHTS, PipelineState.FAILED},
    PipelineState.GENERATING_INSIGHTS: {PipelineState.COMPLETE, PipelineState.FAILED},
}

# Stage name reported in events for each working state
STATE_STAGES = {
    PipelineState.ENRICHING: "enrichment",
    PipelineState.CLUSTERING: "clustering",
    PipelineState.GENERATING_INSIGHTS: "insight_generation",
}


class PipelineRun:
    """One execution of the pipeline: its id, product, event bus and state."""

    def __init__(self, product_id: str, pipeline_id: Optional[str] = None, pipeline_type: str = "feedback_insight"):
        self.pipeline_id = pipeline_id or f"pipeline_{int(time.time() * 1000)}_{uuid4().hex[:8]}"
        self.product_id = product_id
        self.event_bus = PipelineEventBus(self.pipeline_id, pipeline_type)
        self.state = PipelineState.IDLE
        self.state_history: List[PipelineState] = [PipelineState.IDLE]

    def transition(self, new_state: PipelineState) -> None:
        """
        Move to `new_state`.

        Raises:
            InvalidStateTransition: The move is not allowed from the current state
        """
        allowed = VALID_TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Pipeline {self.pipeline_id} cannot move from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"Pipeline {self.pipeline_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.state_history.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_stage(self) -> Optional[str]:
        return STATE_STAGES.get(self.state)


class FeedbackPipelineOrchestrator:
    """
    Runs the three pipeline stages in order.

    `taxonomy_source` is anything with `list_areas_for_product(product_id)`
    returning ProductArea objects (SQLClient in production).
    """

    def __init__(self, chat_agent: ChatAgent, taxonomy_source, config: Optional[Settings] = None):
        self.chat_agent = chat_agent
        self.taxonomy_source = taxonomy_source
        if config is not None:
            self.enrichment_config = EnrichmentConfig.from_settings(config)
            self.clustering_config = ClusteringConfig.from_settings(config)
            self.insight_config = InsightConfig.from_settings(config)
        else:
            self.enrichment_config = EnrichmentConfig()
            self.clustering_config = ClusteringConfig()
            self.insight_config = InsightConfig()

    async def run_pipeline(
        self,
        product_id: str,
        feedback_items: Sequence[FeedbackItem],
        concurrency: Optional[int] = None,
        run: Optional[PipelineRun] = None,
    ) -> PipelineOutput:
        """
        Execute the full pipeline for one product.

        Args:
            product_id: Product whose taxonomy is used for enrichment
            feedback_items: Raw feedback to process
            concurrency: Max concurrent completion calls for enrichment and insights
            run: Optional pre-built run (e.g. to subscribe to its bus first);
                a run can only be executed once

        Returns:
            PipelineOutput with insights, summary and intermediate artifacts

        Raises:
            InvalidStateTransition: `run` was already executed
            Exception: Whatever stopped a stage, after `pipeline_failed` is emitted
        """
        run = run or PipelineRun(product_id)
        bus = run.event_bus
        feedback_items = list(feedback_items)
        started = time.monotonic()

        run.transition(PipelineState.ENRICHING)
        bus.emit(EventType.PIPELINE_STARTED, {
            "product_id": product_id,
            "feedback_count": len(feedback_items),
            "concurrency": concurrency,
        })
        logger.info(f"Pipeline {run.pipeline_id} started for product {product_id} ({len(feedback_items)} feedback items)")

        try:
            product_areas = self.taxonomy_source.list_areas_for_product(product_id)
            enricher = FeedbackEnricher(self.chat_agent, bus, self.enrichment_config)
            enriched = await enricher.enrich_feedback(feedback_items, product_areas, concurrency)
            bus.emit(EventType.DATA_CREATED, {
                "data_type": "enriched_feedback",
                "count": len(enriched),
                "stats": enricher.get_enrichment_stats(enriched),
            }, stage="enrichment")

            run.transition(PipelineState.CLUSTERING)
            clusterer = SemanticClusterer(self.chat_agent, bus, self.clustering_config)
            clusters = await clusterer.cluster_feedback(enriched)
            bus.emit(EventType.DATA_CREATED, {
                "data_type": "clusters",
                "count": len(clusters),
                "cluster_ids": [c.id for c in clusters],
            }, stage="clustering")

            run.transition(PipelineState.GENERATING_INSIGHTS)
            generator = InsightGenerator(self.chat_agent, bus, self.insight_config)
            insights = await generator.generate_insights(clusters, concurrency)
            bus.emit(EventType.DATA_CREATED, {
                "data_type": "insights",
                "count": len(insights),
                "insight_ids": [i.id for i in insights],
            }, stage="insight_generation")

            summary = PipelineSummary(
                feedback_count=len(feedback_items),
                enriched_count=len(enriched),
                cluster_count=len(clusters),
                insight_count=len(insights),
                processing_time_ms=(time.monotonic() - started) * 1000,
            )
            run.transition(PipelineState.COMPLETE)
        except (Exception, asyncio.CancelledError) as e:
            stage = run.current_stage
            if not run.is_terminal:
                run.transition(PipelineState.FAILED)
            error = "cancelled" if isinstance(e, asyncio.CancelledError) else str(e)
            logger.error(f"Pipeline {run.pipeline_id} failed during {stage}: {error}")
            bus.emit(EventType.PIPELINE_FAILED, {
                "stage": stage,
                "error": error,
                "error_type": type(e).__name__,
                "duration_ms": (time.monotonic() - started) * 1000,
            })
            raise

        bus.emit(EventType.PIPELINE_COMPLETE, {"summary": summary.model_dump()})
        logger.info(
            f"Pipeline {run.pipeline_id} complete: {summary.insight_count} insights from "
            f"{summary.cluster_count} clusters in {summary.processing_time_ms:.0f}ms"
        )

        return PipelineOutput(
            pipeline_id=run.pipeline_id,
            insights=insights,
            summary=summary,
            enriched_feedback=enriched,
            clusters=clusters,
        )


def main():
    """Main entry point for running the feedback insight pipeline."""
    parser = argparse.ArgumentParser(description="Generate insights from product feedback")
    parser.add_argument("--product-id", required=True, help="Product to analyze")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent completion calls per stage")
    parser.add_argument("--limit", type=int, default=None, help="Max feedback records to process")
    parser.add_argument("--max-clusters", type=int, default=None, help="Upper bound on cluster count")
    parser.add_argument("--persist-events", action="store_true", help="Store the run and its events in PostgreSQL")
    parser.add_argument("--output", type=Path, default=None, help="Write the pipeline output as JSON to this file")
    args = parser.parse_args()

    # Load configuration
    config = Settings()
    if args.max_clusters:
        config = config.model_copy(update={"max_clusters": args.max_clusters})

    configure_logging(config.log_level)

    sql_client = SQLClient(config)
    event_store = PostgresEventStore(config) if args.persist_events else None

    try:
        feedback = sql_client.list_feedback(args.product_id, limit=args.limit)
        run = PipelineRun(args.product_id)

        if event_store:
            event_store.initialize_schema()
            event_store.create_run(run.pipeline_id, args.product_id)
            event_store.attach(run.event_bus)

        orchestrator = FeedbackPipelineOrchestrator(ChatAgent(config), sql_client, config)
        try:
            output = asyncio.run(orchestrator.run_pipeline(args.product_id, feedback, args.concurrency, run=run))
        except (Exception, asyncio.CancelledError, KeyboardInterrupt) as e:
            error = str(e) or type(e).__name__
            if event_store:
                try:
                    event_store.flush()
                except Exception as store_error:
                    logger.error(f"Could not persist events for failed run {run.pipeline_id}: {store_error}")
                event_store.fail_run(run.pipeline_id, error)
            logger.error(f"Pipeline failed: {error}")
            sys.exit(1)

        if event_store:
            event_store.flush()
            event_store.complete_run(run.pipeline_id, output.summary.model_dump())

        if args.output:
            args.output.write_text(output.model_dump_json(indent=2))
            logger.info(f"Wrote pipeline output to {args.output}")
    finally:
        sql_client.close()
        if event_store:
            event_store.close()

    # Print results
    counts = output.counts()
    print("\n" + "="*50)
    print("FEEDBACK INSIGHT PIPELINE RESULTS")
    print("="*50)
    print(f"Pipeline id: {output.pipeline_id}")
    print(f"Feedback processed: {counts['feedback']}")
    print(f"Enriched: {counts['enriched']}")
    print(f"Clusters: {counts['clusters']}")
    print(f"Insights: {counts['insights']}")
    print(f"Processing time: {output.summary.processing_time_ms:.0f}ms")
    for insight in output.insights:
        flag = " (fallback)" if insight.fallback_used else ""
        print(f"  - [{insight.pain_point.severity}] {insight.title}{flag} (confidence {insight.confidence:.2f})")
    print("="*50)


if __name__ == "__main__":
    main()
