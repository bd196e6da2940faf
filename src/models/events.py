"""
Pipeline event types.

Every event carries the pipeline id, a UTC timestamp, the stage that produced
it and a free-form payload. Payload shapes only ever gain optional keys so
existing subscribers keep working.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from enum import Enum


class PipelineStage(str, Enum):
    PIPELINE = "pipeline"
    ENRICHMENT = "enrichment"
    CLUSTERING = "clustering"
    INSIGHT_GENERATION = "insight_generation"


class EventType(str, Enum):
    # Lifecycle
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_COMPLETE = "pipeline_complete"
    PIPELINE_FAILED = "pipeline_failed"
    STAGE_PROGRESS = "stage_progress"

    # Enrichment
    ENRICHMENT_STARTED = "enrichment_started"
    FEEDBACK_ENRICHMENT_STARTED = "feedback_enrichment_started"
    ENRICHMENT_AI_CALL = "enrichment_ai_call"
    ENRICHMENT_AI_RESPONSE = "enrichment_ai_response"
    FEEDBACK_ENRICHMENT_COMPLETE = "feedback_enrichment_complete"
    ENRICHMENT_COMPLETE = "enrichment_complete"

    # Clustering
    CLUSTERING_STARTED = "clustering_started"
    CLUSTERING_AI_CALL = "clustering_ai_call"
    CLUSTERING_AI_RESPONSE = "clustering_ai_response"
    CLUSTER_CREATED = "cluster_created"
    CLUSTERING_COMPLETE = "clustering_complete"

    # Insight generation
    INSIGHT_GENERATION_STARTED = "insight_generation_started"
    INSIGHT_CLUSTER_PROCESSING = "insight_cluster_processing"
    INSIGHT_AI_CALL = "insight_ai_call"
    INSIGHT_AI_RESPONSE = "insight_ai_response"
    INSIGHT_FALLBACK_USED = "insight_fallback_used"
    INSIGHT_CREATED = "insight_created"
    INSIGHT_GENERATION_COMPLETE = "insight_generation_complete"

    # Generic
    DATA_CREATED = "data_created"
    WARNING = "warning"
    ERROR = "error"


EVENT_STAGES = {
    EventType.PIPELINE_STARTED: PipelineStage.PIPELINE,
    EventType.PIPELINE_COMPLETE: PipelineStage.PIPELINE,
    EventType.PIPELINE_FAILED: PipelineStage.PIPELINE,
    EventType.ENRICHMENT_STARTED: PipelineStage.ENRICHMENT,
    EventType.FEEDBACK_ENRICHMENT_STARTED: PipelineStage.ENRICHMENT,
    EventType.ENRICHMENT_AI_CALL: PipelineStage.ENRICHMENT,
    EventType.ENRICHMENT_AI_RESPONSE: PipelineStage.ENRICHMENT,
    EventType.FEEDBACK_ENRICHMENT_COMPLETE: PipelineStage.ENRICHMENT,
    EventType.ENRICHMENT_COMPLETE: PipelineStage.ENRICHMENT,
    EventType.CLUSTERING_STARTED: PipelineStage.CLUSTERING,
    EventType.CLUSTERING_AI_CALL: PipelineStage.CLUSTERING,
    EventType.CLUSTERING_AI_RESPONSE: PipelineStage.CLUSTERING,
    EventType.CLUSTER_CREATED: PipelineStage.CLUSTERING,
    EventType.CLUSTERING_COMPLETE: PipelineStage.CLUSTERING,
    EventType.INSIGHT_GENERATION_STARTED: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_CLUSTER_PROCESSING: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_AI_CALL: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_AI_RESPONSE: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_FALLBACK_USED: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_CREATED: PipelineStage.INSIGHT_GENERATION,
    EventType.INSIGHT_GENERATION_COMPLETE: PipelineStage.INSIGHT_GENERATION,
}


class PipelineEvent(BaseModel):
    """A single timestamped pipeline event."""
    model_config = ConfigDict(use_enum_values=True, frozen=True)

    pipeline_id: str
    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stage: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
