# src/events/event_bus.py
from src.models.events import EVENT_STAGES, EventType, PipelineEvent
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import logging

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineEvent], None]


class PipelineEventBus:
    """
    In-memory publish/subscribe channel for one pipeline run.

    Every emitted event is stamped with the run's pipeline id, a UTC timestamp
    and the stage its type belongs to, appended to the history and handed to
    each subscriber synchronously. A failing subscriber is logged and skipped.
    """

    def __init__(self, pipeline_id: str, pipeline_type: str = "feedback_insight"):
        self.pipeline_id = pipeline_id
        self.pipeline_type = pipeline_type
        self._listeners: List[Listener] = []
        self._history: List[PipelineEvent] = []

    def emit(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        stage: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> PipelineEvent:
        """
        Complete, record and publish an event.

        Args:
            event_type: EventType (or its string value)
            payload: Event-specific data
            stage: Overrides the stage derived from the event type
            pipeline_id: Overrides the bus's pipeline id
            timestamp: Overrides the current UTC time

        Returns:
            The completed PipelineEvent
        """
        event_type = EventType(event_type)
        if stage is None:
            derived = EVENT_STAGES.get(event_type)
            stage = derived.value if derived else None

        fields = dict(
            pipeline_id=pipeline_id or self.pipeline_id,
            type=event_type,
            stage=stage,
            payload={"pipeline_type": self.pipeline_type, **(payload or {})},
        )
        if timestamp is not None:
            fields["timestamp"] = timestamp
        event = PipelineEvent(**fields)

        self._history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.type}: {e}", exc_info=True)
        return event

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_history(self, event_types: Optional[Iterable[Union[EventType, str]]] = None) -> List[PipelineEvent]:
        """Copy of the recorded events, optionally limited to the given types."""
        if event_types is None:
            return list(self._history)
        wanted = {EventType(t).value for t in event_types}
        return [e for e in self._history if e.type in wanted]

    def clear_history(self):
        self._history.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
