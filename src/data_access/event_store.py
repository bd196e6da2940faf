# src/data_access/event_store.py
"""
PostgreSQL store for pipeline runs and their events.
"""

import json
import logging
import psycopg2
from datetime import datetime, timezone
from psycopg2.extras import Json, execute_values
from typing import Callable, Dict, Iterable, List, Optional
from src.config.settings import Settings
from src.events.event_bus import PipelineEventBus
from src.models.events import EventType, PipelineEvent

logger = logging.getLogger(__name__)


def _json(value) -> Json:
    return Json(value, dumps=lambda obj: json.dumps(obj, default=str))


class PostgresEventStore:
    """Persists pipeline runs and events; queries them by type or in aggregate."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None
        self._pending: List[PipelineEvent] = []

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = psycopg2.connect(
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_database,
            user=self.config.postgres_username,
            password=self.config.postgres_password,
            sslmode=self.config.postgres_sslmode
        )

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        if not self.conn:
            self.connect()

        schema_sql = """
        CREATE TABLE IF NOT EXISTS pipeline_runs (
            pipeline_id VARCHAR(255) PRIMARY KEY,
            product_id VARCHAR(255),
            pipeline_type VARCHAR(100),
            status VARCHAR(50) NOT NULL,
            started_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            summary JSONB,
            error TEXT
        );

        CREATE TABLE IF NOT EXISTS pipeline_events (
            id BIGSERIAL PRIMARY KEY,
            pipeline_id VARCHAR(255) NOT NULL REFERENCES pipeline_runs(pipeline_id),
            event_type VARCHAR(100) NOT NULL,
            stage VARCHAR(50),
            payload JSONB,
            created_at TIMESTAMPTZ NOT NULL
        );

        CREATE INDEX IF NOT EXISTS pipeline_events_run_idx ON pipeline_events(pipeline_id, created_at);
        CREATE INDEX IF NOT EXISTS pipeline_events_type_idx ON pipeline_events(event_type);
        """

        with self.conn.cursor() as cursor:
            cursor.execute(schema_sql)
            self.conn.commit()

    # ---------- runs ----------

    def create_run(self, pipeline_id: str, product_id: str, pipeline_type: str = "feedback_insight") -> None:
        if not self.conn:
            self.connect()

        query = """
            INSERT INTO pipeline_runs (pipeline_id, product_id, pipeline_type, status, started_at)
            VALUES (%s, %s, %s, 'running', %s)
            ON CONFLICT (pipeline_id) DO NOTHING
        """
        with self.conn.cursor() as cursor:
            cursor.execute(query, (pipeline_id, product_id, pipeline_type, datetime.now(timezone.utc)))
            self.conn.commit()

    def complete_run(self, pipeline_id: str, summary: dict) -> None:
        self._finish_run(pipeline_id, "complete", summary=summary)

    def fail_run(self, pipeline_id: str, error: str) -> None:
        self._finish_run(pipeline_id, "failed", error=error)

    def _finish_run(self, pipeline_id: str, status: str, summary: Optional[dict] = None, error: Optional[str] = None) -> None:
        if not self.conn:
            self.connect()

        query = """
            UPDATE pipeline_runs
            SET status = %s, completed_at = %s, summary = %s, error = %s
            WHERE pipeline_id = %s
        """
        with self.conn.cursor() as cursor:
            cursor.execute(query, (
                status,
                datetime.now(timezone.utc),
                _json(summary) if summary is not None else None,
                error,
                pipeline_id
            ))
            self.conn.commit()

    # ---------- events ----------

    def store_event(self, event: PipelineEvent) -> None:
        self.store_events([event])

    def store_events(self, events: Iterable[PipelineEvent]) -> int:
        """
        Insert events in one round trip.

        Returns:
            Number of events written
        """
        values = [
            (e.pipeline_id, e.type, e.stage, _json(e.payload), e.timestamp)
            for e in events
        ]
        if not values:
            return 0
        if not self.conn:
            self.connect()

        query = """
            INSERT INTO pipeline_events (pipeline_id, event_type, stage, payload, created_at)
            VALUES %s
        """
        with self.conn.cursor() as cursor:
            execute_values(cursor, query, values)
            self.conn.commit()
        return len(values)

    def get_events(
        self,
        pipeline_id: str,
        event_types: Optional[Iterable[str]] = None,
        limit: Optional[int] = None
    ) -> List[PipelineEvent]:
        """
        Retrieve a run's events in emission order.

        Args:
            pipeline_id: Pipeline run id
            event_types: Optional filter on event type
            limit: Optional max number of events

        Returns:
            List of PipelineEvent
        """
        if not self.conn:
            self.connect()

        query = """
            SELECT pipeline_id, event_type, stage, payload, created_at
            FROM pipeline_events
            WHERE pipeline_id = %s
        """
        params: list = [pipeline_id]

        if event_types:
            query += " AND event_type = ANY(%s)"
            params.append([EventType(t).value for t in event_types])

        query += " ORDER BY created_at, id"

        if limit:
            query += " LIMIT %s"
            params.append(limit)

        with self.conn.cursor() as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()

        return [
            PipelineEvent(
                pipeline_id=row[0],
                type=row[1],
                stage=row[2],
                payload=row[3] or {},
                timestamp=row[4]
            )
            for row in rows
        ]

    def get_event_counts(self, pipeline_id: str) -> Dict[str, int]:
        """Number of events per type for a run."""
        if not self.conn:
            self.connect()

        query = """
            SELECT event_type, COUNT(*)
            FROM pipeline_events
            WHERE pipeline_id = %s
            GROUP BY event_type
            ORDER BY event_type
        """
        with self.conn.cursor() as cursor:
            cursor.execute(query, (pipeline_id,))
            return {event_type: count for event_type, count in cursor.fetchall()}

    # ---------- live capture ----------

    def attach(self, bus: PipelineEventBus) -> Callable[[], None]:
        """
        Subscribe to a live event bus.

        Events are buffered in memory and written by `flush()` so the database
        round trip never runs inside an emitting stage.

        Returns:
            Callable that unsubscribes from the bus
        """
        return bus.subscribe(self._pending.append)

    def flush(self) -> int:
        """
        Write buffered events. Returns the number written.

        The buffer is only cleared once the write commits, so a failed flush
        can be retried without losing events.
        """
        pending = list(self._pending)
        written = self.store_events(pending)
        # attached buses append to this same list
        del self._pending[:len(pending)]
        logger.info(f"Persisted {written} pipeline events")
        return written
