"""Unit tests for the PostgreSQL pipeline event store."""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch
from psycopg2.extras import Json
from src.config.settings import Settings
from src.data_access.event_store import PostgresEventStore
from src.events.event_bus import PipelineEventBus
from src.models.events import EventType


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    config = Mock(spec=Settings)
    config.postgres_host = "test-host"
    config.postgres_port = 5432
    config.postgres_database = "test-db"
    config.postgres_username = "test-user"
    config.postgres_password = "test-pass"
    config.postgres_sslmode = "require"
    return config


def _create_mock_connection():
    """Helper to create mock connection."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__ = Mock(return_value=cursor)
    conn.cursor.return_value.__exit__ = Mock(return_value=False)
    return conn, cursor


class TestRuns:
    """Test schema creation and run bookkeeping."""

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_connect_uses_settings(self, mock_connect, mock_config):
        store = PostgresEventStore(mock_config)
        store.connect()

        mock_connect.assert_called_once_with(
            host="test-host",
            port=5432,
            database="test-db",
            user="test-user",
            password="test-pass",
            sslmode="require"
        )

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_initialize_schema(self, mock_connect, mock_config):
        """Test creating the runs and events tables."""
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn

        PostgresEventStore(mock_config).initialize_schema()

        sql = cursor.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS pipeline_runs" in sql
        assert "CREATE TABLE IF NOT EXISTS pipeline_events" in sql
        assert "payload JSONB" in sql
        conn.commit.assert_called_once()

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_create_run(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn

        PostgresEventStore(mock_config).create_run("pipeline_1", "prod-1")

        sql, params = cursor.execute.call_args[0]
        assert "INSERT INTO pipeline_runs" in sql
        assert "'running'" in sql
        assert params[:3] == ("pipeline_1", "prod-1", "feedback_insight")
        assert params[3].tzinfo is not None
        conn.commit.assert_called_once()

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_complete_run(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn

        PostgresEventStore(mock_config).complete_run("pipeline_1", {"insight_count": 2})

        sql, params = cursor.execute.call_args[0]
        assert "UPDATE pipeline_runs" in sql
        assert params[0] == "complete"
        assert isinstance(params[2], Json)
        assert params[2].adapted == {"insight_count": 2}
        assert params[3] is None
        assert params[4] == "pipeline_1"

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_fail_run(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn

        PostgresEventStore(mock_config).fail_run("pipeline_1", "clustering exploded")

        params = cursor.execute.call_args[0][1]
        assert params[0] == "failed"
        assert params[2] is None
        assert params[3] == "clustering exploded"

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_close(self, mock_connect, mock_config):
        conn, _ = _create_mock_connection()
        mock_connect.return_value = conn
        store = PostgresEventStore(mock_config)
        store.connect()

        store.close()
        store.close()

        conn.close.assert_called_once()
        assert store.conn is None


class TestEvents:
    """Test writing and reading events."""

    @patch('src.data_access.event_store.execute_values')
    @patch('src.data_access.event_store.psycopg2.connect')
    def test_store_events_batch(self, mock_connect, mock_execute_values, mock_config):
        """Test events are inserted in one execute_values call."""
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        bus = PipelineEventBus("pipeline_1")
        events = [
            bus.emit(EventType.PIPELINE_STARTED, {"feedback_count": 5}),
            bus.emit(EventType.WARNING, {"message": "orphans"}, stage="clustering"),
        ]

        written = PostgresEventStore(mock_config).store_events(events)

        assert written == 2
        mock_execute_values.assert_called_once()
        call_cursor, sql, values = mock_execute_values.call_args[0]
        assert call_cursor is cursor
        assert "INSERT INTO pipeline_events" in sql
        assert [v[:3] for v in values] == [
            ("pipeline_1", "pipeline_started", "pipeline"),
            ("pipeline_1", "warning", "clustering"),
        ]
        assert values[0][3].adapted["feedback_count"] == 5
        assert values[0][4] == events[0].timestamp
        conn.commit.assert_called_once()

    @patch('src.data_access.event_store.execute_values')
    @patch('src.data_access.event_store.psycopg2.connect')
    def test_store_no_events(self, mock_connect, mock_execute_values, mock_config):
        assert PostgresEventStore(mock_config).store_events([]) == 0
        mock_connect.assert_not_called()
        mock_execute_values.assert_not_called()

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_get_events(self, mock_connect, mock_config):
        """Test rows are decoded into PipelineEvent objects."""
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        cursor.fetchall.return_value = [
            ("pipeline_1", "insight_created", "insight_generation", {"insight_id": "i1"}, ts),
            ("pipeline_1", "warning", None, None, ts),
        ]

        events = PostgresEventStore(mock_config).get_events(
            "pipeline_1", event_types=[EventType.INSIGHT_CREATED, "warning"], limit=50
        )

        sql, params = cursor.execute.call_args[0]
        assert "event_type = ANY(%s)" in sql
        assert "LIMIT %s" in sql
        assert params == ("pipeline_1", ["insight_created", "warning"], 50)
        assert events[0].type == "insight_created"
        assert events[0].payload == {"insight_id": "i1"}
        assert events[0].timestamp == ts
        assert events[1].stage is None
        assert events[1].payload == {}

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_get_events_unfiltered(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = []

        assert PostgresEventStore(mock_config).get_events("pipeline_1") == []

        sql, params = cursor.execute.call_args[0]
        assert "ANY" not in sql
        assert "LIMIT" not in sql
        assert params == ("pipeline_1",)

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_get_events_rejects_unknown_type(self, mock_connect, mock_config):
        conn, _ = _create_mock_connection()
        mock_connect.return_value = conn

        with pytest.raises(ValueError):
            PostgresEventStore(mock_config).get_events("pipeline_1", event_types=["bogus"])

    @patch('src.data_access.event_store.psycopg2.connect')
    def test_get_event_counts(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [("cluster_created", 2), ("insight_created", 2)]

        counts = PostgresEventStore(mock_config).get_event_counts("pipeline_1")

        assert counts == {"cluster_created": 2, "insight_created": 2}
        assert cursor.execute.call_args[0][1] == ("pipeline_1",)


class TestLiveCapture:
    """Test buffering events from a live bus."""

    @patch('src.data_access.event_store.execute_values')
    @patch('src.data_access.event_store.psycopg2.connect')
    def test_attach_and_flush(self, mock_connect, mock_execute_values, mock_config):
        """Test emitted events are buffered until flush writes them."""
        conn, _ = _create_mock_connection()
        mock_connect.return_value = conn
        store = PostgresEventStore(mock_config)
        bus = PipelineEventBus("pipeline_1")

        unsubscribe = store.attach(bus)
        bus.emit(EventType.PIPELINE_STARTED)
        bus.emit(EventType.PIPELINE_COMPLETE)

        mock_execute_values.assert_not_called()
        assert store.flush() == 2
        assert len(mock_execute_values.call_args[0][2]) == 2

        unsubscribe()
        bus.emit(EventType.WARNING)
        assert store.flush() == 0
        mock_execute_values.assert_called_once()

    @patch('src.data_access.event_store.execute_values')
    @patch('src.data_access.event_store.psycopg2.connect')
    def test_failed_flush_keeps_events(self, mock_connect, mock_execute_values, mock_config):
        """Test a failed write leaves the buffer intact for a retry."""
        conn, _ = _create_mock_connection()
        mock_connect.return_value = conn
        mock_execute_values.side_effect = [RuntimeError("connection reset"), None]
        store = PostgresEventStore(mock_config)
        bus = PipelineEventBus("pipeline_1")
        store.attach(bus)
        bus.emit(EventType.PIPELINE_STARTED)
        bus.emit(EventType.PIPELINE_FAILED, {"error": "boom"})

        with pytest.raises(RuntimeError):
            store.flush()

        assert store.flush() == 2
        assert [v[1] for v in mock_execute_values.call_args[0][2]] == ["pipeline_started", "pipeline_failed"]

    @patch('src.data_access.event_store.execute_values')
    @patch('src.data_access.event_store.psycopg2.connect')
    def test_events_after_flush_are_still_captured(self, mock_connect, mock_execute_values, mock_config):
        conn, _ = _create_mock_connection()
        mock_connect.return_value = conn
        store = PostgresEventStore(mock_config)
        bus = PipelineEventBus("pipeline_1")
        store.attach(bus)

        bus.emit(EventType.PIPELINE_STARTED)
        assert store.flush() == 1
        bus.emit(EventType.PIPELINE_COMPLETE)

        assert store.flush() == 1
        assert mock_execute_values.call_args[0][2][0][1] == "pipeline_complete"
