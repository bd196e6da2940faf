"""Unit tests for the SQL Server feedback and taxonomy client."""
import pytest
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch
from src.config.settings import Settings
from src.data_access.sql_client import SQLClient


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    config = Mock(spec=Settings)
    config.sql_server_host = "test-server"
    config.sql_server_port = 1433
    config.sql_server_username = "test-user"
    config.sql_server_password = "test-pass"
    config.sql_server_database = "test-db"
    return config


def _create_mock_connection():
    """Helper to create mock connection."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__ = Mock(return_value=cursor)
    conn.cursor.return_value.__exit__ = Mock(return_value=False)
    return conn, cursor


def _feedback_row(**overrides):
    row = {
        'feedback_id': 101,
        'feedback_text': 'Dashboard is slow',
        'user_id': 'u1',
        'created_at': datetime(2024, 5, 1, tzinfo=timezone.utc),
        'feedback_source': 'support',
        'company_id': 'c1',
        'product_id': 'prod-1',
        'tags': 'perf, dashboard,',
        'user_plan': None,
        'user_segment': None,
        'team_size': None,
        'usage_level': None,
    }
    row.update(overrides)
    return row


class TestSQLClient:
    """Test SQLClient queries and row mapping."""

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_connect(self, mock_connect, mock_config):
        SQLClient(mock_config).connect()

        mock_connect.assert_called_once_with(
            server="test-server",
            port=1433,
            user="test-user",
            password="test-pass",
            database="test-db"
        )

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_list_feedback(self, mock_connect, mock_config):
        """Test feedback rows become FeedbackItem objects."""
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [_feedback_row()]

        [item] = SQLClient(mock_config).list_feedback("prod-1")

        conn.cursor.assert_called_with(as_dict=True)
        sql, params = cursor.execute.call_args[0]
        assert "FROM customer_insights.feedback" in sql
        assert "TOP" not in sql
        assert params == ("prod-1",)
        assert item.id == "101"
        assert item.source == "support"
        assert item.tags == ["perf", "dashboard"]
        assert item.user_metadata is None

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_list_feedback_with_limit(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = []

        assert SQLClient(mock_config).list_feedback("prod-1", limit=25) == []

        assert "SELECT TOP 25 " in cursor.execute.call_args[0][0]

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_feedback_row_mapping(self, mock_connect, mock_config):
        """Test missing user and unknown source fall back, metadata is attached when present."""
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [_feedback_row(
            user_id=None, feedback_source='twitter', tags=None,
            user_plan='enterprise', team_size=40,
        )]

        [item] = SQLClient(mock_config).list_feedback("prod-1")

        assert item.user_id == "anonymous"
        assert item.source == "other"
        assert item.tags == []
        assert item.user_metadata.plan == "enterprise"
        assert item.user_metadata.team_size == 40
        assert item.user_metadata.segment is None

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_non_string_ids_are_stringified(self, mock_connect, mock_config):
        """Test integer and uniqueidentifier columns map to string ids."""
        product_uuid = uuid.UUID('6f1c2f1e-3b1a-4c7e-9d5f-2a8e4b6c0d11')
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [_feedback_row(company_id=7, product_id=product_uuid)]

        [item] = SQLClient(mock_config).list_feedback(str(product_uuid))

        assert item.company_id == "7"
        assert item.product_id == "6f1c2f1e-3b1a-4c7e-9d5f-2a8e4b6c0d11"

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_missing_ids_stay_none(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [_feedback_row(company_id=None, product_id=None)]

        [item] = SQLClient(mock_config).list_feedback("prod-1")

        assert item.company_id is None
        assert item.product_id is None

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_list_areas_for_product(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = [
            {'area_id': 7, 'name': 'Authentication', 'description': 'Login', 'keywords': 'login, sso'},
            {'area_id': 8, 'name': 'Dashboard', 'description': None, 'keywords': None},
        ]

        areas = SQLClient(mock_config).list_areas_for_product("prod-1")

        assert "FROM customer_insights.product_areas" in cursor.execute.call_args[0][0]
        assert [a.id for a in areas] == ["7", "8"]
        assert areas[0].keywords == ["login", "sso"]
        assert areas[1].description is None
        assert areas[1].keywords == []

    @patch('src.data_access.sql_client.pymssql.connect')
    def test_connection_reused(self, mock_connect, mock_config):
        conn, cursor = _create_mock_connection()
        mock_connect.return_value = conn
        cursor.fetchall.return_value = []
        client = SQLClient(mock_config)

        client.list_feedback("prod-1")
        client.list_areas_for_product("prod-1")
        client.close()

        mock_connect.assert_called_once()
        conn.close.assert_called_once()
        assert client.conn is None
