import pymssql
import logging
from typing import List, Optional
from src.config.settings import Settings
from src.models.schemas import FeedbackItem, ProductArea, UserMetadata

logger = logging.getLogger(__name__)


def _split_list(value: Optional[str]) -> List[str]:
    """Comma-separated column -> list of trimmed, non-empty strings."""
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def _optional_str(value) -> Optional[str]:
    return str(value) if value is not None else None


class SQLClient:
    """SQL Server client for feedback data and the product-area taxonomy."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = pymssql.connect(
            server=self.config.sql_server_host,
            port=self.config.sql_server_port,
            user=self.config.sql_server_username,
            password=self.config.sql_server_password,
            database=self.config.sql_server_database
        )

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def list_feedback(self, product_id: str, limit: Optional[int] = None) -> List[FeedbackItem]:
        """
        Retrieve feedback for a product, newest first.

        Args:
            product_id: Owning product
            limit: Optional max number of records

        Returns:
            List of FeedbackItem
        """
        if not self.conn:
            self.connect()

        top = f"TOP {int(limit)} " if limit else ""
        query = f"""
            SELECT {top}feedback_id, feedback_text, user_id, created_at, feedback_source,
                   company_id, product_id, tags, user_plan, user_segment, team_size, usage_level
            FROM customer_insights.feedback
            WHERE product_id = %s
              AND feedback_text IS NOT NULL
              AND LTRIM(RTRIM(feedback_text)) <> ''
            ORDER BY created_at DESC
        """

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, (product_id,))
            rows = cursor.fetchall()

        logger.info(f"Fetched {len(rows)} feedback records for product {product_id}")
        return [self._row_to_feedback(row) for row in rows]

    def list_areas_for_product(self, product_id: str) -> List[ProductArea]:
        """
        Retrieve the product-area taxonomy used to link feedback.

        Args:
            product_id: Owning product

        Returns:
            List of ProductArea ordered by name
        """
        if not self.conn:
            self.connect()

        query = """
            SELECT area_id, name, description, keywords
            FROM customer_insights.product_areas
            WHERE product_id = %s
            ORDER BY name
        """

        with self.conn.cursor(as_dict=True) as cursor:
            cursor.execute(query, (product_id,))
            rows = cursor.fetchall()

        return [
            ProductArea(
                id=str(row['area_id']),
                name=row['name'],
                description=row.get('description'),
                keywords=_split_list(row.get('keywords'))
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_feedback(row: dict) -> FeedbackItem:
        metadata = None
        if any(row.get(col) is not None for col in ('user_plan', 'user_segment', 'team_size', 'usage_level')):
            metadata = UserMetadata(
                plan=row.get('user_plan'),
                segment=row.get('user_segment'),
                team_size=row.get('team_size'),
                usage=row.get('usage_level')
            )

        return FeedbackItem(
            id=str(row['feedback_id']),
            text=row['feedback_text'],
            user_id=str(row.get('user_id') or 'anonymous'),
            timestamp=row['created_at'],
            source=row.get('feedback_source') or 'other',
            company_id=_optional_str(row.get('company_id')),
            product_id=_optional_str(row.get('product_id')),
            tags=_split_list(row.get('tags')),
            user_metadata=metadata
        )
