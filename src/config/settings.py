# src/config/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional

# Get project root (2 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI
    openai_api_key: str
    openai_llm_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 60.0
    openai_max_retries: int = 5

    # Per-stage sampling temperature
    enrichment_temperature: float = 0.0
    clustering_temperature: float = 0.1
    insight_temperature: float = 0.2

    # Concurrency
    enrichment_concurrency: int = 3
    insight_concurrency: int = 3

    # Enrichment
    permissive_area_links: bool = False

    # Clustering
    max_clusters: int = 8
    min_cluster_size: int = 2
    cluster_quality_threshold: float = 0.5
    orphan_assignment: str = "largest"

    # Insight generation
    max_recommendations: int = 5
    max_evidence_items: int = 10

    # SQL Server (feedback + product areas)
    sql_server_host: Optional[str] = None
    sql_server_port: int = 1433
    sql_server_database: Optional[str] = None
    sql_server_username: Optional[str] = None
    sql_server_password: Optional[str] = None

    # PostgreSQL (pipeline event store)
    postgres_host: Optional[str] = None
    postgres_port: int = 5432
    postgres_database: Optional[str] = None
    postgres_username: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_sslmode: str = "require"

    log_level: str = "INFO"
