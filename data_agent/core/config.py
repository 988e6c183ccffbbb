"""
Application configuration management using Pydantic Settings.

This module provides centralized configuration management with:
- Environment variable support
- Type validation
- Default values
- .env file support

Besides connection settings for the collaborators (chat model, retrieval
API, relational datasource, langgraph checkpoint file), it holds the policy
constants that bound every loop of the workflow: retrieval sizes, repair
rounds, retry ceilings and report size limits.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be configured via environment variables or .env file.
    Settings are validated on instantiation using Pydantic.

    Example:
        ```python
        from .core.config import settings
        print(settings.sql_max_optimization_rounds)
        ```

    Environment Variables:
        CHECKPOINT_DB_PATH: SQLite file of the langgraph checkpointer
        OPENAI_API_KEY: OpenAI API key (needed to build the chat model)
        OPENAI_MODEL: Chat model name (default: gpt-4o-mini)
        RETRIEVAL_API_URL: Base URL of the vector retrieval API
        DATASOURCE_URL: SQLAlchemy URL of the active datasource
        LOG_LEVEL: Logging level (default: INFO)
        LOG_FORMAT: "text" or "json" (default: text)
    """

    # Checkpoint Store
    checkpoint_db_path: str = Field(
        default="./data_agent_checkpoints.sqlite",
        alias="CHECKPOINT_DB_PATH",
        description="SQLite file of the langgraph checkpointer holding suspended sessions; "
                    "\":memory:\" keeps them in the process"
    )

    # LLM Configuration
    openai_api_key: Optional[str] = Field(
        default=None,
        alias="OPENAI_API_KEY",
        description="OpenAI API key for the chat model."
    )

    openai_base_url: Optional[str] = Field(
        default=None,
        alias="OPENAI_BASE_URL",
        description="Optional OpenAI-compatible endpoint."
    )

    openai_model: str = Field(
        default="gpt-4o-mini",
        alias="OPENAI_MODEL",
        description="Chat model used by every LLM-backed node."
    )

    llm_timeout_seconds: float = Field(
        default=120.0,
        alias="LLM_TIMEOUT_SECONDS",
        description="Timeout for a single chat completion."
    )

    # Vector Retrieval
    retrieval_api_url: str = Field(
        default="http://localhost:8000/api/v1/retrieval",
        alias="RETRIEVAL_API_URL",
        description="Base URL of the vector retrieval API."
    )

    retrieval_timeout_seconds: float = Field(
        default=30.0,
        alias="RETRIEVAL_TIMEOUT_SECONDS",
        description="Timeout for a single retrieval call."
    )

    # Active Datasource
    datasource_url: Optional[str] = Field(
        default=None,
        alias="DATASOURCE_URL",
        description="SQLAlchemy URL of the datasource queried by generated SQL. "
                    "When unset no scope has an active datasource."
    )

    datasource_dialect: str = Field(
        default="mysql",
        alias="DATASOURCE_DIALECT",
        description="SQL dialect of the datasource: mysql, postgres, sqlite, ..."
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    log_format: str = Field(
        default="text",
        alias="LOG_FORMAT",
        description="Log output format: text or json"
    )

    environment: str = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Application environment: development, staging, production"
    )

    # Schema Recall
    table_top_k: int = Field(default=20, alias="TABLE_TOP_K")
    max_columns_per_table: int = Field(default=10, alias="MAX_COLUMNS_PER_TABLE")
    max_columns: int = Field(
        default=100,
        alias="MAX_COLUMNS",
        description="Global cap on columns kept by the round-robin selection."
    )
    foreign_key_max_passes: int = Field(default=2, alias="FOREIGN_KEY_MAX_PASSES")
    evidence_top_k: int = Field(default=5, alias="EVIDENCE_TOP_K")
    query_expansion_variants: int = Field(default=3, alias="QUERY_EXPANSION_VARIANTS")

    # Retry & Repair Ceilings
    sql_max_optimization_rounds: int = Field(
        default=3,
        alias="SQL_MAX_OPTIMIZATION_ROUNDS",
        description="Maximum LLM calls made by one SQL repair loop."
    )
    sql_quality_threshold: float = Field(default=0.95, alias="SQL_QUALITY_THRESHOLD")
    sql_security_warn_threshold: float = Field(default=0.5, alias="SQL_SECURITY_WARN_THRESHOLD")
    sql_generate_max_count: int = Field(default=10, alias="SQL_GENERATE_MAX_COUNT")
    table_relation_max_retries: int = Field(default=3, alias="TABLE_RELATION_MAX_RETRIES")
    plan_max_repair_count: int = Field(default=3, alias="PLAN_MAX_REPAIR_COUNT")
    python_max_tries: int = Field(default=3, alias="PYTHON_MAX_TRIES")
    python_timeout_seconds: float = Field(default=60.0, alias="PYTHON_TIMEOUT_SECONDS")
    graph_max_iterations: int = Field(default=100, alias="GRAPH_MAX_ITERATIONS")

    # Reporting
    report_max_result_chars: int = Field(default=5000, alias="REPORT_MAX_RESULT_CHARS")
    report_max_total_chars: int = Field(default=20000, alias="REPORT_MAX_TOTAL_CHARS")

    # Concurrency
    worker_pool_size: int = Field(
        default=8,
        alias="WORKER_POOL_SIZE",
        description="Size of the process-wide pool used for parallel sub-work."
    )

    class Config:
        """
        Pydantic configuration for Settings.

        env_file: Loads .env file from project root if present
        case_sensitive: Environment variable names are case-insensitive
        """
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True


# Global settings instance
# Import this in other modules: from .core.config import settings
settings = Settings()
