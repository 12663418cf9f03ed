"""Pydantic-based settings for the knowledge pipeline."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the knowledge pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGE_PIPELINE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # Data directories
    data_dir: str = Field(default="./data", description="Base data directory")

    # Database settings
    database_url: str = Field(default="sqlite+aiosqlite:///data/knowledge.db", description="Database URL")
    alembic_config: str = Field(default="alembic.ini", description="Alembic configuration file")

    # OpenAI settings
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="Override for the OpenAI API base URL")
    embedding_model: str = Field(default="text-embedding-3-small", description="Embedding model")
    summarizer_model: str = Field(default="gpt-4.1-mini", description="Model used for summaries and snippets")

    # Source settings
    github_token: Optional[str] = Field(default=None, description="GitHub API token")
    github_base_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    forum_base_url: str = Field(default="https://community.openai.com", description="Discourse forum base URL")
    http_timeout: float = Field(default=30.0, description="Timeout in seconds for source API requests")

    # ChromaDB settings
    chroma_host: str = Field(default="localhost", description="ChromaDB host")
    chroma_port: int = Field(default=8003, description="ChromaDB port")
    chroma_persist_dir: str = Field(default="./data/chroma", description="Local ChromaDB persistence directory")
    chroma_collection: str = Field(default="sdk_knowledge", description="Collection holding embedded documents")

    # Job queue settings
    stale_job_timeout_seconds: int = Field(default=300, description="Seconds before a running job is reset")
    job_max_retries: int = Field(default=3, description="Attempts before a job fails permanently")
    work_item_insert_chunk_size: int = Field(default=50, description="Work items per INSERT statement")
    job_stagger_min_ms: int = Field(default=500, description="Minimum stagger for noisy collection jobs")
    job_stagger_max_ms: int = Field(default=1500, description="Maximum stagger for noisy collection jobs")
    job_notify_url: Optional[str] = Field(default=None, description="Webhook notified with new job ids")

    # Worker settings
    worker_poll_interval: int = Field(default=5, description="Seconds between job queue polls")
    worker_max_jobs: int = Field(default=5, description="Jobs claimed per poll")

    # Token and storage budgets
    max_tokens_per_request: int = Field(default=8192, description="Embedding provider token limit")
    token_safety_margin: int = Field(default=1000, description="Tokens held back from the provider limit")
    max_content_bytes: int = Field(default=1_500_000, description="Largest document content stored, in bytes")

    @property
    def safe_token_limit(self) -> int:
        """Token budget after the safety margin."""
        return self.max_tokens_per_request - self.token_safety_margin

    @property
    def log_format(self) -> str:
        """Log message format."""
        return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Global settings instance
settings = Settings()
