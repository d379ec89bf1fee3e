"""Configuration loader for the ebook pipeline.

Settings come from an optional YAML file, then environment variables
override the deployment-specific values (database, artifacts, model).
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


class QueueConfig(BaseModel):
    """Job queue naming, retry and retention policy."""

    queue_name: str = "ebook-generation"
    attempts: int = Field(default=3, ge=1)
    backoff_ms: int = Field(default=5000, ge=0)
    remove_on_complete: int = Field(default=10, ge=0)
    remove_on_fail: int = Field(default=5, ge=0)
    lock_duration_seconds: int = Field(default=1800, ge=1)


class WorkerConfig(BaseModel):
    concurrency: int = Field(default=2, ge=1)
    poll_interval_seconds: float = 1.0
    shutdown_grace_seconds: float = 60.0
    stalled_check_interval_seconds: float = 30.0


class GenerationConfig(BaseModel):
    """LLM generation configuration."""

    model: str = "claude-sonnet-4-6"
    max_tokens: int = 8000
    temperature: float = 0.7
    chapters_per_ebook: int = Field(default=10, ge=1)
    pages_per_chapter: int = Field(default=5, ge=1)
    description_attempts: int = Field(default=2, ge=1)
    chapter_calls_per_second: float = Field(default=1.0, gt=0)


class StorageConfig(BaseModel):
    """Database and artifact locations."""

    database_url: str = ""
    sqlite_path: str = "./data/ebooks.db"
    artifact_dir: str = "./generated"
    public_base_url: str = "/generated"


class PipelineConfig(BaseModel):
    """Root configuration."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Loaded from environment only
    anthropic_api_key: Optional[str] = None


def load_config(config_path: Optional[str | Path] = None) -> PipelineConfig:
    """Load configuration from a YAML file and environment variables.

    Args:
        config_path: YAML file (default: $EBOOK_CONFIG or config.yaml).
            A missing file is not an error; defaults apply.
    """
    config_file = Path(config_path or os.environ.get("EBOOK_CONFIG", DEFAULT_CONFIG_PATH))

    yaml_data: dict = {}
    if config_file.exists():
        with open(config_file, encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_file}")

    config = PipelineConfig(**yaml_data)
    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: PipelineConfig) -> None:
    env = os.environ

    if env.get("EBOOK_DATABASE_URL"):
        config.storage.database_url = env["EBOOK_DATABASE_URL"]
    if env.get("EBOOK_SQLITE_PATH"):
        config.storage.sqlite_path = env["EBOOK_SQLITE_PATH"]
    if env.get("EBOOK_ARTIFACT_DIR"):
        config.storage.artifact_dir = env["EBOOK_ARTIFACT_DIR"]
    if env.get("EBOOK_PUBLIC_BASE_URL"):
        config.storage.public_base_url = env["EBOOK_PUBLIC_BASE_URL"]
    if env.get("EBOOK_MODEL"):
        config.generation.model = env["EBOOK_MODEL"]

    concurrency = env.get("EBOOK_WORKER_CONCURRENCY")
    if concurrency:
        try:
            value = int(concurrency)
        except ValueError:
            raise ValueError(f"EBOOK_WORKER_CONCURRENCY must be an integer, got '{concurrency}'")
        if value < 1:
            raise ValueError(f"EBOOK_WORKER_CONCURRENCY must be at least 1, got {value}")
        config.worker.concurrency = value

    config.anthropic_api_key = env.get("ANTHROPIC_API_KEY") or config.anthropic_api_key
