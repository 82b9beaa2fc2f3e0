from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis-backed components."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None


class TransportConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    max_attempts: int = 3


class StoreConfig(BaseModel):
    """Stage result and workflow run store settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    stage_result_ttl_seconds: int = 7200
    run_ttl_seconds: int = 14400


class LockConfig(BaseModel):
    """Purchase-order lock settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    poll_interval_seconds: float = 0.25
    max_poll_interval_seconds: float = 1.0
    max_age_seconds: float = 600.0


class RetryConfig(BaseModel):
    """Defaults for the sub-operation retry wrapper."""

    max_retries: int = 3
    initial_delay_ms: int = 200
    backoff_factor: float = 2.0
    max_delay_ms: int = 3000


class PipelineConfig(BaseModel):
    """Stage behaviour knobs."""

    image_mode: Literal["async", "sync"] = "async"
    image_search_timeout_seconds: float = 15.0
    max_images_per_draft: int = 3
    review_confidence_threshold: float = 0.5
    stuck_after_seconds: int = 1800
    fallback_markup: float = 1.5


class CollaboratorsConfig(BaseModel):
    """Endpoints and models for external services."""

    ai_model: str = "openai:gpt-4o-mini"
    image_search_url: Optional[str] = None
    store_sync_url: Optional[str] = None
    store_sync_token: Optional[str] = None
    http_timeout_seconds: float = 30.0


class GlobalMarkup(BaseModel):
    type: Literal["percentage", "fixed"] = "percentage"
    value: float = 1.0


class RoundingRules(BaseModel):
    enabled: bool = False
    rule: Literal[
        "psychological_99", "round_up", "round_down", "nearest_dollar"
    ] = "nearest_dollar"


class PricingConfig(BaseModel):
    """Per-merchant pricing refinement rules."""

    enabled: bool = False
    global_markup: Optional[GlobalMarkup] = None
    rounding_rules: RoundingRules = RoundingRules()


class PoflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    store: StoreConfig = StoreConfig()
    lock: LockConfig = LockConfig()
    retry: RetryConfig = RetryConfig()
    pipeline: PipelineConfig = PipelineConfig()
    collaborators: CollaboratorsConfig = CollaboratorsConfig()
    pricing: Dict[str, PricingConfig] = Field(default_factory=dict)
    database_url: Optional[str] = None
    execution_log_url: Optional[str] = None
    log_level: str = "INFO"

    def pricing_for(self, merchant_id: str) -> PricingConfig:
        """Return pricing rules for ``merchant_id`` or the ``default`` entry."""
        return self.pricing.get(merchant_id) or self.pricing.get(
            "default", PricingConfig()
        )


def load_config(path: Optional[str] = None) -> PoflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to POFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("POFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PoflowConfig(**data)
    else:
        config = PoflowConfig()

    env_db_url = os.getenv("POFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("POFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_redis_url = os.getenv("POFLOW_REDIS_URL")
    if env_redis_url:
        config.transport.redis.url = env_redis_url
    env_log_level = os.getenv("POFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
