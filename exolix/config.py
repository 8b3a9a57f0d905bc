"""Application settings and environment configuration."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

STORAGE_TIER_NAMES = ("primary", "secondary", "download")


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    env: str = "development"
    app_name: str = "ExoLiX"

    database_url: str = "sqlite:///./data/exolix.db"

    # Remote encoder (POST /encode, GET /encode/{job_id})
    encoder_url: str = Field(default="https://api.exolix.club/encode")
    encoder_poll_interval_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    encoder_finalize_grace_polls: int = Field(default=8, ge=0, le=120)
    encoder_lost_result_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    encoder_hard_timeout_seconds: float = Field(default=600.0, gt=0.0, le=86400.0)
    encoder_request_timeout_ms: int = Field(default=30000, ge=100, le=600000)
    encoder_expected_seconds: float = Field(default=300.0, gt=0.0, le=86400.0)

    model_dir: str = "./data/models"
    export_dir: str = "./data/exports"
    model_storage_tiers: str = "primary,secondary,download"

    # S3 / MinIO storage for the primary model tier
    use_s3_storage: bool = False
    s3_endpoint_url: str = "http://minio:9000"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_bucket_models: str = "exolix-models"
    s3_region: str = "us-east-1"

    default_validation_split: float = Field(default=0.2, ge=0.0, le=0.9)
    split_seed: int | None = None

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    @model_validator(mode="after")
    def validate_storage_tiers(self) -> "Settings":
        """Reject unknown tier names before anything tries to persist a model."""
        tiers = self.storage_tier_list
        if not tiers:
            raise ValueError("MODEL_STORAGE_TIERS must name at least one storage tier.")
        unknown = [tier for tier in tiers if tier not in STORAGE_TIER_NAMES]
        if unknown:
            raise ValueError(
                f"MODEL_STORAGE_TIERS contains unknown tier(s): {', '.join(unknown)}. "
                f"Allowed: {', '.join(STORAGE_TIER_NAMES)}."
            )
        return self

    @property
    def storage_tier_list(self) -> list[str]:
        """Parse comma-separated storage tiers, keeping their order."""
        return [tier.strip().lower() for tier in self.model_storage_tiers.split(",") if tier.strip()]

    @property
    def encoder_request_timeout_seconds(self) -> float:
        return self.encoder_request_timeout_ms / 1000.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
