"""Ordered fallback chain of storage tiers for trained model artifacts."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import structlog

from exolix.config import Settings, get_settings
from exolix.errors import ModelPersistenceError
from exolix.storage import StorageBackend, get_storage
from exolix.storage.local_backend import LocalStorageBackend

logger = structlog.get_logger(__name__)

MODEL_KEY_PREFIX = "exolix-model"


@dataclass(frozen=True)
class StorageTier:
    name: str
    backend: StorageBackend
    bucket: str = ""


@dataclass
class TierAttempt:
    tier: str
    succeeded: bool
    location: str | None = None
    error: ModelPersistenceError | None = None


@dataclass
class PersistenceOutcome:
    """Which tier kept the artifact, plus every attempt made on the way."""

    tier: str | None
    attempts: list[TierAttempt] = field(default_factory=list)
    location: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.tier is not None

    @property
    def errors(self) -> list[ModelPersistenceError]:
        return [attempt.error for attempt in self.attempts if attempt.error is not None]


def default_object_key(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return f"{MODEL_KEY_PREFIX}/{MODEL_KEY_PREFIX}-{stamp}.pt"


class ModelPersistenceChain:
    """Try each tier in order until one stores the payload.

    Tier failures never propagate: they are logged and recorded on the
    outcome, which reports failure only once every tier has refused.
    """

    def __init__(self, tiers: Sequence[StorageTier]) -> None:
        if not tiers:
            raise ValueError("A persistence chain needs at least one storage tier.")
        self.tiers = list(tiers)

    @property
    def tier_names(self) -> list[str]:
        return [tier.name for tier in self.tiers]

    def save(self, payload: bytes, object_key: str) -> PersistenceOutcome:
        attempts: list[TierAttempt] = []
        for tier in self.tiers:
            try:
                location = tier.backend.save(payload, object_key, tier.bucket)
            except Exception as exc:  # noqa: BLE001
                error = ModelPersistenceError(tier.name, str(exc) or type(exc).__name__)
                attempts.append(TierAttempt(tier=tier.name, succeeded=False, error=error))
                logger.warning(
                    "model_tier_save_failed",
                    tier=tier.name,
                    object_key=object_key,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            attempts.append(TierAttempt(tier=tier.name, succeeded=True, location=location))
            logger.info(
                "model_saved",
                tier=tier.name,
                location=location,
                size=len(payload),
                attempts=len(attempts),
            )
            return PersistenceOutcome(tier=tier.name, attempts=attempts, location=location)

        logger.error("model_save_failed_all_tiers", tiers=self.tier_names, object_key=object_key)
        return PersistenceOutcome(tier=None, attempts=attempts)

    async def save_async(self, payload: bytes, object_key: str) -> PersistenceOutcome:
        return await asyncio.to_thread(self.save, payload, object_key)


def build_default_chain(settings: Settings | None = None) -> ModelPersistenceChain:
    """Build tiers in the order configured by MODEL_STORAGE_TIERS.

    primary: S3 bucket when USE_S3_STORAGE is set, otherwise MODEL_DIR.
    secondary: MODEL_DIR/backup on local disk.
    download: EXPORT_DIR, the copy handed to the user.
    """
    settings = settings or get_settings()
    tiers: list[StorageTier] = []
    for name in settings.storage_tier_list:
        if name == "primary":
            bucket = settings.s3_bucket_models if settings.use_s3_storage else ""
            tiers.append(StorageTier(name=name, backend=get_storage(), bucket=bucket))
        elif name == "secondary":
            tiers.append(StorageTier(name=name, backend=LocalStorageBackend(Path(settings.model_dir)), bucket="backup"))
        elif name == "download":
            tiers.append(StorageTier(name=name, backend=LocalStorageBackend(Path(settings.export_dir))))
    return ModelPersistenceChain(tiers)
