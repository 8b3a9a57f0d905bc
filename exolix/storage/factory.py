"""Choix du backend du tier primaire."""

from __future__ import annotations

from functools import lru_cache

from .base import StorageBackend


@lru_cache(maxsize=1)
def get_storage() -> StorageBackend:
    """
    S3 quand USE_S3_STORAGE est actif, sinon MODEL_DIR sur disque.

    Mis en cache: un seul client boto3 par processus. Les tests vident le
    cache avec ``get_storage.cache_clear()``.
    """
    from exolix.config import get_settings

    settings = get_settings()
    if not settings.use_s3_storage:
        from .local_backend import LocalStorageBackend

        return LocalStorageBackend(settings.model_dir)

    from .s3_backend import S3StorageBackend

    return S3StorageBackend(
        endpoint_url=settings.s3_endpoint_url,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        region=settings.s3_region,
    )
