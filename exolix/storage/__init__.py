"""Storage backends for model artifacts: local filesystem (dev) and S3/MinIO (prod)."""

from .base import StorageBackend
from .factory import get_storage

__all__ = ["StorageBackend", "get_storage"]
