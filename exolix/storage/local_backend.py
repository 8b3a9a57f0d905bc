"""Stockage des artefacts sur disque local: tier secondaire et copie de téléchargement."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import structlog

from .base import MODEL_CONTENT_TYPE, StorageBackend

logger = structlog.get_logger(__name__)


class LocalStorageBackend(StorageBackend):
    """
    Les objets vivent sous base_dir/{bucket}/{key}; un bucket vide écrit
    directement sous base_dir.

    L'écriture passe par un fichier temporaire renommé ensuite, de sorte qu'un
    checkpoint à moitié écrit n'est jamais visible sous sa clé finale.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _path(self, key: str, bucket: str) -> Path:
        root = (self.base_dir / bucket if bucket else self.base_dir).resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise ValueError(f"Object key escapes the storage root: {key}")
        return path

    def location(self, key: str, bucket: str = "") -> str:
        return str(self._path(key, bucket))

    def save(self, data: bytes, key: str, bucket: str = "", content_type: str = MODEL_CONTENT_TYPE) -> str:
        dest = self._path(key, bucket)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("local_storage.saved", path=str(dest), size=len(data))
        return str(dest)

    def load(self, key: str, bucket: str = "") -> bytes:
        return self._path(key, bucket).read_bytes()

    def delete(self, key: str, bucket: str = "") -> bool:
        path = self._path(key, bucket)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("local_storage.deleted", path=str(path))
        return True

    def exists(self, key: str, bucket: str = "") -> bool:
        return self._path(key, bucket).is_file()
