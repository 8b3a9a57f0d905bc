"""Contrat commun des backends qui conservent les artefacts de modèles."""

from __future__ import annotations

from abc import ABC, abstractmethod

MODEL_CONTENT_TYPE = "application/octet-stream"


class StorageBackend(ABC):
    """
    Un backend range des objets binaires sous (bucket, clé).

    Tous les backends lèvent FileNotFoundError pour un objet absent, afin que
    la chaîne de persistance traite disque et S3 de la même façon.
    """

    @abstractmethod
    def save(self, data: bytes, key: str, bucket: str = "", content_type: str = MODEL_CONTENT_TYPE) -> str:
        """Écrire l'objet et retourner sa localisation (chemin ou URI s3://)."""

    @abstractmethod
    def load(self, key: str, bucket: str = "") -> bytes: ...

    @abstractmethod
    def delete(self, key: str, bucket: str = "") -> bool:
        """Supprimer l'objet; False s'il n'existait pas."""

    @abstractmethod
    def exists(self, key: str, bucket: str = "") -> bool: ...

    @abstractmethod
    def location(self, key: str, bucket: str = "") -> str:
        """Localisation qu'aurait l'objet, sans rien écrire."""
