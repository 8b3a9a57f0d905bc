"""Exception taxonomy for extraction, embedding jobs and training runs.

Unmapped labels are not errors: the extractor drops those rows and counts them.
A cancelled embedding job is not an error either: the pending await resolves
with a ``cancelled`` result.
"""

from __future__ import annotations


class ExolixError(Exception):
    """Base class for all package errors."""


class TrainingValidationError(ExolixError, ValueError):
    """Mapping, selection or chosen-mode input is missing or incomplete."""


class LabelMappingError(TrainingValidationError):
    """Target label indices have gaps or duplicates."""


class ExtractionError(ExolixError):
    """Resolved matrix does not match the declared input features."""


class EmbeddingError(ExolixError):
    """Base class for remote embedding job failures."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class EmbeddingNetworkError(EmbeddingError):
    """Submit or poll failed at the transport or HTTP status level."""

    def __init__(self, message: str, *, job_id: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, job_id=job_id)
        self.status_code = status_code


class EmbeddingProtocolError(EmbeddingError):
    """Remote answered with a payload the job protocol does not allow."""


class FinalizationLostError(EmbeddingProtocolError):
    """Job reported done but never delivered its embedding within the grace window."""


class JobNotFoundError(EmbeddingProtocolError):
    """Job id is unknown to the remote and no progress was ever observed near completion."""


class JobResultLostError(EmbeddingProtocolError):
    """Job disappeared after reaching high progress; it probably finished but the result is gone."""

    def __init__(self, message: str, *, job_id: str | None = None, last_progress: float = 0.0) -> None:
        super().__init__(message, job_id=job_id)
        self.last_progress = last_progress


class EmbeddingJobFailedError(EmbeddingError):
    """Remote reported the job as failed."""


class EmbeddingTimeoutError(EmbeddingError, TimeoutError):
    """Hard wall-clock limit exceeded while waiting on a job."""


class ModelPersistenceError(ExolixError):
    """One storage tier refused the model artifact."""

    def __init__(self, tier: str, message: str) -> None:
        super().__init__(f"{tier}: {message}")
        self.tier = tier
