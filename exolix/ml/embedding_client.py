"""Client HTTP async pour l'encodeur distant (jobs d'embedding)."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import numpy as np
import structlog

from exolix.config import Settings, get_settings
from exolix.errors import (
    EmbeddingError,
    EmbeddingJobFailedError,
    EmbeddingNetworkError,
    EmbeddingProtocolError,
    EmbeddingTimeoutError,
    FinalizationLostError,
    JobNotFoundError,
    JobResultLostError,
)

logger = structlog.get_logger(__name__)


class EmbeddingStatus(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {EmbeddingStatus.DONE, EmbeddingStatus.ERROR, EmbeddingStatus.TIMED_OUT, EmbeddingStatus.CANCELLED}
)

# Terminal states share the top rank: any of them may close a live job.
_STATUS_RANK = {
    EmbeddingStatus.SUBMITTED: 0,
    EmbeddingStatus.QUEUED: 1,
    EmbeddingStatus.RUNNING: 2,
    EmbeddingStatus.FINALIZING: 3,
    EmbeddingStatus.DONE: 4,
    EmbeddingStatus.ERROR: 4,
    EmbeddingStatus.TIMED_OUT: 4,
    EmbeddingStatus.CANCELLED: 4,
}

_REMOTE_STATUS_ALIASES = {
    "submitted": EmbeddingStatus.QUEUED,
    "queued": EmbeddingStatus.QUEUED,
    "pending": EmbeddingStatus.QUEUED,
    "running": EmbeddingStatus.RUNNING,
    "processing": EmbeddingStatus.RUNNING,
    "in_progress": EmbeddingStatus.RUNNING,
    "done": EmbeddingStatus.DONE,
    "completed": EmbeddingStatus.DONE,
    "finished": EmbeddingStatus.DONE,
    "error": EmbeddingStatus.ERROR,
    "failed": EmbeddingStatus.ERROR,
}


@dataclass
class EmbeddingJob:
    """State of one submission; only the owning client mutates it."""

    started_at: float
    job_id: str | None = None
    status: EmbeddingStatus = EmbeddingStatus.SUBMITTED
    progress: float = 0.0
    max_progress: float = 0.0
    finalize_polls: int = 0
    poll_count: int = 0
    aborted: bool = False
    poll_timer: asyncio.Task | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance(self, status: EmbeddingStatus) -> bool:
        """Move forward to ``status``; backward or repeated moves are ignored."""
        if self.is_terminal or _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            return False
        self.status = status
        return True

    def record_progress(self, progress: float) -> None:
        self.progress = progress
        self.max_progress = max(self.max_progress, progress)


@dataclass(frozen=True)
class JobProgress:
    job_id: str | None
    status: EmbeddingStatus
    progress: float
    eta_seconds: float | None
    elapsed_seconds: float


@dataclass
class EmbeddingResult:
    status: EmbeddingStatus
    embedding: np.ndarray | None
    job_id: str | None
    elapsed_seconds: float

    @property
    def cancelled(self) -> bool:
        return self.status is EmbeddingStatus.CANCELLED

    @property
    def row_count(self) -> int:
        return 0 if self.embedding is None else int(self.embedding.shape[0])


ProgressListener = Callable[[JobProgress], None]


def estimate_eta(elapsed: float, progress: float) -> float | None:
    """Remaining seconds extrapolated from progress; defined only for 0 < progress < 1."""
    if not 0.0 < progress < 1.0:
        return None
    return elapsed / progress - elapsed


class EmbeddingJobClient:
    """Soumet un prompt + matrice à l'encodeur et attend l'embedding.

    One job is live at a time: a new ``encode`` call cancels the previous job
    before submitting. Polls for a job run strictly one after another from a
    single coroutine, and the abort flag is checked after every await.
    """

    def __init__(
        self,
        base_url: str = "https://api.exolix.club/encode",
        *,
        poll_interval: float = 1.0,
        finalize_grace_polls: int = 8,
        lost_result_threshold: float = 0.95,
        hard_timeout: float = 600.0,
        timeout_seconds: float = 30.0,
        expected_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize encoder client.

        Args:
            base_url: URL de l'endpoint d'encodage (POST), les jobs sont à ``{base_url}/{job_id}``
            poll_interval: Délai entre deux polls en secondes
            finalize_grace_polls: Polls supplémentaires tolérés après ``done`` sans embedding
            lost_result_threshold: Progression au-delà de laquelle un 404 signifie "résultat perdu"
            hard_timeout: Limite absolue par job en secondes
            timeout_seconds: Timeout HTTP en secondes
            expected_seconds: Durée attendue, utilisée pour l'ETA avant toute progression
            http_client: Client httpx injecté (tests)
            clock: Horloge monotone injectée (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.poll_interval = max(0.0, float(poll_interval))
        self.finalize_grace_polls = max(0, int(finalize_grace_polls))
        self.lost_result_threshold = float(lost_result_threshold)
        self.hard_timeout = float(hard_timeout)
        self.expected_seconds = float(expected_seconds)
        self.clock = clock
        self._owns_session = http_client is None
        self.session = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._active: EmbeddingJob | None = None
        self._listeners: list[ProgressListener] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "EmbeddingJobClient":
        settings = settings or get_settings()
        return cls(
            settings.encoder_url,
            poll_interval=settings.encoder_poll_interval_seconds,
            finalize_grace_polls=settings.encoder_finalize_grace_polls,
            lost_result_threshold=settings.encoder_lost_result_threshold,
            hard_timeout=settings.encoder_hard_timeout_seconds,
            timeout_seconds=settings.encoder_request_timeout_seconds,
            expected_seconds=settings.encoder_expected_seconds,
            http_client=http_client,
        )

    @property
    def active_job(self) -> EmbeddingJob | None:
        return self._active

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a progress listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def encode(self, prompt: str, matrix: np.ndarray | list[list[float]]) -> EmbeddingResult:
        """
        Envoie le prompt et la matrice à l'encodeur et attend l'embedding.

        Args:
            prompt: Template de prompt (placeholders ``{{i}}``)
            matrix: Matrice numérique [n_rows, n_features]

        Returns:
            EmbeddingResult ``done`` avec la matrice d'embedding, ou ``cancelled``
            si le job a été annulé ou remplacé par un nouveau job

        Raises:
            EmbeddingNetworkError: Encodeur injoignable ou statut HTTP en erreur
            EmbeddingProtocolError: Réponse hors protocole (job perdu, finalisation perdue)
            EmbeddingJobFailedError: L'encodeur a signalé un échec
            EmbeddingTimeoutError: Limite absolue dépassée
        """
        data = np.asarray(matrix, dtype=np.float32)
        self.cancel()

        job = EmbeddingJob(started_at=self.clock())
        self._active = job
        try:
            return await self._run(job, prompt, data)
        except asyncio.CancelledError:
            if job.aborted:
                return self._cancelled(job)
            # Caller's task was cancelled: close the job, then let cancellation propagate.
            job.aborted = True
            self._cancelled(job)
            raise
        except EmbeddingError as exc:
            if job.aborted:
                return self._cancelled(job)
            if not job.is_terminal:
                job.advance(EmbeddingStatus.ERROR)
            exc.job_id = exc.job_id or job.job_id
            logger.error(
                "embedding_job_failed",
                job_id=job.job_id,
                status=job.status.value,
                error_type=type(exc).__name__,
                error=str(exc),
                elapsed_seconds=self._elapsed(job),
            )
            self._notify(job)
            raise
        finally:
            if self._active is job and job.is_terminal:
                self._active = None

    def cancel(self) -> bool:
        """
        Annule le job actif, s'il existe.

        Returns:
            True si un job en cours a été annulé
        """
        job = self._active
        if job is None or job.is_terminal:
            return False
        job.aborted = True
        if job.poll_timer is not None and not job.poll_timer.done():
            job.poll_timer.cancel()
        logger.info("embedding_job_cancel_requested", job_id=job.job_id, status=job.status.value)
        return True

    async def aclose(self) -> None:
        """Ferme la session HTTP."""
        self.cancel()
        if self._owns_session:
            await self.session.aclose()

    async def _run(self, job: EmbeddingJob, prompt: str, data: np.ndarray) -> EmbeddingResult:
        body = await self._submit(job, prompt, data)
        if job.aborted:
            return self._cancelled(job)

        expected_rows = int(data.shape[0]) if data.ndim else 0
        if body.get("embedding") is not None:
            return self._complete(job, body["embedding"], expected_rows)

        job_id = body.get("job_id") or body.get("jobId")
        if not job_id:
            raise EmbeddingProtocolError("Encoder response carries neither an embedding nor a job id.")

        job.job_id = str(job_id)
        job.advance(EmbeddingStatus.QUEUED)
        logger.info("embedding_job_queued", job_id=job.job_id)
        self._notify(job)
        return await self._poll_until_settled(job, expected_rows)

    async def _submit(self, job: EmbeddingJob, prompt: str, data: np.ndarray) -> dict[str, Any]:
        payload = {"prompt": prompt, "data": data.tolist()}
        try:
            response = await self.session.post(
                self.base_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("encoder_submit_transport_error", error=str(exc))
            raise EmbeddingNetworkError(f"Encoder submit failed: {exc}") from exc

        if response.status_code >= 400:
            raise EmbeddingNetworkError(
                f"Encoder submit returned HTTP {response.status_code}.",
                status_code=response.status_code,
            )

        logger.debug(
            "encoder_submit_accepted",
            status_code=response.status_code,
            rows=int(data.shape[0]) if data.ndim else 0,
        )
        return self._json_body(response, job)

    async def _poll_until_settled(self, job: EmbeddingJob, expected_rows: int) -> EmbeddingResult:
        while True:
            await self._wait_next_poll(job)
            if job.aborted:
                return self._cancelled(job)
            self._check_deadline(job)

            response = await self._poll_once(job)
            if job.aborted:
                return self._cancelled(job)

            if response.status_code == 404:
                body = self._json_body(response, job, strict=False)
                if body.get("embedding") is not None:
                    logger.info("embedding_recovered_from_not_found", job_id=job.job_id)
                    return self._complete(job, body["embedding"], expected_rows)
                if job.max_progress >= self.lost_result_threshold:
                    raise JobResultLostError(
                        f"Job {job.job_id} vanished after reaching {job.max_progress:.0%}; "
                        "it probably finished but its result is gone.",
                        job_id=job.job_id,
                        last_progress=job.max_progress,
                    )
                raise JobNotFoundError(f"Job {job.job_id} is unknown to the encoder.", job_id=job.job_id)

            if response.status_code >= 400:
                raise EmbeddingNetworkError(
                    f"Encoder poll returned HTTP {response.status_code}.",
                    job_id=job.job_id,
                    status_code=response.status_code,
                )

            body = self._json_body(response, job)
            remote_status = self._parse_status(job, body)
            job.record_progress(self._parse_progress(job, body))

            if remote_status is EmbeddingStatus.ERROR:
                job.advance(EmbeddingStatus.ERROR)
                raise EmbeddingJobFailedError(
                    str(body.get("error") or f"Encoder reported job {job.job_id} as failed."),
                    job_id=job.job_id,
                )

            if body.get("embedding") is not None:
                return self._complete(job, body["embedding"], expected_rows)

            if job.status is EmbeddingStatus.FINALIZING:
                job.finalize_polls += 1
            elif remote_status is EmbeddingStatus.DONE:
                job.advance(EmbeddingStatus.FINALIZING)
                logger.info("embedding_job_finalizing", job_id=job.job_id, grace_polls=self.finalize_grace_polls)
            elif not job.advance(remote_status) and _STATUS_RANK[remote_status] < _STATUS_RANK[job.status]:
                logger.debug(
                    "embedding_status_regression_ignored",
                    job_id=job.job_id,
                    current=job.status.value,
                    reported=remote_status.value,
                )

            if job.status is EmbeddingStatus.FINALIZING and job.finalize_polls >= self.finalize_grace_polls:
                raise FinalizationLostError(
                    f"Job {job.job_id} reported done but no embedding arrived "
                    f"after {self.finalize_grace_polls} extra polls.",
                    job_id=job.job_id,
                )

            self._notify(job)

    async def _wait_next_poll(self, job: EmbeddingJob) -> None:
        remaining = self.hard_timeout - self._elapsed(job)
        delay = max(0.0, min(self.poll_interval, remaining))
        job.poll_timer = asyncio.create_task(asyncio.sleep(delay))
        try:
            await job.poll_timer
        finally:
            job.poll_timer = None

    async def _poll_once(self, job: EmbeddingJob) -> httpx.Response:
        job.poll_count += 1
        try:
            return await self.session.get(f"{self.base_url}/{job.job_id}")
        except httpx.HTTPError as exc:
            logger.warning("encoder_poll_transport_error", job_id=job.job_id, error=str(exc))
            raise EmbeddingNetworkError(f"Encoder poll failed: {exc}", job_id=job.job_id) from exc

    def _check_deadline(self, job: EmbeddingJob) -> None:
        elapsed = self._elapsed(job)
        if elapsed >= self.hard_timeout:
            job.advance(EmbeddingStatus.TIMED_OUT)
            raise EmbeddingTimeoutError(
                f"Job {job.job_id} exceeded the {self.hard_timeout:.0f}s limit "
                f"(last progress {job.progress:.0%}).",
                job_id=job.job_id,
            )

    @staticmethod
    def _json_body(response: httpx.Response, job: EmbeddingJob, *, strict: bool = True) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            if not strict:
                return {}
            raise EmbeddingProtocolError("Encoder returned a non-JSON body.", job_id=job.job_id) from exc
        if not isinstance(body, dict):
            if not strict:
                return {}
            raise EmbeddingProtocolError("Encoder returned a non-object JSON body.", job_id=job.job_id)
        return body

    @staticmethod
    def _parse_status(job: EmbeddingJob, body: dict[str, Any]) -> EmbeddingStatus:
        raw_status = body.get("status")
        if not isinstance(raw_status, str):
            raise EmbeddingProtocolError("Poll payload has no status.", job_id=job.job_id)
        status = _REMOTE_STATUS_ALIASES.get(raw_status.strip().lower())
        if status is None:
            raise EmbeddingProtocolError(f"Unknown job status '{raw_status}'.", job_id=job.job_id)
        return status

    @staticmethod
    def _parse_progress(job: EmbeddingJob, body: dict[str, Any]) -> float:
        raw_progress = body.get("progress")
        if raw_progress is None:
            return job.progress
        try:
            progress = float(raw_progress)
        except (TypeError, ValueError) as exc:
            raise EmbeddingProtocolError(
                f"Poll payload has a non-numeric progress '{raw_progress}'.", job_id=job.job_id
            ) from exc
        if not math.isfinite(progress):
            raise EmbeddingProtocolError("Poll payload has a non-finite progress.", job_id=job.job_id)
        return min(1.0, max(0.0, progress))

    def _complete(self, job: EmbeddingJob, raw_embedding: Any, expected_rows: int) -> EmbeddingResult:
        try:
            embedding = np.asarray(raw_embedding, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise EmbeddingProtocolError("Embedding payload is not numeric.", job_id=job.job_id) from exc
        if embedding.ndim == 1 and embedding.size == 0:
            embedding = embedding.reshape(0, 0)
        if embedding.ndim != 2:
            raise EmbeddingProtocolError(
                f"Embedding payload must be a 2-D matrix, got shape {embedding.shape}.",
                job_id=job.job_id,
            )

        if embedding.shape[0] != expected_rows:
            logger.warning(
                "embedding_row_count_mismatch",
                job_id=job.job_id,
                expected_rows=expected_rows,
                received_rows=int(embedding.shape[0]),
            )

        job.record_progress(1.0)
        job.advance(EmbeddingStatus.DONE)
        elapsed = self._elapsed(job)
        logger.info(
            "embedding_job_done",
            job_id=job.job_id,
            rows=int(embedding.shape[0]),
            dimension=int(embedding.shape[1]),
            polls=job.poll_count,
            elapsed_seconds=round(elapsed, 3),
        )
        self._notify(job)
        return EmbeddingResult(
            status=EmbeddingStatus.DONE,
            embedding=embedding,
            job_id=job.job_id,
            elapsed_seconds=elapsed,
        )

    def _cancelled(self, job: EmbeddingJob) -> EmbeddingResult:
        if job.advance(EmbeddingStatus.CANCELLED):
            logger.info("embedding_job_cancelled", job_id=job.job_id, polls=job.poll_count)
            self._notify(job)
        return EmbeddingResult(
            status=EmbeddingStatus.CANCELLED,
            embedding=None,
            job_id=job.job_id,
            elapsed_seconds=self._elapsed(job),
        )

    def _elapsed(self, job: EmbeddingJob) -> float:
        return max(0.0, self.clock() - job.started_at)

    def _notify(self, job: EmbeddingJob) -> None:
        if not self._listeners:
            return
        elapsed = self._elapsed(job)
        eta = estimate_eta(elapsed, job.progress)
        if eta is None and job.progress <= 0.0 and not job.is_terminal:
            eta = max(0.0, self.expected_seconds - elapsed)
        event = JobProgress(
            job_id=job.job_id,
            status=job.status,
            progress=job.progress,
            eta_seconds=eta,
            elapsed_seconds=elapsed,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("embedding_listener_failed", job_id=job.job_id, error=str(exc))
