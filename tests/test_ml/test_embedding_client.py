"""Tests for the embedding job client against a mocked encoder."""

from __future__ import annotations

import asyncio

import httpx
import numpy as np
import pytest
import respx
from httpx import Response
from structlog.testing import capture_logs

from exolix.errors import (
    EmbeddingJobFailedError,
    EmbeddingNetworkError,
    EmbeddingProtocolError,
    EmbeddingTimeoutError,
    FinalizationLostError,
    JobNotFoundError,
    JobResultLostError,
)
from exolix.ml.embedding_client import EmbeddingJobClient, EmbeddingStatus, estimate_eta

BASE_URL = "http://encoder.test/encode"
MATRIX = [[1.0, 2.0], [3.0, 4.0]]
EMBEDDING = [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _client(**overrides) -> EmbeddingJobClient:
    options = {"poll_interval": 0.0, "finalize_grace_polls": 3, "hard_timeout": 60.0}
    options.update(overrides)
    return EmbeddingJobClient(BASE_URL, **options)


async def _wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


@pytest.mark.asyncio
async def test_progress_sequence_resolves_with_final_embedding():
    """Job polled 0.0 -> 0.3 -> 1.0 resolves once the embedding is attached."""
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-1"}))
        poll = respx.get(f"{BASE_URL}/job-1").mock(
            side_effect=[
                Response(200, json={"status": "queued", "progress": 0.0}),
                Response(200, json={"status": "running", "progress": 0.3}),
                Response(200, json={"status": "done", "progress": 1.0, "embedding": EMBEDDING}),
            ]
        )

        result = await client.encode("period {{0}}", MATRIX)

    assert result.status is EmbeddingStatus.DONE
    assert result.job_id == "job-1"
    np.testing.assert_allclose(result.embedding, EMBEDDING, rtol=1e-6)
    assert poll.call_count == 3
    assert client.active_job is None

    await client.aclose()


@pytest.mark.asyncio
async def test_immediate_embedding_skips_polling():
    client = _client()

    with respx.mock(assert_all_called=False) as router:
        submit = router.post(BASE_URL).mock(return_value=Response(200, json={"embedding": EMBEDDING}))
        poll = router.get(url__startswith=f"{BASE_URL}/")

        result = await client.encode("p", MATRIX)

    assert result.status is EmbeddingStatus.DONE
    assert result.job_id is None
    assert result.row_count == 2
    assert submit.call_count == 1
    assert poll.call_count == 0
    payload = submit.calls.last.request.content
    assert b'"prompt"' in payload and b'"data"' in payload

    await client.aclose()


@pytest.mark.asyncio
async def test_done_without_payload_beyond_grace_window_fails():
    """Job stuck at done without embedding is rejected after the grace polls."""
    client = _client(finalize_grace_polls=3)

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-2"}))
        poll = respx.get(f"{BASE_URL}/job-2").mock(
            return_value=Response(200, json={"status": "done", "progress": 1.0})
        )

        with pytest.raises(FinalizationLostError) as excinfo:
            await client.encode("p", MATRIX)

    assert isinstance(excinfo.value, EmbeddingProtocolError)
    assert excinfo.value.job_id == "job-2"
    assert poll.call_count == 1 + 3

    await client.aclose()


@pytest.mark.asyncio
async def test_delayed_payload_within_grace_window_succeeds():
    client = _client(finalize_grace_polls=3)

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-3"}))
        respx.get(f"{BASE_URL}/job-3").mock(
            side_effect=[
                Response(200, json={"status": "done", "progress": 1.0}),
                Response(200, json={"status": "done", "progress": 1.0}),
                Response(200, json={"status": "done", "progress": 1.0, "embedding": EMBEDDING}),
            ]
        )

        result = await client.encode("p", MATRIX)

    assert result.status is EmbeddingStatus.DONE

    await client.aclose()


@pytest.mark.asyncio
async def test_not_found_with_embedding_counts_as_done():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-4"}))
        respx.get(f"{BASE_URL}/job-4").mock(
            side_effect=[
                Response(200, json={"status": "running", "progress": 0.5}),
                Response(404, json={"embedding": EMBEDDING}),
            ]
        )

        result = await client.encode("p", MATRIX)

    assert result.status is EmbeddingStatus.DONE
    assert result.embedding.shape == (2, 3)

    await client.aclose()


@pytest.mark.asyncio
async def test_not_found_after_high_progress_reports_lost_result():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-5"}))
        respx.get(f"{BASE_URL}/job-5").mock(
            side_effect=[
                Response(200, json={"status": "running", "progress": 0.97}),
                Response(404, json={"detail": "not found"}),
            ]
        )

        with pytest.raises(JobResultLostError) as excinfo:
            await client.encode("p", MATRIX)

    assert excinfo.value.last_progress == pytest.approx(0.97)

    await client.aclose()


@pytest.mark.asyncio
async def test_not_found_before_high_progress_reports_unknown_job():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-6"}))
        respx.get(f"{BASE_URL}/job-6").mock(
            side_effect=[
                Response(200, json={"status": "running", "progress": 0.4}),
                Response(404, text="gone"),
            ]
        )

        with pytest.raises(JobNotFoundError):
            await client.encode("p", MATRIX)

    await client.aclose()


@pytest.mark.asyncio
async def test_remote_error_status_fails_job():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-7"}))
        respx.get(f"{BASE_URL}/job-7").mock(
            return_value=Response(200, json={"status": "error", "progress": 0.2, "error": "GPU out of memory"})
        )

        with pytest.raises(EmbeddingJobFailedError, match="GPU out of memory"):
            await client.encode("p", MATRIX)

    await client.aclose()


@pytest.mark.asyncio
async def test_submit_without_job_id_is_protocol_error():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(200, json={"accepted": True}))

        with pytest.raises(EmbeddingProtocolError, match="job id"):
            await client.encode("p", MATRIX)

    await client.aclose()


@pytest.mark.asyncio
async def test_unknown_remote_status_is_protocol_error():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-8"}))
        respx.get(f"{BASE_URL}/job-8").mock(return_value=Response(200, json={"status": "paused"}))

        with pytest.raises(EmbeddingProtocolError, match="Unknown job status"):
            await client.encode("p", MATRIX)

    await client.aclose()


@pytest.mark.asyncio
async def test_submit_http_error_is_network_error():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(503))

        with pytest.raises(EmbeddingNetworkError) as excinfo:
            await client.encode("p", MATRIX)

    assert excinfo.value.status_code == 503

    await client.aclose()


@pytest.mark.asyncio
async def test_poll_transport_failure_is_network_error():
    client = _client()

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-9"}))
        respx.get(f"{BASE_URL}/job-9").mock(side_effect=httpx.ConnectError("connection refused"))

        with pytest.raises(EmbeddingNetworkError, match="connection refused"):
            await client.encode("p", MATRIX)

    await client.aclose()


@pytest.mark.asyncio
async def test_hard_timeout_is_enforced_regardless_of_progress():
    clock = FakeClock()
    client = _client(hard_timeout=10.0, clock=clock)

    def slow_poll(request):
        clock.now += 4.0
        return Response(200, json={"status": "running", "progress": 0.9})

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-10"}))
        poll = respx.get(f"{BASE_URL}/job-10").mock(side_effect=slow_poll)

        with pytest.raises(EmbeddingTimeoutError) as excinfo:
            await client.encode("p", MATRIX)

    assert isinstance(excinfo.value, TimeoutError)
    assert poll.call_count == 3

    await client.aclose()


@pytest.mark.asyncio
async def test_cancel_resolves_pending_encode_as_cancelled():
    client = _client(poll_interval=0.02)

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-11"}))
        poll = respx.get(f"{BASE_URL}/job-11").mock(
            return_value=Response(200, json={"status": "running", "progress": 0.1})
        )

        task = asyncio.create_task(client.encode("p", MATRIX))
        await _wait_until(lambda: poll.called)

        assert client.cancel() is True
        calls_at_cancel = poll.call_count
        result = await task
        await asyncio.sleep(0.05)

    assert result.cancelled
    assert result.status is EmbeddingStatus.CANCELLED
    assert result.embedding is None
    assert poll.call_count == calls_at_cancel
    assert client.cancel() is False

    await client.aclose()


@pytest.mark.asyncio
async def test_cancelling_the_caller_task_closes_the_job():
    client = _client(poll_interval=0.02)
    statuses = []
    client.subscribe(lambda progress: statuses.append(progress.status))

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-12"}))
        poll = respx.get(f"{BASE_URL}/job-12").mock(
            return_value=Response(200, json={"status": "running", "progress": 0.4})
        )

        task = asyncio.create_task(client.encode("p", MATRIX))
        await _wait_until(lambda: poll.called)
        job = client.active_job

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        calls_at_cancel = poll.call_count
        await asyncio.sleep(0.05)

    assert client.active_job is None
    assert job.status is EmbeddingStatus.CANCELLED
    assert job.aborted
    assert statuses[-1] is EmbeddingStatus.CANCELLED
    assert poll.call_count == calls_at_cancel
    assert client.cancel() is False

    await client.aclose()


@pytest.mark.asyncio
async def test_new_job_cancels_previous_job():
    """Submitting job B while job A polls stops every further poll for A."""
    client = _client(poll_interval=0.02)

    with respx.mock:
        respx.post(BASE_URL).mock(
            side_effect=[
                Response(202, json={"job_id": "job-a"}),
                Response(202, json={"job_id": "job-b"}),
            ]
        )
        poll_a = respx.get(f"{BASE_URL}/job-a").mock(
            return_value=Response(200, json={"status": "running", "progress": 0.2})
        )
        poll_b = respx.get(f"{BASE_URL}/job-b").mock(
            return_value=Response(200, json={"status": "done", "progress": 1.0, "embedding": EMBEDDING})
        )

        task_a = asyncio.create_task(client.encode("a", MATRIX))
        await _wait_until(lambda: poll_a.called)

        calls_a = poll_a.call_count
        result_b = await client.encode("b", MATRIX)
        result_a = await task_a
        await asyncio.sleep(0.05)

    assert result_a.cancelled
    assert result_a.job_id == "job-a"
    assert result_b.status is EmbeddingStatus.DONE
    assert poll_b.call_count == 1
    assert poll_a.call_count == calls_a

    await client.aclose()


@pytest.mark.asyncio
async def test_status_never_moves_backward_and_progress_is_reported():
    clock = FakeClock()
    client = _client(clock=clock, expected_seconds=300.0)
    events = []
    client.subscribe(events.append)

    def poll_with_time(responses):
        iterator = iter(responses)

        def respond(request):
            clock.now += 10.0
            return next(iterator)

        return respond

    with respx.mock:
        respx.post(BASE_URL).mock(return_value=Response(202, json={"job_id": "job-12"}))
        respx.get(f"{BASE_URL}/job-12").mock(
            side_effect=poll_with_time(
                [
                    Response(200, json={"status": "processing", "progress": 0.25}),
                    Response(200, json={"status": "pending", "progress": 0.5}),
                    Response(200, json={"status": "completed", "progress": 1.0, "embedding": EMBEDDING}),
                ]
            )
        )

        await client.encode("p", MATRIX)

    assert [event.status for event in events] == [
        EmbeddingStatus.QUEUED,
        EmbeddingStatus.RUNNING,
        EmbeddingStatus.RUNNING,
        EmbeddingStatus.DONE,
    ]
    assert events[0].eta_seconds == pytest.approx(300.0)
    assert events[1].eta_seconds == pytest.approx(30.0)
    assert events[2].eta_seconds == pytest.approx(20.0)
    assert events[-1].progress == 1.0

    await client.aclose()


@pytest.mark.asyncio
async def test_row_count_mismatch_only_warns():
    client = _client()

    with respx.mock, capture_logs() as logs:
        respx.post(BASE_URL).mock(return_value=Response(200, json={"embedding": [[0.1, 0.2]]}))

        result = await client.encode("p", MATRIX)

    assert result.status is EmbeddingStatus.DONE
    assert result.row_count == 1
    assert any(entry["event"] == "embedding_row_count_mismatch" for entry in logs)

    await client.aclose()


def test_estimate_eta_only_for_partial_progress():
    assert estimate_eta(10.0, 0.25) == pytest.approx(30.0)
    assert estimate_eta(10.0, 0.0) is None
    assert estimate_eta(10.0, 1.0) is None


def test_from_settings_uses_encoder_configuration():
    client = EmbeddingJobClient.from_settings()

    assert client.base_url == "http://encoder.test/encode"
    assert client.finalize_grace_polls == 8
    assert client.lost_result_threshold == 0.95
