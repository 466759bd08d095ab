# tests/test_orchestrator.py

import threading
from datetime import timedelta

import pytest

from conftest import VIDEO_BYTES, VIDEO_URL, signed_callback
from dependencies import build_container
from errors import (
    FailedPrecondition,
    Forbidden,
    InferenceUnavailable,
    InvalidArgument,
    InvalidUpstreamResponse,
    NotFound,
    ResourceExhausted,
    Unauthenticated,
    Unavailable,
)
from models import JobStatus
from orchestrator import (
    CANCELED_MSG,
    DUPLICATE_PREDICTION_MSG,
    IMAGE_NOT_UPLOADED_MSG,
    CallbackOutcome,
    LocatorFound,
    LocatorMissing,
    extract_output_locator,
    parse_callback_payload,
)


def _uploaded_job(orchestrator, storage, user_id="u1", style="hip-hop"):
    created = orchestrator.create_job(user_id, style)
    storage.put(created.upload_target.path)
    return created.job_id


def _started_job(orchestrator, storage, user_id="u1"):
    job_id = _uploaded_job(orchestrator, storage, user_id)
    started = orchestrator.start_job(job_id, user_id)
    return job_id, started.external_job_id


# --- create ---

def test_create_job_returns_upload_target(orchestrator, store):
    created = orchestrator.create_job("u1", "ballet", email="a@example.com")

    job = store.get_job(created.job_id)
    assert job.status == JobStatus.PENDING
    assert created.upload_target.path == f"uploads/u1/{created.job_id}/original.jpg"
    assert created.upload_target.url.startswith("https://storage.test/upload/")
    assert store.get_user("u1").email == "a@example.com"


@pytest.mark.parametrize("style", [None, "", "tango", "HIP-HOP"])
def test_create_job_rejects_bad_style(orchestrator, style):
    with pytest.raises(InvalidArgument):
        orchestrator.create_job("u1", style)


def test_create_job_survives_storage_outage(orchestrator, storage):
    storage.available = False
    created = orchestrator.create_job("u1", "disco")

    assert created.upload_target.url is None
    assert created.upload_target.path.endswith("/original.jpg")


# --- start ---

def test_end_to_end_success(orchestrator, storage, inference, fetcher, store):
    """
    Create, upload, start, callback, and download: the full happy path.
    """
    job_id, external_id = _started_job(orchestrator, storage)

    assert store.get_job(job_id).status == JobStatus.PROCESSING
    assert len(inference.calls) == 1
    image_locator, instruction, callback_url = inference.calls[0]
    assert image_locator.startswith("https://storage.test/read/uploads/u1/")
    assert "hip-hop" in instruction
    assert callback_url == "https://api.petdance.test/completion-callback"

    outcome = orchestrator.apply_callback({"id": external_id, "status": "succeeded", "output": VIDEO_URL})
    assert outcome == CallbackOutcome.COMPLETED

    view = orchestrator.get_job_status(job_id, "u1")
    assert view.status == JobStatus.COMPLETED
    assert view.download_url.startswith("https://storage.test/read/outputs/u1/")
    assert storage.objects[f"outputs/u1/{job_id}/dance.mp4"] == (VIDEO_BYTES, "video/mp4")

    result = orchestrator.get_result_url(job_id, "u1")
    assert result.url.endswith("dance.mp4?ttl=3600")
    assert result.expires_in == 3600


def test_caller_supplied_image_locator_is_passed_through(orchestrator, storage, inference):
    job_id = _uploaded_job(orchestrator, storage)
    orchestrator.start_job(job_id, "u1", image_locator="https://cdn.test/pet.jpg")
    assert inference.calls[0][0] == "https://cdn.test/pet.jpg"


def test_start_requires_ownership(orchestrator, storage):
    job_id = _uploaded_job(orchestrator, storage)

    with pytest.raises(InvalidArgument):
        orchestrator.start_job(None, "u1")
    with pytest.raises(NotFound):
        orchestrator.start_job("missing", "u1")
    with pytest.raises(Forbidden):
        orchestrator.start_job(job_id, "intruder")


def test_missing_image_fails_the_job_without_inference(orchestrator, inference, store):
    created = orchestrator.create_job("u1", "robot")

    with pytest.raises(FailedPrecondition) as exc:
        orchestrator.start_job(created.job_id, "u1")

    assert exc.value.to_body()["status"] == "failed"
    job = store.get_job(created.job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == IMAGE_NOT_UPLOADED_MSG
    assert inference.calls == []


def test_oversized_or_wrong_type_image_fails_the_job(orchestrator, storage, store):
    big = orchestrator.create_job("u1", "robot")
    storage.put(big.upload_target.path, data=b"x" * (10 * 1024 * 1024 + 1))
    with pytest.raises(FailedPrecondition):
        orchestrator.start_job(big.job_id, "u1")
    assert "too large" in store.get_job(big.job_id).error_message

    gif = orchestrator.create_job("u1", "robot")
    storage.put(gif.upload_target.path, content_type="image/gif")
    with pytest.raises(FailedPrecondition):
        orchestrator.start_job(gif.job_id, "u1")
    assert store.get_job(gif.job_id).status == JobStatus.FAILED


def test_start_is_rejected_when_not_pending(orchestrator, storage, inference):
    job_id, _ = _started_job(orchestrator, storage)

    with pytest.raises(FailedPrecondition) as exc:
        orchestrator.start_job(job_id, "u1")
    assert exc.value.message == "Job already processing"
    assert len(inference.calls) == 1


def test_concurrent_start_makes_one_inference_call(orchestrator, storage, inference, store):
    """
    A second start arriving while the first is inside the provider call is
    turned away, and only one prediction is ever created.
    """
    job_id = _uploaded_job(orchestrator, storage)
    second_attempt = []

    def reenter():
        if len(second_attempt) == 0:
            try:
                orchestrator.start_job(job_id, "u1")
            except FailedPrecondition as e:
                second_attempt.append(e)

    inference.on_call = reenter
    orchestrator.start_job(job_id, "u1")

    assert len(inference.calls) == 1
    assert len(second_attempt) == 1
    assert second_attempt[0].message == "Job is already being started"
    assert store.get_job(job_id).external_job_id == "pred-1"


def test_provider_error_leaves_job_pending_and_retryable(orchestrator, storage, inference, store):
    job_id = _uploaded_job(orchestrator, storage)
    inference.error = InferenceUnavailable("503 from provider")

    with pytest.raises(Unavailable):
        orchestrator.start_job(job_id, "u1")
    assert store.get_job(job_id).status == JobStatus.PENDING

    inference.error = None
    started = orchestrator.start_job(job_id, "u1")
    assert started.status == JobStatus.PROCESSING


def test_storage_outage_on_start_is_unavailable(orchestrator, storage, store, inference):
    job_id = _uploaded_job(orchestrator, storage)
    storage.available = False

    with pytest.raises(Unavailable):
        orchestrator.start_job(job_id, "u1")
    assert store.get_job(job_id).status == JobStatus.PENDING
    assert inference.calls == []


def test_free_quota_blocks_third_start(orchestrator, storage, inference):
    _started_job(orchestrator, storage)
    _started_job(orchestrator, storage)
    third = _uploaded_job(orchestrator, storage)

    with pytest.raises(ResourceExhausted):
        orchestrator.start_job(third, "u1")
    assert len(inference.calls) == 2


def test_concurrent_starts_cannot_exceed_free_quota(settings, storage, inference, billing, fetcher, clock,
                                                    tmp_path):
    """
    Two starts on different jobs that both pass the early quota check at the
    same moment: only one of them reaches the video model.
    """
    file_settings = settings.model_copy(update={"database_url": f"sqlite:///{tmp_path / 'quota.db'}"})
    container = build_container(file_settings, storage=storage, inference=inference,
                                billing_client=billing, fetcher=fetcher, clock=clock)
    orchestrator = container.orchestrator
    _started_job(orchestrator, storage)
    first = _uploaded_job(orchestrator, storage)
    second = _uploaded_job(orchestrator, storage)

    # Hold both callers right after the early check
    barrier = threading.Barrier(2, timeout=5)
    early_check = orchestrator.gate.check_free_quota

    def check_then_wait(user_id, subscribed=False):
        allowed = early_check(user_id, subscribed=subscribed)
        barrier.wait()
        return allowed

    orchestrator.gate.check_free_quota = check_then_wait
    results = {}

    def start(job_id):
        try:
            results[job_id] = orchestrator.start_job(job_id, "u1").status
        except ResourceExhausted as e:
            results[job_id] = e

    threads = [threading.Thread(target=start, args=(job_id,)) for job_id in (first, second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(inference.calls) == 2
    assert sorted(type(r).__name__ for r in results.values()) == ["JobStatus", "ResourceExhausted"]
    assert container.store.count_billable_jobs("u1", clock() - timedelta(hours=24)) == 2


def test_quota_window_follows_job_creation_time(orchestrator, storage, inference, clock):
    """Jobs created before the window do not count, even when started inside it."""
    old = [_uploaded_job(orchestrator, storage) for _ in range(3)]
    clock.advance(hours=25)

    for job_id in old:
        orchestrator.start_job(job_id, "u1")
    assert len(inference.calls) == 3

    # Jobs created today still count normally
    _started_job(orchestrator, storage)
    _started_job(orchestrator, storage)
    with pytest.raises(ResourceExhausted):
        orchestrator.start_job(_uploaded_job(orchestrator, storage), "u1")


def test_reused_prediction_id_fails_the_new_job(orchestrator, storage, inference, store):
    first_id, external_id = _started_job(orchestrator, storage)
    second_id = _uploaded_job(orchestrator, storage)
    # The provider hands out the first job's id again
    inference.calls.clear()

    with pytest.raises(InvalidUpstreamResponse):
        orchestrator.start_job(second_id, "u1")

    second = store.get_job(second_id)
    assert second.status == JobStatus.FAILED
    assert second.error_message == DUPLICATE_PREDICTION_MSG
    assert store.find_by_external_id(external_id).id == first_id


# --- callbacks ---

def test_unknown_prediction_is_ignored(orchestrator, store):
    outcome = orchestrator.apply_callback({"id": "nobody", "status": "succeeded", "output": VIDEO_URL})
    assert outcome == CallbackOutcome.IGNORED


def test_duplicate_success_callback_writes_once(orchestrator, storage, fetcher):
    job_id, external_id = _started_job(orchestrator, storage)
    payload = {"id": external_id, "status": "succeeded", "output": [VIDEO_URL]}

    assert orchestrator.apply_callback(payload) == CallbackOutcome.COMPLETED
    assert orchestrator.apply_callback(payload) == CallbackOutcome.DUPLICATE
    assert storage.writes == [f"outputs/u1/{job_id}/dance.mp4"]
    assert fetcher.fetched == [VIDEO_URL]


def test_failure_after_completion_is_ignored(orchestrator, storage, store):
    job_id, external_id = _started_job(orchestrator, storage)
    orchestrator.apply_callback({"id": external_id, "status": "succeeded", "output": VIDEO_URL})

    outcome = orchestrator.apply_callback({"id": external_id, "status": "failed", "error": "late"})
    assert outcome == CallbackOutcome.DUPLICATE
    assert store.get_job(job_id).status == JobStatus.COMPLETED


@pytest.mark.parametrize("payload,message", [
    ({"status": "failed", "error": "NSFW content detected"}, "NSFW content detected"),
    ({"status": "failed"}, "Replicate job failed"),
    ({"status": "canceled"}, CANCELED_MSG),
])
def test_provider_failures_are_recorded(orchestrator, storage, store, payload, message):
    job_id, external_id = _started_job(orchestrator, storage)

    outcome = orchestrator.apply_callback(dict(payload, id=external_id))

    assert outcome == CallbackOutcome.FAILED
    job = store.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == message


def test_intermediate_status_changes_nothing(orchestrator, storage, store):
    job_id, external_id = _started_job(orchestrator, storage)
    assert orchestrator.apply_callback({"id": external_id, "status": "processing"}) == CallbackOutcome.IN_PROGRESS
    assert store.get_job(job_id).status == JobStatus.PROCESSING


def test_unusable_output_fails_the_job(orchestrator, storage, store):
    job_id, external_id = _started_job(orchestrator, storage)

    outcome = orchestrator.apply_callback({"id": external_id, "status": "succeeded", "output": {"foo": 1}})

    assert outcome == CallbackOutcome.FAILED
    assert "No video URL" in store.get_job(job_id).error_message


def test_fetch_error_fails_the_job(orchestrator, storage, store):
    job_id, external_id = _started_job(orchestrator, storage)

    outcome = orchestrator.apply_callback(
        {"id": external_id, "status": "succeeded", "output": "https://replicate.delivery/gone.mp4"}
    )

    assert outcome == CallbackOutcome.FAILED
    assert store.get_job(job_id).error_message.startswith("Failed to fetch video")


def test_storage_write_error_fails_the_job(orchestrator, storage, store):
    job_id, external_id = _started_job(orchestrator, storage)
    storage.available = False

    outcome = orchestrator.apply_callback({"id": external_id, "status": "succeeded", "output": VIDEO_URL})

    assert outcome == CallbackOutcome.FAILED
    assert store.get_job(job_id).status == JobStatus.FAILED


def test_handle_completion_callback_checks_signature(orchestrator, storage):
    _, external_id = _started_job(orchestrator, storage)
    body, headers = signed_callback({"id": external_id, "status": "succeeded", "output": VIDEO_URL})

    assert orchestrator.handle_completion_callback(body, headers) == CallbackOutcome.COMPLETED

    headers["webhook-signature"] = "v1,Zm9yZ2Vk"
    with pytest.raises(Unauthenticated):
        orchestrator.handle_completion_callback(body, headers)


@pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"status": "succeeded"}'])
def test_malformed_callback_payloads(raw):
    with pytest.raises(InvalidArgument):
        parse_callback_payload(raw)


# --- reads ---

def test_result_url_requires_completion(orchestrator, storage):
    job_id, _ = _started_job(orchestrator, storage)

    with pytest.raises(FailedPrecondition) as exc:
        orchestrator.get_result_url(job_id, "u1")
    assert exc.value.message == "Video not ready for download"


def test_status_of_completed_job_when_storage_is_down(orchestrator, storage):
    job_id, external_id = _started_job(orchestrator, storage)
    orchestrator.apply_callback({"id": external_id, "status": "succeeded", "output": VIDEO_URL})
    storage.available = False

    view = orchestrator.get_job_status(job_id, "u1")
    assert view.status == JobStatus.COMPLETED
    assert view.download_url is None
    assert view.error_message is None
    with pytest.raises(Unavailable):
        orchestrator.get_result_url(job_id, "u1")


def test_list_jobs_only_shows_own_jobs(orchestrator):
    orchestrator.create_job("u1", "disco")
    orchestrator.create_job("u2", "disco")

    views = orchestrator.list_jobs("u1")
    assert len(views) == 1
    assert views[0].status == JobStatus.PENDING


# --- output extraction ---

@pytest.mark.parametrize("output,shape", [
    (VIDEO_URL, "string"),
    ({"url": VIDEO_URL}, "key:url"),
    ({"video": VIDEO_URL}, "key:video"),
    ({"output": [VIDEO_URL]}, "key:output"),
    ([VIDEO_URL, "https://replicate.delivery/second.mp4"], "array"),
    (["", VIDEO_URL], "array"),
])
def test_extract_output_locator_shapes(output, shape):
    assert extract_output_locator(output) == LocatorFound(url=VIDEO_URL, shape=shape)


@pytest.mark.parametrize("output", [None, "", [], {}, {"foo": "bar"}, 42])
def test_extract_output_locator_missing(output):
    assert isinstance(extract_output_locator(output), LocatorMissing)
