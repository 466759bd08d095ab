"""
Job orchestration: drives a job from creation through completion or failure.

    create_job   -> pending
    start_job    -> processing        (one inference call per job)
    callback     -> completed | failed
    (any step)   -> failed            (terminal, always with a message)

Failures found while handling a provider callback are never raised to the
provider; they are written to the job so the polling caller sees them.
"""

import enum
import json
import uuid
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from config import (
    DANCE_STYLES,
    MAX_IMAGE_SIZE_BYTES,
    STORAGE_UNAVAILABLE_MSG,
    TEMPORARILY_UNAVAILABLE_MSG,
    VALID_IMAGE_TYPES,
    Settings,
    build_instruction,
    output_video_path,
)
from errors import (
    DuplicateExternalId,
    FailedPrecondition,
    Forbidden,
    InferenceUnavailable,
    InvalidArgument,
    InvalidUpstreamResponse,
    NotFound,
    QuotaExceeded,
    ResultFetchError,
    StorageUnavailable,
    Unauthenticated,
    Unavailable,
)
from models import JobStatus
from schemas import CreateJobResponse, JobRecord, JobView, ResultUrlResponse, StartJobResponse, UploadTarget

logger = logging.getLogger(__name__)

IMAGE_NOT_UPLOADED_MSG = "Image not uploaded"
CANCELED_MSG = "Job was canceled"
PREDICTION_FAILED_MSG = "Replicate job failed"
DUPLICATE_PREDICTION_MSG = "Video service returned a prediction id already in use"

# What S3 reports when the uploader sent no content type
GENERIC_CONTENT_TYPES = ("binary/octet-stream", "application/octet-stream")


# --------------------------------------------------------------------------
# --- Prediction output extraction ---
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class LocatorFound:
    url: str
    shape: str  # "string" | "key:<name>" | "array"
    kind: str = "found"


@dataclass(frozen=True)
class LocatorMissing:
    reason: str
    kind: str = "missing"


ExtractedLocator = Union[LocatorFound, LocatorMissing]

OUTPUT_KEYS = ("url", "video", "output")


def _usable(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _from_string(output) -> Optional[LocatorFound]:
    if _usable(output):
        return LocatorFound(url=output.strip(), shape="string")
    return None


def _from_sequence(output) -> Optional[LocatorFound]:
    if isinstance(output, (list, tuple)):
        for item in output:
            if _usable(item):
                return LocatorFound(url=item.strip(), shape="array")
    return None


def _from_known_key(output) -> Optional[LocatorFound]:
    if not isinstance(output, Mapping):
        return None
    for key in OUTPUT_KEYS:
        value = output.get(key)
        found = _from_string(value) or _from_sequence(value)
        if found:
            return LocatorFound(url=found.url, shape=f"key:{key}")
    # array-like objects keyed by index
    return _from_string(output.get("0")) or _from_string(output.get(0))


EXTRACTION_STRATEGIES: Sequence[Callable[[Any], Optional[LocatorFound]]] = (
    _from_string,
    _from_known_key,
    _from_sequence,
)


def extract_output_locator(output) -> ExtractedLocator:
    """Find the result URL in whatever shape the provider sent.

    Strategies are tried in order; the first match wins.
    """
    if output is None:
        return LocatorMissing(reason="Prediction output is empty")
    for strategy in EXTRACTION_STRATEGIES:
        found = strategy(output)
        if found is not None:
            return found
    preview = json.dumps(output, default=str)[:500]
    return LocatorMissing(reason=f"No video URL in prediction output: {preview}")


# --------------------------------------------------------------------------
# --- Callback outcome ---
# --------------------------------------------------------------------------

class CallbackOutcome(str, enum.Enum):
    IGNORED = "ignored"          # no job for this prediction id
    DUPLICATE = "duplicate"      # job already terminal
    IN_PROGRESS = "in_progress"  # non-final provider status
    COMPLETED = "completed"
    FAILED = "failed"


def parse_callback_payload(raw_body: Union[bytes, str]) -> dict:
    """Decode the provider's callback body; raises InvalidArgument if malformed."""
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise InvalidArgument("Invalid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidArgument("Invalid JSON")
    if not payload.get("id"):
        raise InvalidArgument("Missing prediction id")
    return payload


# --------------------------------------------------------------------------
# --- Orchestrator ---
# --------------------------------------------------------------------------

class JobOrchestrator:
    """The job state machine. Every collaborator is passed in."""

    def __init__(self, settings: Settings, store, storage, inference, gate, fetcher, verifier=None):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.inference = inference
        self.gate = gate
        self.fetcher = fetcher
        self.verifier = verifier
        if verifier is None:
            logger.warning("⚠️ No webhook secret configured: completion callbacks are NOT signature-checked")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_job(self, job_id: Optional[str], user_id: str) -> JobRecord:
        if not job_id:
            raise InvalidArgument("jobId is required")
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")
        if job.user_id != user_id:
            raise Forbidden("Unauthorized")
        return job

    def view_for(self, job: JobRecord, download_url: Optional[str] = None) -> JobView:
        return JobView(
            job_id=job.id,
            status=job.status,
            dance_style=job.dance_style,
            created_at=job.created_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            download_url=download_url,
        )

    def _fail(self, job_id: str, message: str, from_statuses=(JobStatus.PENDING, JobStatus.PROCESSING)):
        failed = self.store.mark_failed(job_id, message, from_statuses=from_statuses)
        if failed is not None:
            logger.error(f"❌ Job {job_id} failed: {message}")
        return failed

    # ------------------------------------------------------------------
    # CreateJob
    # ------------------------------------------------------------------

    def create_job(self, user_id: str, dance_style: Optional[str], email: str = "") -> CreateJobResponse:
        if not dance_style or not isinstance(dance_style, str):
            raise InvalidArgument("danceStyle is required")
        if dance_style not in DANCE_STYLES:
            raise InvalidArgument(f"Invalid danceStyle. Allowed: {', '.join(DANCE_STYLES)}")

        self.store.ensure_user(user_id, email)
        job = self.store.create_job(user_id, dance_style)

        ttl = self.settings.upload_url_ttl
        expires_at = self.store.now() + timedelta(seconds=ttl)
        try:
            url = self.storage.issue_upload_target(job.input_image_path, ttl, content_type="image/jpeg")
        except StorageUnavailable as e:
            # The caller can still upload through the authenticated storage channel
            logger.warning(f"Upload URL unavailable for job {job.id}: {e}")
            url = None

        logger.info(f"✨ Job {job.id} created for {user_id} ({dance_style})")
        return CreateJobResponse(
            job_id=job.id,
            upload_target=UploadTarget(url=url, path=job.input_image_path, expires_at=expires_at),
        )

    # ------------------------------------------------------------------
    # StartJob
    # ------------------------------------------------------------------

    def _check_input_image(self, job: JobRecord):
        """Fail the job (terminally) if the upload is missing or unusable."""
        info = self.storage.stat(job.input_image_path)
        if info is None:
            self._fail(job.id, IMAGE_NOT_UPLOADED_MSG, from_statuses=[JobStatus.PENDING])
            raise FailedPrecondition("Image not found. Please upload first.", current_status=JobStatus.FAILED)

        content_type = (info.content_type or "").lower()
        if content_type and content_type not in VALID_IMAGE_TYPES and content_type not in GENERIC_CONTENT_TYPES:
            message = f"Invalid image type. Allowed: {', '.join(VALID_IMAGE_TYPES)}"
            self._fail(job.id, message, from_statuses=[JobStatus.PENDING])
            raise FailedPrecondition(message, current_status=JobStatus.FAILED)
        if info.size > MAX_IMAGE_SIZE_BYTES:
            message = f"Image too large. Maximum size: {MAX_IMAGE_SIZE_BYTES // (1024 * 1024)}MB"
            self._fail(job.id, message, from_statuses=[JobStatus.PENDING])
            raise FailedPrecondition(message, current_status=JobStatus.FAILED)

    def _not_pending(self, job_id: str, fallback: JobStatus) -> FailedPrecondition:
        current = self.store.get_job(job_id)
        status = current.status if current else fallback
        if status == JobStatus.PENDING:
            return FailedPrecondition("Job is already being started", current_status=status)
        return FailedPrecondition(f"Job already {status.value}", current_status=status)

    def start_job(self, job_id: Optional[str], user_id: str, image_locator: Optional[str] = None) -> StartJobResponse:
        job = self._owned_job(job_id, user_id)
        if job.status != JobStatus.PENDING:
            raise self._not_pending(job.id, job.status)

        decision = self.gate.authorize_start(user_id)

        try:
            self._check_input_image(job)
            if not image_locator:
                image_locator = self.storage.issue_read_target(job.input_image_path, self.settings.download_url_ttl)
        except StorageUnavailable as e:
            logger.error(f"Storage error in start_job {job.id}: {e}")
            raise Unavailable(STORAGE_UNAVAILABLE_MSG) from e

        # Only one caller gets past this point per job, and only within quota
        token = uuid.uuid4().hex
        try:
            claimed = self.store.claim_start(
                job.id,
                token,
                timedelta(seconds=self.settings.start_claim_ttl),
                quota=self.gate.quota_for(user_id, decision),
            )
        except QuotaExceeded as e:
            raise self.gate.exhausted(user_id) from e
        if not claimed:
            raise self._not_pending(job.id, job.status)

        try:
            prediction = self.inference.create_prediction(
                image_locator,
                build_instruction(job.dance_style),
                self.settings.callback_url,
            )
        except InferenceUnavailable as e:
            self.store.release_start(job.id, token)
            logger.error(f"Inference provider error for job {job.id}: {e}")
            raise Unavailable(TEMPORARILY_UNAVAILABLE_MSG) from e
        except Exception:
            self.store.release_start(job.id, token)
            raise

        try:
            updated = self.store.mark_processing(job.id, token, prediction.external_id)
        except DuplicateExternalId as e:
            # Callbacks for this id would reach the other job; this one cannot finish
            self._fail(job.id, DUPLICATE_PREDICTION_MSG, from_statuses=[JobStatus.PENDING])
            raise InvalidUpstreamResponse(DUPLICATE_PREDICTION_MSG) from e
        if updated is None:
            # Claim expired and someone else took the job over
            raise self._not_pending(job.id, JobStatus.PROCESSING)

        logger.info(f"🚀 Job {job.id} processing as prediction {prediction.external_id}")
        return StartJobResponse(job_id=job.id, status=updated.status, external_job_id=prediction.external_id)

    # ------------------------------------------------------------------
    # Completion callback
    # ------------------------------------------------------------------

    def verify_callback(self, raw_body: bytes, headers: Mapping[str, str]):
        """Authenticate a provider callback before anything else happens."""
        if self.verifier is None:
            return
        ok = self.verifier.verify(
            raw_body,
            headers.get("webhook-id"),
            headers.get("webhook-timestamp"),
            headers.get("webhook-signature"),
        )
        if not ok:
            logger.error("Invalid webhook signature")
            raise Unauthenticated("Invalid signature")

    def handle_completion_callback(self, raw_body: bytes, headers: Mapping[str, str]) -> CallbackOutcome:
        self.verify_callback(raw_body, headers)
        payload = parse_callback_payload(raw_body)
        return self.apply_callback(payload)

    def apply_callback(self, payload: dict) -> CallbackOutcome:
        """Apply an authenticated callback payload. Safe to repeat."""
        external_id = payload.get("id")
        status = payload.get("status")

        job = self.store.find_by_external_id(external_id)
        if job is None:
            logger.warning(f"No job found for prediction {external_id}")
            return CallbackOutcome.IGNORED
        if job.status.is_terminal:
            logger.info(f"Duplicate callback for job {job.id} ({job.status.value}), ignoring")
            return CallbackOutcome.DUPLICATE

        if status == "succeeded":
            return self._complete(job, payload.get("output"))
        if status == "failed":
            message = payload.get("error") or PREDICTION_FAILED_MSG
            return self._record_failure(job, str(message))
        if status == "canceled":
            return self._record_failure(job, CANCELED_MSG)

        logger.info(f"Prediction {external_id} reported {status!r}, waiting for completion")
        return CallbackOutcome.IN_PROGRESS

    def _record_failure(self, job: JobRecord, message: str) -> CallbackOutcome:
        failed = self._fail(job.id, message, from_statuses=[JobStatus.PROCESSING])
        return CallbackOutcome.FAILED if failed is not None else CallbackOutcome.DUPLICATE

    @staticmethod
    def _result_url(output) -> str:
        extracted = extract_output_locator(output)
        if isinstance(extracted, LocatorMissing):
            raise InvalidUpstreamResponse(extracted.reason)
        return extracted.url

    def _complete(self, job: JobRecord, output) -> CallbackOutcome:
        try:
            result_url = self._result_url(output)
        except InvalidUpstreamResponse as e:
            logger.error(f"Unusable prediction output for job {job.id}: {e.message}")
            return self._record_failure(job, e.message)

        # Re-read right before the expensive part to skip late duplicates
        fresh = self.store.get_job(job.id)
        if fresh is None or fresh.status != JobStatus.PROCESSING:
            return CallbackOutcome.DUPLICATE

        try:
            data = self.fetcher.fetch(result_url)
        except ResultFetchError as e:
            return self._record_failure(job, str(e))

        destination = output_video_path(job.user_id, job.id)
        try:
            self.storage.write(destination, data, "video/mp4")
        except StorageUnavailable as e:
            logger.error(f"Storage save error for job {job.id}: {e}")
            return self._record_failure(job, STORAGE_UNAVAILABLE_MSG)

        completed = self.store.mark_completed(job.id, destination)
        if completed is None:
            return CallbackOutcome.DUPLICATE
        logger.info(f"✅ Job {job.id} completed. Video at: {destination}")
        return CallbackOutcome.COMPLETED

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: Optional[str], user_id: str) -> JobView:
        job = self._owned_job(job_id, user_id)
        if job.status != JobStatus.COMPLETED or not job.output_video_path:
            return self.view_for(job)
        try:
            url = self.storage.issue_read_target(job.output_video_path, self.settings.download_url_ttl)
        except StorageUnavailable as e:
            logger.warning(f"Download URL unavailable for job {job.id}: {e}")
            return self.view_for(job)
        return self.view_for(job, download_url=url)

    def get_result_url(self, job_id: Optional[str], user_id: str) -> ResultUrlResponse:
        job = self._owned_job(job_id, user_id)
        if job.status != JobStatus.COMPLETED or not job.output_video_path:
            raise FailedPrecondition("Video not ready for download", current_status=job.status)
        ttl = self.settings.download_url_ttl
        try:
            url = self.storage.issue_read_target(job.output_video_path, ttl)
        except StorageUnavailable as e:
            logger.error(f"Storage error in get_result_url {job.id}: {e}")
            raise Unavailable(STORAGE_UNAVAILABLE_MSG) from e
        return ResultUrlResponse(url=url, expires_in=ttl)

    def list_jobs(self, user_id: str, limit: int = 50) -> List[JobView]:
        return [self.view_for(job) for job in self.store.list_jobs(user_id, limit=limit)]
