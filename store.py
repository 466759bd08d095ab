"""
Job Store: the single source of truth for jobs and users.

Every method runs in its own short transaction and hands back an immutable
snapshot (JobRecord / UserRecord). State transitions are guarded updates
(``UPDATE ... WHERE status IN (...)``) so concurrent handlers can never move
a job backwards or out of a terminal state.
"""

import uuid
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from config import input_image_path
from errors import DuplicateExternalId, QuotaExceeded
from models import Job, JobStatus, SubscriptionStatus, User
from schemas import JobRecord, UserRecord
from watcher import JobEventBus

logger = logging.getLogger(__name__)

BILLABLE_STATUSES = (JobStatus.PROCESSING, JobStatus.COMPLETED)


@dataclass(frozen=True)
class QuotaWindow:
    """Free-tier limit to enforce while claiming a start."""
    user_id: str
    since: datetime
    limit: int


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStore:
    def __init__(self, session_factory, events: Optional[JobEventBus] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self.events = events or JobEventBus()
        self._clock = clock
        # Quota claims are serialized in-process; across processes the user row lock does it
        self._quota_lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, email: str = "") -> UserRecord:
        """Create the user with subscription_status=none if missing."""
        try:
            with self._session() as db:
                user = db.get(User, user_id)
                if user is None:
                    user = User(
                        id=user_id,
                        email=email or "",
                        subscription_status=SubscriptionStatus.NONE,
                        billing_user_id=user_id,
                        created_at=self.now(),
                    )
                    db.add(user)
                    db.flush()
                    logger.info(f"👤 Created user record for {user_id}")
                elif email and not user.email:
                    user.email = email
                return UserRecord.model_validate(user)
        except IntegrityError:
            # A concurrent request inserted the same user first
            return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._session() as db:
            user = db.get(User, user_id)
            return UserRecord.model_validate(user) if user else None

    def set_subscription_status(self, user_id: str, status: SubscriptionStatus,
                                granted: bool = False) -> UserRecord:
        """Upsert the user's subscription status. ``granted`` marks a manual pro grant."""
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                user = User(id=user_id, email="", billing_user_id=user_id, created_at=self.now())
                db.add(user)
            user.subscription_status = status
            if granted:
                user.pro_granted_at = self.now()
            db.flush()
            return UserRecord.model_validate(user)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, user_id: str, dance_style: str, job_id: Optional[str] = None) -> JobRecord:
        job_id = job_id or uuid.uuid4().hex
        with self._session() as db:
            job = Job(
                id=job_id,
                user_id=user_id,
                input_image_path=input_image_path(user_id, job_id),
                output_video_path=None,
                status=JobStatus.PENDING,
                dance_style=dance_style,
                external_job_id=None,
                created_at=self.now(),
                completed_at=None,
                error_message=None,
            )
            db.add(job)
            db.flush()
            record = JobRecord.model_validate(job)
        self.events.publish(record)
        return record

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self._session() as db:
            job = db.get(Job, job_id)
            return JobRecord.model_validate(job) if job else None

    def find_by_external_id(self, external_job_id: str) -> Optional[JobRecord]:
        with self._session() as db:
            job = db.query(Job).filter(Job.external_job_id == external_job_id).first()
            return JobRecord.model_validate(job) if job else None

    def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        with self._session() as db:
            rows = (
                db.query(Job)
                .filter(Job.user_id == user_id)
                .order_by(Job.created_at.desc())
                .limit(limit)
                .all()
            )
            return [JobRecord.model_validate(row) for row in rows]

    def count_billable_jobs(self, user_id: str, since: datetime) -> int:
        """Jobs that consumed inference capacity since ``since``."""
        with self._session() as db:
            return (
                db.query(Job)
                .filter(
                    Job.user_id == user_id,
                    Job.created_at >= since,
                    Job.status.in_(BILLABLE_STATUSES),
                )
                .count()
            )

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def _guarded_update(self, job_id: str, from_statuses: Iterable[JobStatus], *extra_conditions,
                        **values) -> Optional[JobRecord]:
        """Apply ``values`` only if the job is still in one of ``from_statuses``.

        Returns the updated snapshot, or None when the guard did not match.
        """
        with self._session() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(list(from_statuses)), *extra_conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            record = JobRecord.model_validate(db.get(Job, job_id, populate_existing=True))
        if "status" in values:
            self.events.publish(record)
        return record

    def claim_start(self, job_id: str, token: str, stale_after: timedelta,
                    quota: Optional[QuotaWindow] = None) -> bool:
        """Reserve a pending job for the start transition.

        Exactly one concurrent caller wins. A claim older than ``stale_after``
        is treated as abandoned and may be taken over.

        With ``quota``, the user's billable jobs plus their other live claims
        are counted in the same transaction as the claim; raises QuotaExceeded
        when the window is already full.
        """
        now = self.now()
        unclaimed = or_(Job.start_claimed_at.is_(None), Job.start_claimed_at < now - stale_after)
        if quota is None:
            return self._guarded_update(job_id, [JobStatus.PENDING], unclaimed,
                                        start_token=token, start_claimed_at=now) is not None

        with self._quota_lock, self._session() as db:
            # Row lock on the user serializes concurrent starts (no-op on SQLite)
            db.query(User).filter(User.id == quota.user_id).with_for_update().first()
            used = (
                db.query(Job)
                .filter(
                    Job.user_id == quota.user_id,
                    Job.id != job_id,
                    Job.created_at >= quota.since,
                    or_(
                        Job.status.in_(BILLABLE_STATUSES),
                        (Job.status == JobStatus.PENDING)
                        & Job.start_token.isnot(None)
                        & (Job.start_claimed_at >= now - stale_after),
                    ),
                )
                .count()
            )
            if used >= quota.limit:
                raise QuotaExceeded(used, quota.limit)
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING, unclaimed)
                .values(start_token=token, start_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release_start(self, job_id: str, token: str) -> bool:
        """Drop a start claim so the job can be started again."""
        released = self._guarded_update(
            job_id,
            [JobStatus.PENDING],
            Job.start_token == token,
            start_token=None,
            start_claimed_at=None,
        )
        return released is not None

    def mark_processing(self, job_id: str, token: str, external_job_id: str) -> Optional[JobRecord]:
        """pending -> processing, setting the provider correlation id exactly once.

        Raises DuplicateExternalId if another job already carries that id.
        """
        try:
            return self._guarded_update(
                job_id,
                [JobStatus.PENDING],
                Job.start_token == token,
                Job.external_job_id.is_(None),
                status=JobStatus.PROCESSING,
                external_job_id=external_job_id,
                start_token=None,
                start_claimed_at=None,
            )
        except IntegrityError as e:
            raise DuplicateExternalId(f"Prediction id {external_job_id} already belongs to another job") from e

    def mark_completed(self, job_id: str, output_video_path: str) -> Optional[JobRecord]:
        """processing -> completed."""
        return self._guarded_update(
            job_id,
            [JobStatus.PROCESSING],
            status=JobStatus.COMPLETED,
            output_video_path=output_video_path,
            completed_at=self.now(),
            error_message=None,
        )

    def mark_failed(self, job_id: str, message: str,
                    from_statuses: Iterable[JobStatus] = (JobStatus.PENDING, JobStatus.PROCESSING)
                    ) -> Optional[JobRecord]:
        """Move a non-terminal job to failed. Terminal jobs are left alone."""
        from_statuses = [s for s in from_statuses if not s.is_terminal]
        return self._guarded_update(
            job_id,
            from_statuses,
            status=JobStatus.FAILED,
            error_message=message or "Job failed",
            output_video_path=None,
            start_token=None,
            start_claimed_at=None,
            completed_at=self.now(),
        )
