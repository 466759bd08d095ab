# models.py

import enum

from sqlalchemy import Column, DateTime, Enum, String, Text

from database import Base


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SubscriptionStatus(str, enum.Enum):
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"


class User(Base):
    """Owner of jobs. Created lazily on first job creation."""

    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    email = Column(String(320), nullable=False, default="")
    subscription_status = Column(
        Enum(SubscriptionStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionStatus.NONE,
    )
    billing_user_id = Column(String(128), nullable=False)
    created_at = Column(DateTime, nullable=False)
    pro_granted_at = Column(DateTime, nullable=True)


class Job(Base):
    """One request to turn a pet photo into a dancing video."""

    __tablename__ = "jobs"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)

    # Storage locators
    input_image_path = Column(String(500), nullable=False)
    output_video_path = Column(String(500), nullable=True)

    status = Column(
        Enum(JobStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    dance_style = Column(String(32), nullable=False)

    # Correlation id assigned by the inference provider
    external_job_id = Column(String(128), nullable=True, unique=True, index=True)

    # Start guard
    start_token = Column(String(64), nullable=True)
    start_claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
