"""
Pydantic models for data validation in the PetDance backend.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import JobStatus, SubscriptionStatus


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Snapshots handed out by the store ---

class JobRecord(BaseModel):
    """Immutable copy of a job row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: str
    input_image_path: str
    output_video_path: Optional[str] = None
    status: JobStatus
    dance_style: str
    external_job_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class UserRecord(BaseModel):
    """Immutable copy of a user row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    email: str
    subscription_status: SubscriptionStatus
    billing_user_id: str
    created_at: datetime
    pro_granted_at: Optional[datetime] = None


# --- Requests ---

class CreateJobRequest(CamelModel):
    """Request model for creating a job."""
    dance_style: Optional[str] = Field(
        None, validation_alias=AliasChoices("danceStyle", "styleParameter", "dance_style")
    )


class StartJobRequest(CamelModel):
    """Request model for starting a created job."""
    job_id: Optional[str] = None
    image_locator: Optional[str] = Field(
        None, validation_alias=AliasChoices("imageLocator", "imageUrl", "image_locator")
    )


class JobIdRequest(CamelModel):
    job_id: Optional[str] = None


# --- Responses ---

class UploadTarget(CamelModel):
    """Where the caller uploads the pet photo."""
    url: Optional[str] = None  # None: upload through the authenticated storage channel
    path: str
    method: str = "PUT"
    content_type: str = "image/jpeg"
    expires_at: datetime


class CreateJobResponse(CamelModel):
    job_id: str
    upload_target: UploadTarget


class StartJobResponse(CamelModel):
    job_id: str
    status: JobStatus
    external_job_id: Optional[str] = None


class JobView(CamelModel):
    """What a caller sees of a job."""
    job_id: str
    status: JobStatus
    dance_style: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ResultUrlResponse(CamelModel):
    url: str
    expires_in: int


class JobListResponse(CamelModel):
    jobs: List[JobView]
