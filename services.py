"""
Service classes for the PetDance backend.
Each wraps one hosted collaborator: identity, object storage, video inference
and result download. Vendor exceptions are translated here so the rest of
the code only sees the errors defined in ``errors``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
import jwt
import requests
from botocore.exceptions import BotoCoreError, ClientError

from errors import InferenceUnavailable, ResultFetchError, StorageUnavailable, Unauthenticated

logger = logging.getLogger(__name__)

REPLICATE_API_BASE = "https://api.replicate.com/v1"


# --------------------------------------------------------------------------
# --- Identity ---
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str = ""


class JWTIdentityProvider:
    """Verifies bearer ID tokens.

    Uses a shared HS256 secret, or RS256 keys published at a JWKS URL
    (e.g. Firebase Auth ID tokens).
    """

    def __init__(self, secret: Optional[str] = None, jwks_url: Optional[str] = None,
                 audience: Optional[str] = None, issuer: Optional[str] = None):
        self.secret = secret
        self.audience = audience
        self.issuer = issuer
        self._jwks_client = jwt.PyJWKClient(jwks_url) if jwks_url else None
        if not (secret or jwks_url):
            logger.error("❌ No AUTH_JWT_SECRET or AUTH_JWKS_URL configured: every authenticated call will be rejected")

    def verify_token(self, token: Optional[str]) -> Identity:
        if not token:
            raise Unauthenticated("Missing or invalid Authorization header")
        if not (self.secret or self._jwks_client):
            raise Unauthenticated("Authentication is not configured")

        options = {"require": ["exp", "sub"], "verify_aud": self.audience is not None}
        try:
            if self._jwks_client is not None:
                key = self._jwks_client.get_signing_key_from_jwt(token).key
                algorithms = ["RS256"]
            else:
                key = self.secret
                algorithms = ["HS256"]
            claims = jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except jwt.PyJWTError as e:
            raise Unauthenticated(f"Invalid or expired token: {e}") from e

        user_id = claims.get("user_id") or claims.get("sub")
        if not user_id:
            raise Unauthenticated("Token carries no user id")
        return Identity(user_id=str(user_id), email=claims.get("email") or "")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


# --------------------------------------------------------------------------
# --- Object storage ---
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class ObjectInfo:
    path: str
    size: int
    content_type: Optional[str] = None


class S3Storage:
    """Object storage on S3 (or any S3-compatible endpoint)."""

    def __init__(self, bucket: Optional[str], region: Optional[str] = None,
                 endpoint_url: Optional[str] = None, client=None):
        self.bucket = bucket
        if client is None and bucket:
            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self._client = client
        if not bucket:
            logger.warning("⚠️ STORAGE_BUCKET is not set: storage calls will report unavailable")

    def _require(self):
        if not self.bucket or self._client is None:
            raise StorageUnavailable("Storage bucket is not configured")
        return self._client

    def issue_upload_target(self, path: str, ttl: int, content_type: str = "image/jpeg") -> str:
        client = self._require()
        try:
            return client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": path, "ContentType": content_type},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailable(f"Could not sign upload URL for {path}: {e}") from e

    def stat(self, path: str) -> Optional[ObjectInfo]:
        client = self._require()
        try:
            head = client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageUnavailable(f"Could not inspect {path}: {e}") from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"Could not inspect {path}: {e}") from e
        return ObjectInfo(path=path, size=int(head.get("ContentLength") or 0), content_type=head.get("ContentType"))

    def exists(self, path: str) -> bool:
        return self.stat(path) is not None

    def write(self, path: str, data: bytes, content_type: str):
        client = self._require()
        try:
            client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailable(f"Could not write {path}: {e}") from e

    def issue_read_target(self, path: str, ttl: int) -> str:
        client = self._require()
        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=ttl,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailable(f"Could not sign read URL for {path}: {e}") from e


# --------------------------------------------------------------------------
# --- Inference provider ---
# --------------------------------------------------------------------------

@dataclass(frozen=True)
class Prediction:
    external_id: str
    status: str


class ReplicateClient:
    """Creates image-to-video predictions on Replicate."""

    def __init__(self, api_token: Optional[str], model: str, base_url: str = REPLICATE_API_BASE,
                 timeout: float = 30, session: Optional[requests.Session] = None):
        self.api_token = api_token
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._version: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}

    def resolve_version(self) -> str:
        """``owner/name:version`` for the configured model, looked up once.

        Falls back to the bare model id when the versions list is unavailable.
        """
        if self._version is not None:
            return self._version
        if ":" in self.model:
            self._version = self.model
            return self._version

        version = self.model
        try:
            response = self.session.get(
                f"{self.base_url}/models/{self.model}/versions", headers=self._headers(), timeout=self.timeout
            )
            if response.ok:
                results = response.json().get("results") or []
                if results:
                    version = f"{self.model}:{results[0]['id']}"
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.warning(f"Could not look up versions for {self.model}: {e}")
        self._version = version
        return version

    def build_input(self, image_locator: str, instruction: str) -> Dict[str, Any]:
        """Model families name their inputs differently."""
        model = self.model
        if "hailuo" in model:
            return {
                "first_frame_image": image_locator,
                "prompt": instruction,
                "duration": 6,
                "resolution": "768p",
                "prompt_optimizer": True,
            }
        if model.startswith("minimax/"):
            return {"prompt": instruction, "image": image_locator}
        if model.startswith("stability-ai/"):
            return {"image": image_locator, "motion_bucket_id": 127, "fps": 6}
        return {"image": image_locator, "prompt": instruction}

    def create_prediction(self, image_locator: str, instruction: str,
                          callback_url: Optional[str] = None) -> Prediction:
        if not self.api_token:
            raise InferenceUnavailable("REPLICATE_API_TOKEN is not configured")

        version = self.resolve_version()
        payload: Dict[str, Any] = {"input": self.build_input(image_locator, instruction)}
        if callback_url:
            payload["webhook"] = callback_url
            payload["webhook_events_filter"] = ["completed"]

        if ":" in version:
            payload["version"] = version
            url = f"{self.base_url}/predictions"
        else:
            url = f"{self.base_url}/models/{version}/predictions"

        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            body = e.response.text[:500] if e.response is not None else ""
            raise InferenceUnavailable(f"Replicate API error: {e} - {body}") from e
        except (requests.RequestException, ValueError) as e:
            raise InferenceUnavailable(f"Could not reach Replicate: {e}") from e

        prediction_id = data.get("id")
        if not prediction_id:
            raise InferenceUnavailable("Replicate response carried no prediction id")
        logger.info(f"🎬 Created prediction {prediction_id} on {version}")
        return Prediction(external_id=prediction_id, status=data.get("status", "starting"))


# --------------------------------------------------------------------------
# --- Result download ---
# --------------------------------------------------------------------------

class ResultFetcher:
    """Downloads the generated video from the provider's CDN."""

    def __init__(self, timeout: float = 180, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.content
        except requests.RequestException as e:
            raise ResultFetchError(f"Failed to fetch video: {e}") from e
