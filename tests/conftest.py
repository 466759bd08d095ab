# tests/conftest.py

import sys
import os
import json
import time
from datetime import datetime, timedelta

import jwt
import pytest

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings
from dependencies import build_container
from errors import InferenceUnavailable, ResultFetchError, StorageUnavailable
from services import ObjectInfo, Prediction
from signatures import WebhookVerifier

JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
WEBHOOK_SECRET = "whsec_dGVzdC13ZWJob29rLXNlY3JldA=="
VIDEO_URL = "https://replicate.delivery/abc/output.mp4"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42fake-video"


class FakeStorage:
    """In-memory object storage."""

    def __init__(self):
        self.objects = {}
        self.writes = []
        self.available = True

    def _check(self):
        if not self.available:
            raise StorageUnavailable("storage is down")

    def put(self, path, data=b"\xff\xd8\xff fake jpeg", content_type="image/jpeg"):
        self.objects[path] = (data, content_type)

    def issue_upload_target(self, path, ttl, content_type="image/jpeg"):
        self._check()
        return f"https://storage.test/upload/{path}?ttl={ttl}"

    def stat(self, path):
        self._check()
        if path not in self.objects:
            return None
        data, content_type = self.objects[path]
        return ObjectInfo(path=path, size=len(data), content_type=content_type)

    def exists(self, path):
        return self.stat(path) is not None

    def write(self, path, data, content_type):
        self._check()
        self.writes.append(path)
        self.objects[path] = (data, content_type)

    def issue_read_target(self, path, ttl):
        self._check()
        return f"https://storage.test/read/{path}?ttl={ttl}"


class FakeInference:
    """Records every prediction request."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.on_call = None

    def create_prediction(self, image_locator, instruction, callback_url=None):
        self.calls.append((image_locator, instruction, callback_url))
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        return Prediction(external_id=f"pred-{len(self.calls)}", status="starting")


class FakeBilling:
    """Stands in for the RevenueCat client."""

    def __init__(self, subscriber=None):
        self.subscriber = subscriber or {}
        self.down = False
        self.lookups = []

    def get_subscriber(self, billing_user_id):
        self.lookups.append(billing_user_id)
        if self.down:
            from errors import BillingUnavailable
            raise BillingUnavailable("billing is down")
        return self.subscriber


class FakeFetcher:
    def __init__(self):
        self.results = {VIDEO_URL: VIDEO_BYTES}
        self.fetched = []

    def fetch(self, url):
        self.fetched.append(url)
        if url not in self.results:
            raise ResultFetchError(f"Failed to fetch video: 404 for {url}")
        return self.results[url]


class Clock:
    """Settable clock for quota windows and claim expiry."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        storage_bucket="petdance-test",
        replicate_api_token="r8_test",
        replicate_webhook_secret=WEBHOOK_SECRET,
        public_base_url="https://api.petdance.test",
        revenuecat_secret_key="rc_test",
        auth_jwt_secret=JWT_SECRET,
        free_user_daily_limit=2,
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def container(settings, storage, inference, billing, fetcher, clock):
    return build_container(
        settings,
        storage=storage,
        inference=inference,
        billing_client=billing,
        fetcher=fetcher,
        clock=clock,
    )


@pytest.fixture
def orchestrator(container):
    return container.orchestrator


@pytest.fixture
def store(container):
    return container.store


@pytest.fixture
def client(container):
    from fastapi.testclient import TestClient
    from main import create_app

    app = create_app(container=container)
    with TestClient(app) as test_client:
        yield test_client


def make_token(user_id, email="owner@example.com", secret=JWT_SECRET, expires_in=3600):
    claims = {"sub": user_id, "email": email, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id, **kwargs):
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


def signed_callback(payload, webhook_id="msg_1", timestamp=None, secret=WEBHOOK_SECRET):
    """Body bytes plus the headers a correctly configured provider would send."""
    body = json.dumps(payload).encode("utf-8")
    timestamp = str(int(time.time())) if timestamp is None else str(timestamp)
    signature = WebhookVerifier(secret).sign(body, webhook_id, timestamp)
    headers = {
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": signature,
        "content-type": "application/json",
    }
    return body, headers
