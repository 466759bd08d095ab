"""
Process-wide handles, built once at startup and passed to every handler.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from billing import RevenueCatClient, SubscriptionGate
from config import Settings
from database import init_db, make_engine, make_session_factory
from orchestrator import JobOrchestrator
from services import Identity, JWTIdentityProvider, ReplicateClient, ResultFetcher, S3Storage, bearer_token
from signatures import WebhookVerifier
from store import JobStore, utcnow
from watcher import JobEventBus, JobWatcher

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: JobStore
    identity: JWTIdentityProvider
    orchestrator: JobOrchestrator
    watcher: JobWatcher


def build_container(settings: Settings, storage=None, inference=None, billing_client=None,
                    fetcher=None, identity=None, clock=None, create_tables: bool = True) -> Container:
    """Wire every component from ``settings``. Collaborators can be swapped in."""
    engine = make_engine(settings.database_url)
    if create_tables:
        init_db(engine)

    events = JobEventBus()
    store = JobStore(make_session_factory(engine), events=events, clock=clock or utcnow)

    if storage is None:
        storage = S3Storage(settings.storage_bucket, region=settings.aws_region,
                            endpoint_url=settings.s3_endpoint_url)
    if inference is None:
        inference = ReplicateClient(settings.replicate_api_token, settings.replicate_model)
    if billing_client is None and settings.revenuecat_secret_key:
        billing_client = RevenueCatClient(settings.revenuecat_secret_key)
    if fetcher is None:
        fetcher = ResultFetcher()
    if identity is None:
        identity = JWTIdentityProvider(
            secret=settings.auth_jwt_secret,
            jwks_url=settings.auth_jwks_url,
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )

    verifier = None
    if settings.replicate_webhook_secret:
        verifier = WebhookVerifier(settings.replicate_webhook_secret,
                                   tolerance=settings.webhook_tolerance_seconds)

    gate = SubscriptionGate(billing_client, store, daily_limit=settings.free_user_daily_limit)
    orchestrator = JobOrchestrator(settings, store, storage, inference, gate, fetcher, verifier=verifier)
    watcher = JobWatcher(orchestrator, events)
    logger.info("🔧 Container initialised")
    return Container(settings=settings, store=store, identity=identity,
                     orchestrator=orchestrator, watcher=watcher)


# --- FastAPI dependencies ---

def get_container(request: Request) -> Container:
    return request.app.state.container


def current_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    """Verify the bearer credential on the request."""
    container = get_container(request)
    return container.identity.verify_token(bearer_token(authorization))
