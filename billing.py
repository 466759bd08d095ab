"""
Subscription gate: decides free vs paid access and enforces the free-tier quota.
Paid access is looked up in RevenueCat, keyed by the same id as the user record.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import requests

from errors import BillingUnavailable, ResourceExhausted
from models import SubscriptionStatus
from store import QuotaWindow

logger = logging.getLogger(__name__)

REVENUECAT_API_BASE = "https://api.revenuecat.com/v1"
QUOTA_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    status: SubscriptionStatus
    reachable: bool = True
    unlimited: bool = False  # paid or manually granted; set by authorize_start


class RevenueCatClient:
    """Thin wrapper over the RevenueCat REST API."""

    def __init__(self, secret_key: str, base_url: str = REVENUECAT_API_BASE, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_subscriber(self, billing_user_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/subscribers/{quote(billing_user_id, safe='')}"
        try:
            response = self.session.get(
                url,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json().get("subscriber") or {}
        except requests.RequestException as e:
            raise BillingUnavailable(f"RevenueCat request failed: {e}") from e
        except ValueError as e:
            raise BillingUnavailable(f"RevenueCat returned invalid JSON: {e}") from e


def _parse_expiry(value) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _grants_access(record: Dict[str, Any], now: datetime) -> bool:
    """A record grants access if it never expires or expires in the future."""
    try:
        expires = _parse_expiry(record.get("expires_date"))
    except ValueError:
        logger.warning(f"Unparseable expires_date in billing record: {record.get('expires_date')!r}")
        return False
    return expires is None or expires > now


def _records(section) -> Iterable[Dict[str, Any]]:
    if isinstance(section, dict):
        return [r for r in section.values() if isinstance(r, dict)]
    if isinstance(section, list):
        return [r for r in section if isinstance(r, dict)]
    return []


def subscription_status_from(subscriber: Dict[str, Any], now: Optional[datetime] = None) -> SubscriptionStatus:
    """Map a RevenueCat subscriber document to none / trial / active."""
    now = now or datetime.now(timezone.utc)

    if any(_grants_access(r, now) for r in _records(subscriber.get("entitlements"))):
        return SubscriptionStatus.ACTIVE

    live = [r for r in _records(subscriber.get("subscriptions")) if _grants_access(r, now)]
    if any(r.get("period_type") != "trial" for r in live):
        return SubscriptionStatus.ACTIVE
    if live:
        return SubscriptionStatus.TRIAL
    return SubscriptionStatus.NONE


class SubscriptionGate:
    """Composes the billing lookup with the free-tier daily quota."""

    def __init__(self, client: Optional[RevenueCatClient], store, daily_limit: int = 2):
        self.client = client
        self.store = store
        self.daily_limit = daily_limit
        if client is None:
            logger.warning("⚠️ No billing credential configured: subscription gate is a pass-through (ungated mode)")

    @property
    def gated(self) -> bool:
        return self.client is not None

    def evaluate(self, user_id: str) -> AccessDecision:
        if self.client is None:
            return AccessDecision(has_access=True, status=SubscriptionStatus.ACTIVE)

        user = self.store.get_user(user_id)
        billing_user_id = user.billing_user_id if user else user_id
        try:
            subscriber = self.client.get_subscriber(billing_user_id)
        except BillingUnavailable as e:
            # Fail closed for paid access; the free quota still applies
            logger.error(f"Billing lookup failed for {user_id}: {e}")
            return AccessDecision(has_access=False, status=SubscriptionStatus.NONE, reachable=False)

        status = subscription_status_from(subscriber)
        return AccessDecision(has_access=status != SubscriptionStatus.NONE, status=status)

    def check_free_quota(self, user_id: str, subscribed: bool = False) -> bool:
        """Sliding 24h window over jobs that actually consumed inference."""
        if subscribed:
            return True
        since = self.store.now() - QUOTA_WINDOW
        used = self.store.count_billable_jobs(user_id, since)
        return used < self.daily_limit

    def exhausted(self, user_id: str) -> ResourceExhausted:
        logger.info(f"🚫 Free tier quota reached for {user_id}")
        return ResourceExhausted(f"Free tier limit: {self.daily_limit} videos per day. Upgrade for unlimited!")

    def authorize_start(self, user_id: str) -> AccessDecision:
        """Raise ResourceExhausted if the user may not start another job now.

        This is an early check only; the binding one happens when the start
        is claimed, with the window from ``quota_for``.
        """
        decision = self.evaluate(user_id)
        # Manual grants live only on the user record
        user = self.store.get_user(user_id)
        locally_active = user is not None and user.subscription_status == SubscriptionStatus.ACTIVE
        subscribed = decision.has_access or locally_active
        if not self.check_free_quota(user_id, subscribed=subscribed):
            raise self.exhausted(user_id)
        return replace(decision, unlimited=subscribed)

    def quota_for(self, user_id: str, decision: AccessDecision) -> Optional[QuotaWindow]:
        """The window a start claim must fit in, or None for unlimited users."""
        if decision.unlimited:
            return None
        return QuotaWindow(user_id=user_id, since=self.store.now() - QUOTA_WINDOW, limit=self.daily_limit)
