"""
Webhook signature verification for inference-provider callbacks.

The provider signs ``"{webhook-id}.{webhook-timestamp}.{body}"`` with
HMAC-SHA256 and sends ``webhook-signature: v1,<base64> [v1,<base64> ...]``.
The body must be the exact bytes received; re-serializing a parsed payload
changes it and breaks the signature.
"""

import hmac
import time
import base64
import hashlib
import logging
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 5 * 60


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _strip_prefix(secret: str) -> str:
    return secret[len(SECRET_PREFIX):] if secret.startswith(SECRET_PREFIX) else secret


def _candidate_signatures(signature_header: str) -> List[str]:
    """Split ``v1,abc v1,def`` into ``["abc", "def"]``."""
    candidates = []
    for part in signature_header.split(" "):
        part = part.strip()
        if not part:
            continue
        candidates.append(part.split(",")[-1])
    return candidates


class WebhookVerifier:
    """Checks authenticity and freshness of a callback."""

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("A webhook secret is required")
        self._key = _strip_prefix(secret).encode("utf-8")
        self.tolerance = tolerance
        self._clock = clock

    def _digest(self, raw_body: bytes, webhook_id: str, timestamp: str) -> str:
        signed_content = b".".join([_as_bytes(webhook_id), _as_bytes(timestamp), raw_body])
        mac = hmac.new(self._key, signed_content, hashlib.sha256).digest()
        return base64.b64encode(mac).decode("ascii")

    def sign(self, raw_body: Union[str, bytes], webhook_id: str, timestamp: str) -> str:
        """Header value a correctly configured provider would send."""
        return f"{SIGNATURE_VERSION},{self._digest(_as_bytes(raw_body), webhook_id, timestamp)}"

    def is_fresh(self, timestamp: str) -> bool:
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            return False
        return abs(self._clock() - sent_at) < self.tolerance

    def verify(self, raw_body: Union[str, bytes], webhook_id: Optional[str], timestamp: Optional[str],
               signature_header: Optional[str]) -> bool:
        """True only if a signature matches AND the timestamp is within tolerance."""
        if not (webhook_id and timestamp and signature_header):
            return False

        expected = self._digest(_as_bytes(raw_body), webhook_id, timestamp).encode("ascii")
        matched = False
        for candidate in _candidate_signatures(signature_header):
            # compare every candidate so timing does not reveal which one matched
            if hmac.compare_digest(candidate.encode("ascii", "replace"), expected):
                matched = True

        fresh = self.is_fresh(timestamp)
        if matched and not fresh:
            logger.warning(f"Rejected stale webhook {webhook_id} (timestamp {timestamp})")
        return matched and fresh


def verify_webhook_signature(raw_body: Union[str, bytes], webhook_id: Optional[str], timestamp: Optional[str],
                             signature_header: Optional[str], secret: str,
                             tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> bool:
    return WebhookVerifier(secret, tolerance=tolerance).verify(raw_body, webhook_id, timestamp, signature_header)
