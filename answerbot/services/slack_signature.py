import hashlib
import hmac
import time
from typing import Optional

from answerbot.config import settings

SIGNATURE_VERSION = "v0"


def compute_signature(raw_body: bytes, timestamp: str, signing_secret: str) -> str:
    base = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + raw_body
    digest = hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def _timestamp_fresh(timestamp: Optional[str], now: float, max_age_seconds: int) -> bool:
    try:
        ts_value = int(timestamp or "")
    except ValueError:
        return False
    return abs(now - ts_value) <= max_age_seconds


def verify_signature(
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    signing_secret: Optional[str] = None,
    now: Optional[float] = None,
    max_age_seconds: Optional[int] = None,
) -> bool:
    """Check a Slack request signature.

    The digest is always computed and compared, and the freshness check is
    combined afterwards, so a stale timestamp costs the same as a bad digest.
    """
    signing_secret = signing_secret if signing_secret is not None else settings.slack_signing_secret
    if not signing_secret:
        return False
    if now is None:
        now = time.time()
    if max_age_seconds is None:
        max_age_seconds = settings.signature_max_age_seconds

    expected = compute_signature(raw_body, timestamp or "", signing_secret)
    digest_ok = hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))
    fresh = _timestamp_fresh(timestamp, now, max_age_seconds)
    return digest_ok & fresh
