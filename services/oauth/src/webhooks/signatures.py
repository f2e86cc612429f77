"""Per-provider authenticity checks.

Every check fails closed: a missing secret, header or registration rejects the
delivery.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

from ..config import Settings
from ..schemas import Provider, as_utc
from ..storage import WebhookSubscriptionRepository, hash_secret
from .request import ValidationResult, WebhookRequest

logger = logging.getLogger(__name__)

GOOGLE_RESOURCE_STATES = ("exists", "not_exists", "sync")


def zoom_signature(secret: str, timestamp: str, body: bytes) -> str:
    """``v0=`` + HMAC-SHA256 over ``v0:{timestamp}:{raw body}``."""
    message = f"v0:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def zoom_url_validation_token(secret: str, plain_token: str) -> str:
    """Response token for Zoom's ``endpoint.url_validation`` challenge."""
    return hmac.new(secret.encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def timestamp_within(timestamp: Any, now: float, tolerance_seconds: float) -> bool:
    """True if ``timestamp`` (epoch seconds or milliseconds) is within tolerance of now."""
    try:
        value = float(timestamp)
    except (TypeError, ValueError):
        return False
    # Millisecond timestamps
    if value > 1e11:
        value /= 1000
    return abs(now - value) <= tolerance_seconds


def _parse_expiration(value: str) -> Optional[datetime]:
    """Google sends an RFC 1123 date; epoch milliseconds are accepted too."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        return as_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


class SignatureVerifier:
    """Checks that a delivery really comes from the provider it claims."""

    def __init__(
        self,
        settings: Settings,
        subscriptions: WebhookSubscriptionRepository,
        clock: Callable[[], float],
    ):
        self.settings = settings
        self.subscriptions = subscriptions
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def verify(self, request: WebhookRequest, payload: Any) -> ValidationResult:
        if request.provider == Provider.ZOOM:
            return self.verify_zoom(request)
        if request.provider == Provider.GOOGLE:
            return await self.verify_google(request)
        if request.provider == Provider.MICROSOFT:
            return await self.verify_microsoft(payload)
        if request.provider == Provider.CALDAV:
            return self.verify_caldav(request)
        return ValidationResult.reject("Unsupported webhook provider")

    def verify_zoom(self, request: WebhookRequest) -> ValidationResult:
        secret = self.settings.zoom_webhook_secret_token
        if not secret:
            logger.error("Zoom webhook secret token is not configured")
            return ValidationResult.reject("Webhook secret not configured")

        signature = request.header("x-zm-signature")
        timestamp = request.header("x-zm-request-timestamp")
        if not signature or not timestamp:
            return ValidationResult.reject("Missing signature headers")

        # Stale or future requests are rejected even with a valid signature
        tolerance = self.settings.webhook_timestamp_tolerance_seconds
        if not timestamp_within(timestamp, self._clock(), tolerance):
            return ValidationResult.reject(
                "Request timestamp outside tolerance window", tolerance=tolerance
            )

        expected = zoom_signature(secret, timestamp, request.body)
        if not constant_time_equals(signature, expected):
            return ValidationResult.reject("Invalid HMAC signature")
        return ValidationResult.ok()

    async def verify_google(self, request: WebhookRequest) -> ValidationResult:
        channel_id = request.header("x-goog-channel-id")
        resource_id = request.header("x-goog-resource-id")
        if not channel_id or not resource_id:
            return ValidationResult.reject("Missing required Google headers")

        channel_token = request.header("x-goog-channel-token")
        if not channel_token:
            return ValidationResult.reject("Missing channel token")

        subscription = await self.subscriptions.get(Provider.GOOGLE, channel_id)
        if subscription is None:
            return ValidationResult.reject("Channel not found")
        if not constant_time_equals(hash_secret(channel_token), subscription.secret_hash):
            return ValidationResult.reject("Token hash mismatch")

        now = self._now()
        max_age = timedelta(seconds=self.settings.webhook_channel_max_age_seconds)
        if subscription.created_at and now - as_utc(subscription.created_at) > max_age:
            return ValidationResult.reject("Channel token expired")

        expiration = request.header("x-goog-channel-expiration")
        if expiration:
            expires_at = _parse_expiration(expiration)
            if expires_at is None or now > expires_at:
                return ValidationResult.reject("Channel expired")

        resource_state = request.header("x-goog-resource-state")
        if resource_state and resource_state not in GOOGLE_RESOURCE_STATES:
            return ValidationResult.reject("Invalid resource state")
        return ValidationResult.ok()

    async def verify_microsoft(self, payload: Any) -> ValidationResult:
        now = self._now()
        for notification in payload["value"]:
            client_state = notification.get("clientState")
            if not client_state:
                return ValidationResult.reject("Missing client state")

            subscription = await self.subscriptions.get(Provider.MICROSOFT, notification["subscriptionId"])
            if subscription is None:
                return ValidationResult.reject("Subscription not found")
            if not constant_time_equals(hash_secret(client_state), subscription.secret_hash):
                return ValidationResult.reject("Client state hash mismatch")

            if subscription.expires_at and now > as_utc(subscription.expires_at):
                return ValidationResult.reject("Subscription expired")
            expiration = notification.get("subscriptionExpirationDateTime")
            if expiration:
                expires_at = _parse_iso(str(expiration))
                if expires_at is None or now > expires_at:
                    return ValidationResult.reject("Subscription expired")
        return ValidationResult.ok()

    def verify_caldav(self, request: WebhookRequest) -> ValidationResult:
        expected = self.settings.caldav_webhook_api_key
        if not expected:
            logger.error("CalDAV webhook API key is not configured")
            return ValidationResult.reject("Webhook secret not configured")

        presented = request.header("x-api-key") or request.header("authorization")
        if not presented:
            return ValidationResult.reject("Missing API key")
        if presented.startswith("Bearer "):
            presented = presented[len("Bearer "):]

        if not constant_time_equals(presented, expected):
            return ValidationResult.reject("Invalid API key")
        return ValidationResult.ok()
