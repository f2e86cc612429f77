"""Webhook validation pipeline.

Stages run in order and stop at the first rejection:

1. IP allowlist
2. Rate limit per (provider, client IP)
3. Payload size, depth and structure
4. Signature / channel authenticity
5. Replay protection
6. Sanitization

Microsoft subscription handshakes are answered after the rate limit stage.
Every rejection is written to the security-violation log; every acceptance to
the validation log.
"""

import logging
import time
from typing import Any, Callable, Optional

from ..audit import SecurityAuditLogger
from ..cache import NonceStore, RateLimitStore
from ..config import Settings
from ..errors import ErrorKind
from ..schemas import Provider
from ..storage import WebhookSubscriptionRepository
from .network import check_ip_allowlist, client_ip
from .payload import check_payload, sanitize_payload
from .request import ValidationResult, WebhookRequest
from .signatures import SignatureVerifier, timestamp_within, zoom_url_validation_token

logger = logging.getLogger(__name__)

RATE_LIMITS = {
    Provider.GOOGLE: 1000,
    Provider.MICROSOFT: 1000,
    Provider.ZOOM: 500,
    Provider.CALDAV: 200,
}
DEFAULT_RATE_LIMIT = 100

ZOOM_URL_VALIDATION_EVENT = "endpoint.url_validation"


def extract_nonce(request: WebhookRequest, payload: Any) -> Optional[str]:
    """Provider-specific one-time identifier of a delivery."""
    if request.provider == Provider.ZOOM:
        return request.header("x-zm-trackingid")
    if request.provider == Provider.MICROSOFT:
        notifications = payload.get("value") if isinstance(payload, dict) else None
        if notifications and isinstance(notifications[0], dict) and notifications[0].get("id"):
            return str(notifications[0]["id"])
        return None
    if request.provider == Provider.GOOGLE:
        message_number = request.header("x-goog-message-number")
        if message_number:
            return f"{request.header('x-goog-channel-id')}:{message_number}"
        return None
    return request.header("x-nonce") or request.header("nonce")


class WebhookValidator:
    """Runs inbound webhooks through the security pipeline."""

    def __init__(
        self,
        settings: Settings,
        rate_limits: RateLimitStore,
        nonces: NonceStore,
        subscriptions: WebhookSubscriptionRepository,
        audit: SecurityAuditLogger,
        clock: Callable[[], float] = time.time,
        ip_ranges: Optional[dict[Provider, list[str]]] = None,
    ):
        self.settings = settings
        self.rate_limits = rate_limits
        self.nonces = nonces
        self.audit = audit
        self.signatures = SignatureVerifier(settings, subscriptions, clock)
        self._clock = clock
        self._ip_ranges = ip_ranges

    async def validate(self, request: WebhookRequest) -> ValidationResult:
        ip = client_ip(request)
        try:
            result = await self._run_stages(request, ip)
        except Exception as e:
            logger.exception(f"Webhook validation error for {request.provider.value}")
            result = ValidationResult.reject("Validation exception", error=type(e).__name__)
            result.violation = "validation_exception"
        result.client_ip = ip

        if result.valid:
            status = "handshake" if result.is_handshake else "success"
            await self.audit.log_validation(request.provider.value, status, ip, request.url)
        else:
            await self.audit.log_violation(
                provider=request.provider.value,
                violation_type=result.violation or "validation_failed",
                client_ip=ip,
                details={"reason": result.reason, **result.details},
                headers=request.headers,
                request_url=request.url,
                request_method=request.method,
            )
        return result

    async def _run_stages(self, request: WebhookRequest, ip: Optional[str]) -> ValidationResult:
        if self.settings.webhook_ip_allowlist_enabled:
            result = check_ip_allowlist(request, ip, self._ip_ranges)
            if not result.valid:
                return self._violation(result, "ip_validation_failed")

        result = await self.check_rate_limit(request.provider, ip)
        if not result.valid:
            return self._violation(result, "rate_limit_exceeded")

        if request.provider == Provider.MICROSOFT and request.query.get("validationToken"):
            return ValidationResult.ok(validation_token=request.query["validationToken"])

        result = check_payload(
            request.provider,
            request.body,
            max_bytes=self.settings.webhook_max_payload_bytes,
            max_depth=self.settings.webhook_max_depth,
            max_events=self.settings.webhook_max_events,
        )
        if not result.valid:
            return self._violation(result, "payload_validation_failed")
        payload = result.payload

        result = await self.signatures.verify(request, payload)
        if not result.valid:
            return self._violation(result, "signature_validation_failed")

        result = await self.check_replay(request, payload)
        if not result.valid:
            return self._violation(result, "replay_attack_detected")

        payload = sanitize_payload(payload)
        if request.provider == Provider.ZOOM and payload.get("event") == ZOOM_URL_VALIDATION_EVENT:
            return self._zoom_challenge(payload)
        return ValidationResult.ok(payload=payload)

    @staticmethod
    def _violation(result: ValidationResult, violation: str) -> ValidationResult:
        result.violation = violation
        return result

    async def check_rate_limit(self, provider: Provider, ip: Optional[str]) -> ValidationResult:
        limit = RATE_LIMITS.get(provider, DEFAULT_RATE_LIMIT)
        decision = await self.rate_limits.hit(
            f"{provider.value}:{ip or 'unknown'}",
            limit,
            self.settings.webhook_rate_window_seconds,
        )
        if decision.allowed:
            return ValidationResult.ok()
        return ValidationResult.reject(
            "Rate limit exceeded",
            kind=ErrorKind.RATE_LIMITED,
            limit=decision.limit,
            current=decision.current,
            reset_at=decision.reset_at,
        )

    async def check_replay(self, request: WebhookRequest, payload: Any) -> ValidationResult:
        if request.provider == Provider.CALDAV:
            timestamp = request.header("x-timestamp") or request.header("timestamp")
            tolerance = self.settings.webhook_timestamp_tolerance_seconds
            if timestamp and not timestamp_within(timestamp, self._clock(), tolerance):
                return ValidationResult.reject(
                    "Request timestamp outside tolerance window",
                    kind=ErrorKind.REPLAY_DETECTED,
                    tolerance=tolerance,
                )

        nonce = extract_nonce(request, payload)
        if nonce is None:
            return ValidationResult.ok()

        fresh = await self.nonces.add_if_absent(
            f"{request.provider.value}:{nonce}",
            self.settings.webhook_nonce_ttl_seconds,
        )
        if not fresh:
            return ValidationResult.reject(
                "Nonce already used (replay attack detected)",
                kind=ErrorKind.REPLAY_DETECTED,
            )
        return ValidationResult.ok()

    def _zoom_challenge(self, payload: dict) -> ValidationResult:
        plain_token = (payload.get("payload") or {}).get("plainToken")
        if not plain_token:
            return self._violation(
                ValidationResult.reject("Missing validation token"),
                "payload_validation_failed",
            )
        encrypted = zoom_url_validation_token(self.settings.zoom_webhook_secret_token, str(plain_token))
        return ValidationResult.ok(
            payload=payload,
            challenge={"plainToken": plain_token, "encryptedToken": encrypted},
        )

    async def cleanup(self) -> None:
        """Drop expired rate-limit windows and nonces."""
        windows = await self.rate_limits.cleanup()
        nonces = await self.nonces.cleanup()
        if windows or nonces:
            logger.debug(f"Webhook state cleanup: {windows} windows, {nonces} nonces removed")
