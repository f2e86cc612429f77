"""Inbound webhook security."""

from .network import PROVIDER_IP_RANGES, client_ip, ip_in_ranges
from .payload import sanitize_payload
from .request import ValidationResult, WebhookRequest
from .signatures import zoom_signature, zoom_url_validation_token
from .validator import DEFAULT_RATE_LIMIT, RATE_LIMITS, WebhookValidator

__all__ = [
    "PROVIDER_IP_RANGES",
    "client_ip",
    "ip_in_ranges",
    "sanitize_payload",
    "ValidationResult",
    "WebhookRequest",
    "zoom_signature",
    "zoom_url_validation_token",
    "DEFAULT_RATE_LIMIT",
    "RATE_LIMITS",
    "WebhookValidator",
]
