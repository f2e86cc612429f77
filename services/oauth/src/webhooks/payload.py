"""Payload limits, provider structure checks and sanitization."""

import json
import re
from typing import Any

from ..schemas import Provider
from .request import ValidationResult

DANGEROUS_KEYS = frozenset({
    "script",
    "javascript",
    "eval",
    "function",
    "__proto__",
    "constructor",
    "prototype",
})

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JAVASCRIPT_URI = re.compile(r"javascript:", re.IGNORECASE)
_HTML_DATA_URI = re.compile(r"data:text/html", re.IGNORECASE)

MICROSOFT_CHANGE_TYPES = ("created", "updated", "deleted")
MICROSOFT_REQUIRED_FIELDS = ("subscriptionId", "changeType", "resource")


def nesting_depth(value: Any, limit: int, current: int = 0) -> int:
    """Depth of nested objects/arrays. Stops descending once past ``limit``."""
    if not isinstance(value, (dict, list)):
        return current
    if current > limit:
        return current

    children = value.values() if isinstance(value, dict) else value
    deepest = current
    for child in children:
        deepest = max(deepest, nesting_depth(child, limit, current + 1))
        if deepest > limit:
            break
    return deepest


def parse_body(body: bytes) -> Any:
    """JSON-decode a raw body. An empty body decodes to None."""
    if not body or not body.strip():
        return None
    return json.loads(body)


def _check_microsoft(payload: Any, max_events: int) -> ValidationResult:
    if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
        return ValidationResult.reject("Invalid Microsoft Graph payload structure")

    notifications = payload["value"]
    if len(notifications) > max_events:
        return ValidationResult.reject(
            "Too many events in payload", count=len(notifications), limit=max_events
        )

    for notification in notifications:
        if not isinstance(notification, dict):
            return ValidationResult.reject("Invalid Microsoft Graph notification")
        if not all(notification.get(name) for name in MICROSOFT_REQUIRED_FIELDS):
            return ValidationResult.reject("Missing required notification fields")
        if notification["changeType"] not in MICROSOFT_CHANGE_TYPES:
            return ValidationResult.reject("Invalid change type")
    return ValidationResult.ok()


def _check_zoom(payload: Any) -> ValidationResult:
    if not isinstance(payload, dict) or not payload.get("event"):
        return ValidationResult.reject("Invalid Zoom payload structure")
    if not payload.get("payload"):
        return ValidationResult.reject("Missing required field: payload")
    return ValidationResult.ok()


def _check_caldav(payload: Any) -> ValidationResult:
    if not isinstance(payload, dict):
        return ValidationResult.reject("Invalid CalDAV payload structure")
    return ValidationResult.ok()


def check_payload(
    provider: Provider,
    body: bytes,
    max_bytes: int,
    max_depth: int,
    max_events: int,
) -> ValidationResult:
    """Size, JSON, depth and per-provider structure. Parsed payload on success."""
    if len(body) > max_bytes:
        return ValidationResult.reject(
            "Payload size exceeds limit", size=len(body), limit=max_bytes
        )

    try:
        payload = parse_body(body)
    except (ValueError, UnicodeDecodeError):
        return ValidationResult.reject("Payload is not valid JSON")

    depth = nesting_depth(payload, max_depth)
    if depth > max_depth:
        return ValidationResult.reject(
            "Payload nesting depth exceeds limit", depth=depth, limit=max_depth
        )

    # Google notifications carry everything in headers
    if provider == Provider.MICROSOFT:
        result = _check_microsoft(payload, max_events)
    elif provider == Provider.ZOOM:
        result = _check_zoom(payload)
    elif provider == Provider.CALDAV:
        result = _check_caldav(payload)
    else:
        result = ValidationResult.ok()

    if result.valid:
        result.payload = payload
    return result


def _sanitize_string(value: str) -> str:
    value = _SCRIPT_TAG.sub("", value)
    value = _JAVASCRIPT_URI.sub("", value)
    return _HTML_DATA_URI.sub("", value)


def sanitize_payload(value: Any) -> Any:
    """Copy of ``value`` with dangerous keys dropped and script content stripped."""
    if isinstance(value, dict):
        return {
            key: sanitize_payload(item)
            for key, item in value.items()
            if not (isinstance(key, str) and key.lower() in DANGEROUS_KEYS)
        }
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    if isinstance(value, str):
        return _sanitize_string(value)
    return value
