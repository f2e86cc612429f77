"""Transport-neutral view of an inbound webhook and the validator's verdict."""

from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Request

from ..errors import ErrorKind
from ..schemas import Provider


@dataclass
class WebhookRequest:
    """One inbound webhook delivery.

    Header names are lower-cased. ``body`` is the raw request body; signature
    checks run against these exact bytes.
    """
    provider: Provider
    method: str = "POST"
    url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    remote_addr: Optional[str] = None

    def __post_init__(self):
        self.headers = {name.lower(): value for name, value in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @classmethod
    async def from_request(cls, request: Request, provider: Provider) -> "WebhookRequest":
        return cls(
            provider=provider,
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            query=dict(request.query_params),
            body=await request.body(),
            remote_addr=request.client.host if request.client else None,
        )


@dataclass
class ValidationResult:
    """Outcome of a validation stage or of the whole pipeline."""
    valid: bool
    reason: Optional[str] = None
    kind: Optional[ErrorKind] = None
    violation: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    payload: Any = None
    client_ip: Optional[str] = None
    # Subscription handshakes answered by the route instead of processed
    validation_token: Optional[str] = None
    challenge: Optional[dict[str, str]] = None

    @property
    def is_handshake(self) -> bool:
        return self.validation_token is not None or self.challenge is not None

    @classmethod
    def ok(cls, **kwargs) -> "ValidationResult":
        return cls(valid=True, **kwargs)

    @classmethod
    def reject(
        cls,
        reason: str,
        kind: ErrorKind = ErrorKind.WEBHOOK_REJECTED,
        **details: Any,
    ) -> "ValidationResult":
        return cls(valid=False, reason=reason, kind=kind, details=details)
