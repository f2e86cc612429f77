"""Security audit trail for token lifecycle and webhook validation events."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import SecurityAuditLog, WebhookSecurityViolation, WebhookValidationLog
from .schemas import as_utc, utcnow

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = ("authorization", "x-api-key", "cookie", "x-goog-channel-token")


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Copy of ``headers`` with credentials replaced."""
    redacted = {}
    for name, value in headers.items():
        redacted[name] = "[REDACTED]" if name.lower() in SENSITIVE_HEADERS else value
    return redacted


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class SecurityAuditLogger:
    """Appends audit records. Write failures are logged, never raised."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: str = "oauth_token_security",
    ):
        self._session_factory = session_factory
        self.source = source

    async def _insert(self, record) -> None:
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to write {record.__tablename__} record: {e}")

    async def log_token_event(
        self,
        integration_id: Optional[str],
        event_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.debug(f"Token event {event_type} for integration {integration_id}")
        await self._insert(SecurityAuditLog(
            integration_id=integration_id,
            event_type=event_type,
            event_metadata=_json_safe(metadata or {}),
            source=self.source,
        ))

    async def log_violation(
        self,
        provider: str,
        violation_type: str,
        client_ip: Optional[str],
        details: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        request_url: Optional[str] = None,
        request_method: Optional[str] = None,
    ) -> None:
        headers = headers or {}
        logger.warning(
            f"Webhook rejected: provider={provider} ip={client_ip} "
            f"violation={violation_type} reason={details.get('reason')}"
        )
        await self._insert(WebhookSecurityViolation(
            provider=provider,
            violation_type=violation_type,
            client_ip=client_ip,
            user_agent=headers.get("user-agent", "unknown"),
            request_url=request_url,
            request_method=request_method,
            headers=redact_headers(headers),
            details=_json_safe(details),
        ))

    async def log_validation(
        self,
        provider: str,
        status: str,
        client_ip: Optional[str],
        request_url: Optional[str] = None,
    ) -> None:
        logger.info(f"Webhook accepted: provider={provider} ip={client_ip}")
        await self._insert(WebhookValidationLog(
            provider=provider,
            status=status,
            client_ip=client_ip,
            request_url=request_url,
        ))

    async def token_events(self, integration_id: str) -> list[SecurityAuditLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SecurityAuditLog)
                .where(SecurityAuditLog.integration_id == integration_id)
                .order_by(SecurityAuditLog.id)
            )
            return list(result.scalars().all())

    async def security_metrics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Webhook violations over the last 24 hours."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSecurityViolation).where(
                    WebhookSecurityViolation.timestamp >= now - timedelta(hours=24)
                )
            )
            violations = result.scalars().all()

        metrics = {
            "total_violations": len(violations),
            "by_provider": {},
            "by_type": {},
            "violations_last_hour": 0,
        }
        one_hour_ago = now - timedelta(hours=1)
        for violation in violations:
            metrics["by_provider"][violation.provider] = metrics["by_provider"].get(violation.provider, 0) + 1
            metrics["by_type"][violation.violation_type] = metrics["by_type"].get(violation.violation_type, 0) + 1
            if as_utc(violation.timestamp) > one_hour_ago:
                metrics["violations_last_hour"] += 1
        return metrics
