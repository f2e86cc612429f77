"""Database models for integration tokens and security records."""

import uuid

from sqlalchemy import Column, String, DateTime, Text, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base

from .schemas import IntegrationStatus, utcnow

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class UserIntegration(Base):
    """One user's connection to one provider, with its encrypted tokens."""

    __tablename__ = "user_integrations"

    id = Column(String(36), primary_key=True, default=_new_id)

    user_id = Column(String(255), nullable=False, index=True)

    # Integration provider (google, microsoft, zoom, caldav)
    provider = Column(String(50), nullable=False)

    status = Column(String(20), nullable=False, default=IntegrationStatus.CONNECTED.value, index=True)

    # Encrypted token blob; all four are set together or all null
    token_ciphertext = Column(Text, nullable=True)
    token_iv = Column(String(64), nullable=True)
    token_auth_tag = Column(String(64), nullable=True)
    token_version = Column(String(10), nullable=True)

    # Token metadata (not secret)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scope = Column(JSON, nullable=True)

    # Provider-side identity
    provider_user_id = Column(String(255), nullable=True)
    provider_email = Column(String(255), nullable=True)
    provider_name = Column(String(255), nullable=True)

    # Failure tracking
    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # One integration per provider per user
    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_user_provider'),
    )

    @property
    def has_tokens(self) -> bool:
        return bool(self.token_ciphertext and self.token_iv and self.token_auth_tag)


class OAuthState(Base):
    """Temporary storage for OAuth state during authorization flow."""

    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # State token (random string)
    state = Column(String(255), unique=True, nullable=False, index=True)

    user_id = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False)

    # Redirect URL after completion
    redirect_url = Column(Text, nullable=True)

    # States are short-lived
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow)


class WebhookSubscription(Base):
    """Registered push channel (Google) or subscription (Microsoft).

    Only a SHA-256 hash of the shared channel token / client state is kept.
    """

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    external_id = Column(String(255), nullable=False)
    integration_id = Column(String(36), nullable=True, index=True)
    secret_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint('provider', 'external_id', name='uq_webhook_subscription'),
    )


class SecurityAuditLog(Base):
    """Append-only token lifecycle events."""

    __tablename__ = "security_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    event_metadata = Column("metadata", JSON, nullable=True)
    source = Column(String(64), nullable=False, default="oauth_token_security")
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)


class WebhookSecurityViolation(Base):
    """Append-only record of a rejected webhook request."""

    __tablename__ = "webhook_security_violations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    violation_type = Column(String(64), nullable=False)
    client_ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    request_url = Column(Text, nullable=True)
    request_method = Column(String(10), nullable=True)
    headers = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)


class WebhookValidationLog(Base):
    """Append-only record of an accepted webhook request."""

    __tablename__ = "webhook_validation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    client_ip = Column(String(64), nullable=True)
    request_url = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow)
