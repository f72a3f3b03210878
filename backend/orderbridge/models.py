"""SQLAlchemy ORM models and enums.

This module defines the persisted state of the conversion delivery pipeline:
the durable conversion queue and its append-only failure log, visitor sessions
used for attribution, raw order webhooks, and site installations that map a
storefront site to its Market!N brand.

All timestamps are stored as naive UTC.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention for every table)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class ConversionStatusEnum(str, enum.Enum):
    """Lifecycle of a conversion job.

    pending and failed are both "awaiting pickup"; failed only signals that at
    least one delivery attempt already happened. completed and dead are terminal.
    """
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    dead = "dead"


AWAITING_PICKUP_STATUSES = (ConversionStatusEnum.pending.value, ConversionStatusEnum.failed.value)
TERMINAL_STATUSES = (ConversionStatusEnum.completed.value, ConversionStatusEnum.dead.value)


# Conversion queue ----------------------------------------------

class OrderWebhook(Base):
    """Raw order webhook exactly as received (serialized JSON text).

    WHAT: Stored before any parsing so webhooks can be replayed and debugged
    WHY: The attribution resolver's historic fallback searches this text
    """
    __tablename__ = "order_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payload = Column(Text, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    def __str__(self):
        return f"OrderWebhook #{self.id}"


class ConversionJob(Base):
    """One conversion to deliver to Market!N.

    `job_id` is the idempotency key: `conv_<brandId>_<externalOrderId>` when both
    are known, otherwise random. The unique constraint is what makes enqueue
    idempotent under concurrent webhook deliveries.
    """
    __tablename__ = "conversion_queue"
    __table_args__ = (
        # Worker polling: due jobs by status ordered by next_retry_at
        Index("ix_conversion_queue_status_next_retry", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, unique=True, index=True)
    status = Column(String, nullable=False, default=ConversionStatusEnum.pending.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(DateTime, nullable=True)
    last_attempted_at = Column(DateTime, nullable=True)
    payload = Column(JSON, nullable=False)

    # Diagnostics (cleared on manual requeue)
    last_error = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)

    order_webhook_id = Column(Integer, ForeignKey("order_webhooks.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    order_webhook = relationship("OrderWebhook")
    failures = relationship("ConversionFailure", back_populates="job", passive_deletes=True)

    def __str__(self):
        return f"{self.job_id} ({self.status})"


class ConversionFailure(Base):
    """Append-only audit row written once when a job is dead-lettered.

    `queue_id` is nullable so the record survives deletion of the job row.
    """
    __tablename__ = "conversion_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_id = Column(Integer, ForeignKey("conversion_queue.id", ondelete="SET NULL"), nullable=True)
    job_id = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String, nullable=True)
    http_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    alert_sent = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    job = relationship("ConversionJob", back_populates="failures")

    def __str__(self):
        return f"Failure {self.job_id} ({self.error_code})"


# Attribution ---------------------------------------------------

class VisitorSession(Base):
    """Visitor browsing context captured by the tracking SDK.

    Carries the affiliate/campaign seen at landing time. Sessions are never
    deleted; lookups filter out rows whose `expires_at` has passed.
    """
    __tablename__ = "visitor_sessions"
    __table_args__ = (
        Index("ix_visitor_sessions_site_visitor_created", "site_id", "visitor_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, unique=True, index=True)
    site_id = Column(String, nullable=True, index=True)
    visitor_id = Column(String, nullable=True, index=True)  # fingerprint or cookie-based id

    affiliate_id = Column(String, nullable=True, index=True)
    campaign_id = Column(String, nullable=True, index=True)
    product_id = Column(String, nullable=True)

    landing_url = Column(String(2048), nullable=True)
    referrer_url = Column(String(2048), nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)

    ip_address = Column(String, nullable=True)
    user_agent = Column(String(1024), nullable=True)
    country = Column(String, nullable=True)
    device_type = Column(String, nullable=True)  # desktop, mobile, tablet

    # Identity linked on /visitor/identify: email, phone, customerId, orderId
    # ("metadata" is reserved on declarative classes)
    identity = Column("metadata", JSON, nullable=True)

    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"Session {self.session_id} (affiliate={self.affiliate_id})"


class SiteInstallation(Base):
    """Storefront site linked to a Market!N brand.

    Only the fields conversion delivery needs; the OAuth tokens of the
    installation flow are managed elsewhere.
    """
    __tablename__ = "site_installations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String, nullable=False, unique=True, index=True)
    instance_id = Column(String, nullable=True)
    brand_id = Column(String, nullable=True)
    brand_name = Column(String, nullable=True)
    brand_configured_at = Column(DateTime, nullable=True)
    # Fernet ciphertext, see orderbridge.security.encrypt_secret
    marketin_api_key_enc = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return f"{self.site_id} -> brand {self.brand_id}"
