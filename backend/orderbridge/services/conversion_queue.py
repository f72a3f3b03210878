"""Conversion queue.

WHAT:
    Durable, database-backed delivery queue for Market!N conversions:
    idempotent enqueue, atomic claim, retry with a fixed backoff schedule,
    dead-lettering with an audit record and an operator alert.

WHY:
    A paid order must eventually reach Market!N even when the API is down
    for hours, and must never be delivered twice by concurrent processors
    (the inline webhook trigger and the scheduled worker run side by side).

STATE MACHINE:
    pending --claim--> processing --ok--> completed            (terminal)
                                  --retryable, attempts left--> failed
                                  --fatal or exhausted--------> dead (terminal)
    failed  --claim--> processing ...
    dead    --retry_dead_job--> pending (attempts reset)

    pending and failed are both "awaiting pickup"; a job is due when
    next_retry_at <= now and attempts < max_attempts.

CONCURRENCY:
    Jobs are claimed one at a time with a conditional UPDATE
    (status still awaiting pickup, still due) and processed only when exactly
    one row changed. Every state transition is committed per job, so an
    exception aborting a batch leaves earlier jobs with their outcomes.

REFERENCES:
    - orderbridge/services/marketin_client.py (delivery + error contract)
    - orderbridge/services/alert_service.py (dead-letter alerts)
    - orderbridge/workers/conversion_worker.py (scheduled processing)
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderbridge.models import (
    AWAITING_PICKUP_STATUSES,
    TERMINAL_STATUSES,
    ConversionFailure,
    ConversionJob,
    ConversionStatusEnum,
    SiteInstallation,
    utcnow,
)
from orderbridge.security import decrypt_secret
from orderbridge.services.alert_service import AlertService
from orderbridge.services.marketin_client import MarketinClient, MarketinConfig
from orderbridge.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

# Retry delays in seconds: 30s, 2m, 8m, 32m, 2h
BACKOFF_DELAYS = (30, 120, 480, 1920, 7200)
MAX_ATTEMPTS = 5
DEFAULT_BATCH_SIZE = 10
FAILURE_WINDOW = timedelta(hours=24)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class EnqueueResult:
    job_id: str
    status: str
    message: str  # Queued | Already queued | Already processed
    id: Optional[int] = None

    @property
    def created(self) -> bool:
        return self.message == "Queued"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "jobId": self.job_id, "status": self.status, "message": self.message}


@dataclass
class ProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "succeeded": self.succeeded, "failed": self.failed, "dead": self.dead}


@dataclass
class QueueStats:
    queue: Dict[str, int] = field(default_factory=dict)
    failures_24h: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"queue": dict(self.queue), "failures24h": self.failures_24h}


@dataclass
class RetryResult:
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


@dataclass
class ErrorClassification:
    retryable: bool
    category: str  # network | server | rate_limited | timeout | client | unclassified


# =============================================================================
# ERROR CLASSIFICATION / BACKOFF
# =============================================================================

def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by a delivery error, if any."""
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _is_transport_error(error: BaseException) -> bool:
    # MarketinAPIError marks network failures with TIMEOUT / NETWORK_ERROR
    return isinstance(error, httpx.RequestError) or getattr(error, "code", None) in ("TIMEOUT", "NETWORK_ERROR")


def classify_error(error: BaseException) -> ErrorClassification:
    """Retryable vs fatal.

        no HTTP status (network, timeout, DNS)   retryable
        5xx                                      retryable
        429, 408                                 retryable
        other 4xx                                fatal
        anything else                            retryable (unclassified)
    """
    status = error_status(error)
    if status is None:
        if _is_transport_error(error):
            return ErrorClassification(True, "network")
        return ErrorClassification(True, "unclassified")
    if status >= 500:
        return ErrorClassification(True, "server")
    if status == 429:
        return ErrorClassification(True, "rate_limited")
    if status == 408:
        return ErrorClassification(True, "timeout")
    if 400 <= status < 500:
        return ErrorClassification(False, "client")
    return ErrorClassification(True, "unclassified")


def is_retryable_error(error: BaseException) -> bool:
    return classify_error(error).retryable


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt after `attempts` failed attempts (clamped)."""
    index = min(max(attempts - 1, 0), len(BACKOFF_DELAYS) - 1)
    return timedelta(seconds=BACKOFF_DELAYS[index])


def error_code_for(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    status = error_status(error)
    return f"HTTP_{status}" if status else "UNKNOWN"


def error_message_for(error: BaseException) -> str:
    body = getattr(error, "response_body", None)
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return str(error) or error.__class__.__name__


def _serialize_body(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, default=str)
    except (TypeError, ValueError):
        return str(body)


# =============================================================================
# ENQUEUE
# =============================================================================

def build_job_id(payload: Dict[str, Any]) -> str:
    """Idempotency key: conv_<brandId>_<externalOrderId>, random when either is missing."""
    brand_id = payload.get("brandId")
    external_order_id = payload.get("externalOrderId")
    if brand_id not in (None, "") and external_order_id not in (None, ""):
        return f"conv_{brand_id}_{external_order_id}"
    return f"conv_{uuid.uuid4()}"


def _existing_result(job: ConversionJob) -> EnqueueResult:
    message = "Already processed" if job.status in TERMINAL_STATUSES else "Already queued"
    return EnqueueResult(job_id=job.job_id, status=job.status, message=message, id=job.id)


def enqueue_conversion(
    db: Session,
    payload: Dict[str, Any],
    order_webhook_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EnqueueResult:
    """Insert a pending job, or report the existing job with the same job id.

    Existing jobs are never modified. Concurrent inserts of the same job id
    are resolved by the unique constraint.
    """
    job_id = build_job_id(payload)

    existing = db.query(ConversionJob).filter(ConversionJob.job_id == job_id).first()
    if existing:
        logger.info(f"[CONVERSION_QUEUE] Job {job_id} already exists ({existing.status})")
        return _existing_result(existing)

    now = now or utcnow()
    job = ConversionJob(
        job_id=job_id,
        status=ConversionStatusEnum.pending.value,
        attempts=0,
        max_attempts=MAX_ATTEMPTS,
        next_retry_at=now,
        payload=payload,
        order_webhook_id=order_webhook_id,
        created_at=now,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(ConversionJob).filter(ConversionJob.job_id == job_id).first()
        if existing is None:
            raise
        logger.info(f"[CONVERSION_QUEUE] Job {job_id} enqueued concurrently ({existing.status})")
        return _existing_result(existing)

    logger.info(
        f"[CONVERSION_QUEUE] Queued {job_id}",
        extra={"job_id": job_id, "order_webhook_id": order_webhook_id},
    )
    return EnqueueResult(job_id=job_id, status=job.status, message="Queued", id=job.id)


# =============================================================================
# PROCESSING
# =============================================================================

def _due_filter(now: datetime):
    return (
        ConversionJob.status.in_(AWAITING_PICKUP_STATUSES),
        ConversionJob.next_retry_at <= now,
        ConversionJob.attempts < ConversionJob.max_attempts,
    )


def claim_job(db: Session, job_pk: int, now: datetime) -> bool:
    """Atomically move a due job to processing. False if another processor got it first."""
    claimed = (
        db.query(ConversionJob)
        .filter(ConversionJob.id == job_pk, *_due_filter(now))
        .update(
            {
                ConversionJob.status: ConversionStatusEnum.processing.value,
                ConversionJob.last_attempted_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def brand_api_key(db: Session, payload: Dict[str, Any]) -> Optional[str]:
    """Per-brand Market!N key stored for the payload's site, if any."""
    site_id = payload.get("siteId")
    if not site_id:
        return None

    installation = (
        db.query(SiteInstallation)
        .filter(SiteInstallation.site_id == str(site_id), SiteInstallation.is_active.is_(True))
        .first()
    )
    if not installation or not installation.marketin_api_key_enc:
        return None

    try:
        return decrypt_secret(installation.marketin_api_key_enc, context=f"site {site_id}")
    except (ValueError, RuntimeError) as e:
        logger.error(f"[CONVERSION_QUEUE] Could not decrypt API key for site {site_id}, using default key: {e}")
        return None


async def _alert_dead_job(
    db: Session,
    alert_service: AlertService,
    job: ConversionJob,
    failure: ConversionFailure,
    error_message: str,
) -> None:
    try:
        result = await alert_service.notify_permanent_failure(
            job_id=job.job_id,
            payload=job.payload,
            error=error_message,
            attempts=job.attempts,
        )
    except Exception as e:
        logger.exception(f"[CONVERSION_QUEUE] Alert for {job.job_id} failed: {e}")
        return

    if result.sent:
        failure.alert_sent = True
        db.commit()


async def _deliver(
    db: Session,
    job: ConversionJob,
    client: MarketinClient,
    alert_service: AlertService,
    now: datetime,
    results: ProcessResult,
) -> None:
    payload = job.payload if isinstance(job.payload, dict) else json.loads(job.payload)

    try:
        await client.send(payload, api_key=brand_api_key(db, payload))
    except Exception as error:
        attempts = job.attempts + 1
        classification = classify_error(error)
        message = error_message_for(error)
        code = error_code_for(error)
        status_code = error_status(error)

        if classification.category == "unclassified":
            logger.warning(
                f"[CONVERSION_QUEUE] unclassified error, retrying: {job.job_id} "
                f"({error.__class__.__name__}: {message})"
            )

        if classification.retryable and attempts < job.max_attempts:
            job.status = ConversionStatusEnum.failed.value
            job.attempts = attempts
            job.next_retry_at = now + backoff_delay(attempts)
            job.last_error = message
            job.error_code = code
            db.commit()
            results.failed += 1
            logger.warning(
                f"[CONVERSION_QUEUE] {job.job_id} failed (attempt {attempts}/{job.max_attempts}, "
                f"{code}), retry at {job.next_retry_at.isoformat()}"
            )
            return

        job.status = ConversionStatusEnum.dead.value
        job.attempts = attempts
        job.last_error = message
        job.error_code = code
        failure = ConversionFailure(
            queue_id=job.id,
            job_id=job.job_id,
            payload=job.payload,
            error_message=message,
            error_code=code,
            http_status=status_code,
            response_body=_serialize_body(getattr(error, "response_body", None)),
            alert_sent=False,
            created_at=now,
        )
        db.add(failure)
        db.commit()
        results.dead += 1

        logger.error(
            f"[CONVERSION_QUEUE] {job.job_id} is dead after {attempts} attempt(s) ({code}): {message}",
            extra={"job_id": job.job_id, "http_status": status_code, "retryable": classification.retryable},
        )
        capture_message(
            f"Conversion {job.job_id} dead-lettered",
            level="error",
            extra={"error_code": code, "http_status": status_code, "attempts": attempts},
        )
        await _alert_dead_job(db, alert_service, job, failure, message)
        return

    job.status = ConversionStatusEnum.completed.value
    job.attempts = job.attempts + 1
    job.completed_at = utcnow()
    db.commit()
    results.succeeded += 1
    logger.info(f"[CONVERSION_QUEUE] {job.job_id} delivered (attempt {job.attempts})")


async def process_queue(
    db: Session,
    batch_size: int = DEFAULT_BATCH_SIZE,
    client: Optional[MarketinClient] = None,
    alert_service: Optional[AlertService] = None,
    now: Optional[datetime] = None,
) -> ProcessResult:
    """Deliver up to `batch_size` due jobs, oldest due first.

    Delivery errors never escape: each becomes a failed/dead transition.
    Jobs are processed sequentially.

    Args:
        db: Database session
        batch_size: Maximum number of jobs to pick up
        client: Market!N client (defaults to one built from settings)
        alert_service: Dead-letter alerting (defaults to one built from settings)
        now: Clock override (tests)
    """
    now = now or utcnow()
    client = client or MarketinClient(MarketinConfig.from_settings())
    alert_service = alert_service or AlertService.from_settings()

    candidates = (
        db.query(ConversionJob.id)
        .filter(*_due_filter(now))
        .order_by(ConversionJob.next_retry_at.asc(), ConversionJob.id.asc())
        .limit(batch_size)
        .all()
    )
    # Release the read transaction before claiming
    db.commit()

    results = ProcessResult()
    for (job_pk,) in candidates:
        if not claim_job(db, job_pk, now):
            logger.debug(f"[CONVERSION_QUEUE] Job #{job_pk} claimed by another processor, skipping")
            continue

        job = db.get(ConversionJob, job_pk)
        results.processed += 1
        try:
            await _deliver(db, job, client, alert_service, now, results)
        except Exception as e:
            capture_exception(e, extra={"job_id": job.job_id}, tags={"component": "conversion_queue"})
            raise

    if results.processed:
        logger.info(f"[CONVERSION_QUEUE] Batch done: {results.to_dict()}")
    return results


# =============================================================================
# MONITORING / MANUAL ACTIONS
# =============================================================================

def get_queue_stats(db: Session, now: Optional[datetime] = None) -> QueueStats:
    """Job counts per status and dead-letter records created in the last 24h."""
    now = now or utcnow()
    rows = (
        db.query(ConversionJob.status, func.count(ConversionJob.id))
        .group_by(ConversionJob.status)
        .all()
    )
    failures_24h = (
        db.query(func.count(ConversionFailure.id))
        .filter(ConversionFailure.created_at > now - FAILURE_WINDOW)
        .scalar()
    )
    return QueueStats(queue={status: int(count) for status, count in rows}, failures_24h=int(failures_24h or 0))


def retry_dead_job(db: Session, job_id: str, now: Optional[datetime] = None) -> RetryResult:
    """Requeue a dead job: pending, attempts reset, due now, errors cleared.

    Only dead jobs qualify; anything else is left untouched.
    """
    now = now or utcnow()
    updated = (
        db.query(ConversionJob)
        .filter(ConversionJob.job_id == job_id, ConversionJob.status == ConversionStatusEnum.dead.value)
        .update(
            {
                ConversionJob.status: ConversionStatusEnum.pending.value,
                ConversionJob.attempts: 0,
                ConversionJob.next_retry_at: now,
                ConversionJob.last_error: None,
                ConversionJob.error_code: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    if not updated:
        return RetryResult(success=False, message="Job not found or not dead")

    logger.info(f"[CONVERSION_QUEUE] Dead job {job_id} requeued")
    return RetryResult(success=True, message="Job requeued")
