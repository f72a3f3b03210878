"""Admin and monitoring endpoints.

WHAT: Queue monitoring, manual queue actions, recent webhooks/failures,
      alert checks, order parsing preview and brand configuration
WHY: Operators need to see and unstick conversions without database access

SECURITY: Protected by the X-Admin-Key header (ADMIN_API_KEY)
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from orderbridge.database import get_db
from orderbridge.deps import Settings, get_alert_service, get_marketin_client, get_settings, verify_admin_key
from orderbridge.models import ConversionFailure, ConversionJob, OrderWebhook, SiteInstallation, utcnow
from orderbridge.schemas import (
    BrandConfigRequest,
    BrandConfigResponse,
    ConversionFailureOut,
    ConversionJobOut,
    OrderWebhookOut,
    OrderWebhookPage,
    Pagination,
    WebhookSummary,
)
from orderbridge.security import encrypt_secret
from orderbridge.services.alert_service import AlertService
from orderbridge.services.attribution_resolver import resolve_affiliate
from orderbridge.services.conversion_queue import get_queue_stats, process_queue, retry_dead_job
from orderbridge.services.marketin_client import MarketinClient
from orderbridge.services.order_intake import build_conversion_payload, is_paid_event, resolve_brand_id
from orderbridge.services.order_parser import parse_order_payload

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_key)],
)

MAX_PAGE_SIZE = 100
PLACEHOLDER_BRAND_IDS = {"YOUR_BRAND_ID", "YOUR_BRAND_ID_HERE"}


# =============================================================================
# QUEUE
# =============================================================================

@router.get("/queue/stats")
def queue_stats(db: Session = Depends(get_db)):
    """Job counts per status and dead-letter records in the last 24h."""
    return get_queue_stats(db).to_dict()


@router.post("/queue/process")
async def queue_process(
    batch_size: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    client: MarketinClient = Depends(get_marketin_client),
    alert_service: AlertService = Depends(get_alert_service),
):
    """Process one batch now (same code path as the worker)."""
    results = await process_queue(db, batch_size=batch_size, client=client, alert_service=alert_service)
    logger.info(f"[ADMIN] Manual queue run: {results.to_dict()}")
    return results.to_dict()


@router.post("/queue/retry/{job_id}")
def queue_retry(job_id: str, db: Session = Depends(get_db)):
    """Requeue a dead job. 404 when the job does not exist or is not dead."""
    result = retry_dead_job(db, job_id)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    return result.to_dict()


@router.get("/conversions", response_model=list[ConversionJobOut])
def list_conversions(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    query = db.query(ConversionJob)
    if status_filter:
        query = query.filter(ConversionJob.status == status_filter)
    return query.order_by(ConversionJob.created_at.desc(), ConversionJob.id.desc()).limit(limit).all()


@router.get("/failures", response_model=list[ConversionFailureOut])
def list_failures(limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE), db: Session = Depends(get_db)):
    return (
        db.query(ConversionFailure)
        .order_by(ConversionFailure.created_at.desc(), ConversionFailure.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# WEBHOOKS
# =============================================================================

def _load_payload(raw: str):
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def _summarize(payload) -> WebhookSummary:
    if not isinstance(payload, dict):
        return WebhookSummary()
    is_test = bool(payload.get("_test"))
    order = parse_order_payload(payload.get("body") if is_test else payload)
    return WebhookSummary(
        event_type=payload.get("eventType") or payload.get("event_type") or (None if is_test else order.event_type),
        order_id=order.order_id,
        is_test=is_test,
    )


def _webhook_out(webhook: OrderWebhook) -> OrderWebhookOut:
    payload = _load_payload(webhook.payload)
    return OrderWebhookOut(
        id=webhook.id,
        created_at=webhook.created_at,
        processed_at=webhook.processed_at,
        summary=_summarize(payload),
        payload=payload,
    )


@router.get("/webhooks/recent", response_model=OrderWebhookPage)
def recent_webhooks(
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    limit = min(limit, MAX_PAGE_SIZE)
    total = db.query(OrderWebhook).count()
    rows = (
        db.query(OrderWebhook)
        .order_by(OrderWebhook.created_at.desc(), OrderWebhook.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return OrderWebhookPage(
        items=[_webhook_out(row) for row in rows],
        pagination=Pagination(limit=limit, offset=offset, total=total, has_more=offset + len(rows) < total),
    )


@router.get("/webhooks/{webhook_id}", response_model=OrderWebhookOut)
def webhook_detail(webhook_id: int, db: Session = Depends(get_db)):
    webhook = db.get(OrderWebhook, webhook_id)
    if webhook is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return _webhook_out(webhook)


# =============================================================================
# ALERTS
# =============================================================================

@router.post("/alerts/test")
async def alerts_test(alert_service: AlertService = Depends(get_alert_service)):
    return await alert_service.test_configuration()


@router.post("/alerts/summary")
async def alerts_summary(
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
):
    """Send the periodic queue summary now."""
    stats = get_queue_stats(db)
    result = await alert_service.notify_periodic_summary(stats)
    return {"sent": result.sent, "reason": result.reason, "channels": result.channels, "stats": stats.to_dict()}


# =============================================================================
# DEBUG
# =============================================================================

@router.post("/orders/parse")
def parse_order(
    body: dict = Body(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Run the parser and the attribution resolver on a payload, without enqueueing."""
    order = parse_order_payload(body)
    attribution = resolve_affiliate(db, order)
    conversion = None
    if attribution:
        brand_id = resolve_brand_id(db, order.site_id, settings.MARKETIN_BRAND_ID)
        conversion = build_conversion_payload(order, attribution, brand_id)
    return {
        "order": order.to_dict(),
        "isPaidEvent": is_paid_event(order.event_type),
        "attribution": attribution.to_dict() if attribution else None,
        "conversionPayload": conversion,
    }


# =============================================================================
# BRAND CONFIGURATION
# =============================================================================

@router.put("/sites/{site_id}/brand", response_model=BrandConfigResponse)
async def configure_brand(
    site_id: str,
    payload: BrandConfigRequest,
    db: Session = Depends(get_db),
    client: MarketinClient = Depends(get_marketin_client),
):
    """Link a site to a Market!N brand, optionally with the brand's own API key.

    The key is checked against Market!N first: a definite rejection is a 400,
    an unreachable API still saves it.
    """
    brand_id = payload.brand_id.strip()
    if brand_id.upper() in PLACEHOLDER_BRAND_IDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Please enter your actual Market!N Brand ID",
        )

    api_key = (payload.marketin_api_key or "").strip() or None
    validated: Optional[bool] = None
    if api_key:
        validation = await client.validate_api_key(api_key)
        if validation.valid is False:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=validation.message)
        validated = validation.valid

    installation = db.query(SiteInstallation).filter(SiteInstallation.site_id == site_id).first()
    if installation is None:
        installation = SiteInstallation(site_id=site_id, is_active=True, created_at=utcnow())
        db.add(installation)

    installation.brand_id = brand_id
    installation.brand_name = payload.brand_name
    installation.brand_configured_at = utcnow()
    if payload.instance_id:
        installation.instance_id = payload.instance_id
    if api_key:
        installation.marketin_api_key_enc = encrypt_secret(api_key, context=f"site {site_id}")
    db.commit()

    logger.info(f"[ADMIN] Brand {brand_id} configured for site {site_id} (api key stored: {bool(api_key)})")
    return BrandConfigResponse(
        site_id=site_id,
        brand_id=brand_id,
        brand_name=installation.brand_name,
        api_key_stored=bool(installation.marketin_api_key_enc),
        api_key_validated=validated,
    )
