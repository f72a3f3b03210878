"""Storefront order webhooks.

WHAT:
    Receives order webhooks, resolves affiliate attribution and queues the
    conversion for delivery to Market!N.

WHY:
    - OrderPaid means real revenue: this is what gets an affiliate paid
    - The storefront retries webhooks that do not get a fast 2xx, so delivery
      itself happens after the response (queue + background processing)

WEBHOOKS:
    1. POST /wix/orders/webhook - order events (TRIGGERS CONVERSIONS)
    2. POST /webhooks/order     - legacy intake, stores the payload only
    3. POST /wix/test-webhook   - logs and stores whatever is sent

FLOW (orders/webhook):
    1. Verify signature (RSA public key, HMAC fallback)
    2. Store the raw payload (replay/debug, historic attribution)
    3. Parse, skip non-paid events
    4. Resolve attribution; no affiliate means acknowledge without conversion
    5. Enqueue the conversion (idempotent per brand + order)
    6. Respond, then process a small batch in the background

REFERENCES:
    - orderbridge/services/order_parser.py
    - orderbridge/services/attribution_resolver.py
    - orderbridge/services/conversion_queue.py
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session, sessionmaker

from orderbridge.database import get_db, get_session_factory
from orderbridge.deps import Settings, get_alert_service, get_marketin_client, get_settings
from orderbridge.models import OrderWebhook, utcnow
from orderbridge.security import verify_webhook_signature
from orderbridge.services.alert_service import AlertService
from orderbridge.services.attribution_resolver import resolve_affiliate
from orderbridge.services.conversion_queue import enqueue_conversion, process_queue
from orderbridge.services.marketin_client import MarketinClient
from orderbridge.services.order_intake import build_conversion_payload, is_paid_event, resolve_brand_id
from orderbridge.services.order_parser import parse_order_payload
from orderbridge.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Order Webhooks"])


def parse_body_leniently(raw: bytes) -> Dict[str, Any]:
    """JSON object from the raw body, whatever the declared content type. {} otherwise."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {}
    # Some senders double-encode (a JSON string holding the JSON object)
    if isinstance(parsed, str):
        try:
            parsed = json.loads(parsed)
        except ValueError:
            return {}
    return parsed if isinstance(parsed, dict) else {}


async def process_queue_in_background(
    session_factory: sessionmaker,
    batch_size: int,
    client: MarketinClient,
    alert_service: AlertService,
) -> None:
    """Inline queue run after a webhook; the scheduled worker covers anything left."""
    db = session_factory()
    try:
        results = await process_queue(db, batch_size=batch_size, client=client, alert_service=alert_service)
        logger.info(f"[WIX_WEBHOOK] Inline queue run: {results.to_dict()}")
    except Exception as e:
        logger.exception(f"[WIX_WEBHOOK] Inline queue processing error: {e}")
        capture_exception(e, tags={"component": "inline_queue"})
    finally:
        db.close()


@router.post("/wix/orders/webhook")
async def handle_order_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    client: MarketinClient = Depends(get_marketin_client),
    alert_service: AlertService = Depends(get_alert_service),
):
    """Handle an order webhook - THIS TRIGGERS CONVERSIONS.

    Responses:
        401 invalid signature
        200 {ok, skipped, reason: not_paid_event}
        200 {ok, skipped, reason: no_affiliate, orderId}
        200 {ok, orderId, queued, affiliateId, jobId}
        500 {error: "Webhook processing failed"}
    """
    raw_body = await request.body()

    if not verify_webhook_signature(
        raw_body,
        request.headers,
        public_key=settings.WIX_PUBLIC_KEY,
        hmac_secret=settings.webhook_hmac_secret,
        allow_test_bypass=not settings.is_production,
    ):
        logger.warning("[WIX_WEBHOOK] Invalid webhook signature received")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        body = parse_body_leniently(raw_body)

        webhook = OrderWebhook(payload=json.dumps(body), created_at=utcnow())
        db.add(webhook)
        db.commit()

        order = parse_order_payload(body)
        logger.info(
            f"[WIX_WEBHOOK] Parsed order {order.order_id}",
            extra={
                "amount": order.total_amount,
                "currency": order.currency,
                "affiliate_id": order.affiliate_id,
                "products": len(order.products),
                "webhook_id": webhook.id,
            },
        )

        if not is_paid_event(order.event_type):
            logger.info(f"[WIX_WEBHOOK] Skipping non-paid event: {order.event_type}")
            return {"ok": True, "skipped": True, "reason": "not_paid_event"}

        attribution = resolve_affiliate(db, order)
        if attribution is None:
            # Real, paid order: acknowledge but credit nobody
            logger.info(f"[WIX_WEBHOOK] No affiliate found for order {order.order_id}")
            return {"ok": True, "skipped": True, "reason": "no_affiliate", "orderId": order.order_id}

        logger.info(f"[WIX_WEBHOOK] Affiliate resolved: {attribution.to_dict()}")

        brand_id = resolve_brand_id(db, order.site_id, settings.MARKETIN_BRAND_ID)
        payload = build_conversion_payload(order, attribution, brand_id, webhook_id=webhook.id)
        queue_result = enqueue_conversion(db, payload, order_webhook_id=webhook.id)
        logger.info(f"[WIX_WEBHOOK] Conversion enqueued: {queue_result.to_dict()}")

        webhook.processed_at = utcnow()
        db.commit()

        background_tasks.add_task(
            process_queue_in_background,
            session_factory,
            settings.INLINE_BATCH_SIZE,
            client,
            alert_service,
        )

        return {
            "ok": True,
            "orderId": order.order_id,
            "queued": queue_result.status == "pending",
            "affiliateId": attribution.affiliate_id,
            "jobId": queue_result.job_id,
        }

    except Exception as e:
        db.rollback()
        logger.exception(f"[WIX_WEBHOOK] Webhook processing failed: {e}")
        capture_exception(e, tags={"component": "wix_webhook"})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )


@router.post("/webhooks/order")
async def handle_legacy_order_webhook(request: Request, db: Session = Depends(get_db)):
    """Legacy intake: store the payload, nothing else."""
    try:
        body = parse_body_leniently(await request.body())
        db.add(OrderWebhook(payload=json.dumps(body), created_at=utcnow()))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception(f"[WIX_WEBHOOK] Legacy webhook error: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Could not process webhook"},
        )
    return {"ok": True}


@router.post("/wix/test-webhook", response_class=PlainTextResponse)
async def handle_test_webhook(request: Request, db: Session = Depends(get_db)):
    """Log and store whatever is sent (webhook setup debugging)."""
    raw_body = await request.body()
    body = parse_body_leniently(raw_body)
    headers = dict(request.headers)

    logger.info(f"[WIX_WEBHOOK] Test webhook received: headers={headers} body={body}")

    record = {
        "_test": True,
        "headers": headers,
        "body": body,
        "timestamp": utcnow().isoformat(),
    }
    try:
        db.add(OrderWebhook(payload=json.dumps(record), created_at=utcnow()))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"[WIX_WEBHOOK] Could not store test webhook: {e}")

    return "ok"
