"""Order intake helpers shared by the webhook route and the admin debug surface.

WHAT:
    - Paid-event detection
    - Brand resolution for a storefront site
    - Conversion payload construction (the shape Market!N receives)
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from orderbridge.models import SiteInstallation
from orderbridge.services.attribution_resolver import AttributionResult
from orderbridge.services.order_parser import CanonicalOrder

logger = logging.getLogger(__name__)

PAID_EVENT_MARKERS = ("OrderPaid", "order.paid", "order/paid", "PAID")


def is_paid_event(event_type: Optional[str]) -> bool:
    """True when the event type names a paid order (case-insensitive substring)."""
    if not event_type:
        return False
    lowered = event_type.lower()
    return any(marker.lower() in lowered for marker in PAID_EVENT_MARKERS)


def resolve_brand_id(db: Session, site_id: Optional[str], default_brand_id: Optional[str]) -> Optional[str]:
    """Brand of the site's active installation, else the configured default, else the site id."""
    if site_id:
        installation = (
            db.query(SiteInstallation)
            .filter(SiteInstallation.site_id == site_id, SiteInstallation.is_active.is_(True))
            .first()
        )
        if installation and installation.brand_id:
            return installation.brand_id
    return default_brand_id or site_id


def build_conversion_payload(
    order: CanonicalOrder,
    attribution: AttributionResult,
    brand_id: Optional[str],
    webhook_id: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "brandId": brand_id,
        "siteId": order.site_id,
        "campaignId": attribution.campaign_id,
        "affiliateId": attribution.affiliate_id,
        "externalOrderId": order.order_id,
        "amount": order.total_amount,
        "currency": order.currency,
        "customerEmail": order.customer_email,
        "customerName": order.customer_name,
        "sessionId": order.session_id,
        "products": [product.to_payload() for product in order.products],
        "metadata": {
            "orderNumber": order.order_number,
            "eventType": order.event_type,
            "attributionSource": attribution.source,
            "webhookId": webhook_id,
        },
    }
