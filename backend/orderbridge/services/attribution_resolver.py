"""Attribution resolver.

WHAT:
    Decides which affiliate/campaign gets credit for an order, walking a
    strict waterfall and stopping at the first hit:

        1. order_direct    affiliate carried by the order payload itself
        2. session         exact session id match
           visitor_id      most recent session of the visitor (optionally same site)
           site_recent     most recent session on the site within 24h
        3. historic_order  an earlier stored webhook for the same customer email
                           that itself resolves an affiliate

    No hit means no attribution: the order is acknowledged but no conversion
    is sent, since crediting nobody beats crediting the wrong affiliate.

WHY:
    Attribution data arrives through imperfect channels (cookies lost at
    checkout, storefront limitations), so higher-confidence signals must
    always win over weaker ones.

REFERENCES:
    - orderbridge/services/session_store.py
    - orderbridge/services/order_parser.py
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderbridge.models import OrderWebhook, utcnow
from orderbridge.services.order_parser import CanonicalOrder, parse_order_payload
from orderbridge.services.session_store import find_affiliate_by_visitor

logger = logging.getLogger(__name__)

HISTORIC_LOOKUP_LIMIT = 10


@dataclass
class AttributionResult:
    affiliate_id: str
    campaign_id: Optional[str]
    source: str  # order_direct | session | visitor_id | site_recent | historic_order

    def to_dict(self) -> dict:
        return {"affiliateId": self.affiliate_id, "campaignId": self.campaign_id, "source": self.source}


def search_recent_orders_containing(db: Session, substring: str, limit: int = HISTORIC_LOOKUP_LIMIT) -> List[OrderWebhook]:
    """Stored webhooks whose raw payload text contains `substring`, newest first."""
    return (
        db.query(OrderWebhook)
        .filter(OrderWebhook.payload.contains(substring, autoescape=True))
        .order_by(OrderWebhook.created_at.desc(), OrderWebhook.id.desc())
        .limit(limit)
        .all()
    )


def _resolve_from_history(db: Session, order: CanonicalOrder) -> Optional[AttributionResult]:
    try:
        rows = search_recent_orders_containing(db, order.customer_email)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("[ATTRIBUTION] Historic order lookup failed: %s", e)
        return None

    for row in rows:
        try:
            historic = parse_order_payload(json.loads(row.payload))
        except (TypeError, ValueError):
            continue
        if historic.affiliate_id:
            return AttributionResult(
                affiliate_id=historic.affiliate_id,
                campaign_id=historic.campaign_id or order.campaign_id,
                source="historic_order",
            )
    return None


def resolve_affiliate(db: Session, order: CanonicalOrder, now: Optional[datetime] = None) -> Optional[AttributionResult]:
    """Resolve attribution for `order`, or None when no source yields an affiliate."""
    if order.affiliate_id:
        return AttributionResult(
            affiliate_id=order.affiliate_id,
            campaign_id=order.campaign_id,
            source="order_direct",
        )

    session_hit = find_affiliate_by_visitor(
        db,
        session_id=order.session_id,
        visitor_id=order.visitor_id,
        site_id=order.site_id,
        now=now or utcnow(),
    )
    if session_hit:
        return AttributionResult(
            affiliate_id=session_hit.affiliate_id,
            campaign_id=session_hit.campaign_id or order.campaign_id,
            source=session_hit.source,
        )

    if order.customer_email:
        historic = _resolve_from_history(db, order)
        if historic:
            return historic

    logger.info("[ATTRIBUTION] No affiliate found for order %s", order.order_id)
    return None
