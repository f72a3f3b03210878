"""Attribution waterfall: order payload, sessions, historic orders."""

import json
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from orderbridge.models import OrderWebhook
from orderbridge.services import session_store
from orderbridge.services.attribution_resolver import resolve_affiliate, search_recent_orders_containing
from orderbridge.services.order_parser import CanonicalOrder, parse_order_payload
from orderbridge.services.session_store import track_session

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _store_webhook(db, body, created_at=T0):
    db.add(OrderWebhook(payload=json.dumps(body), created_at=created_at))
    db.commit()


def test_order_affiliate_wins_over_session(test_db_session):
    track_session(test_db_session, {"affiliate_id": "AFF_SESSION"}, session_id="sess-1", now=T0)
    order = CanonicalOrder(order_id="o1", affiliate_id="AFF_ORDER", campaign_id="C1", session_id="sess-1")

    result = resolve_affiliate(test_db_session, order, now=T0)

    assert result.to_dict() == {"affiliateId": "AFF_ORDER", "campaignId": "C1", "source": "order_direct"}


def test_session_campaign_falls_back_to_order_campaign(test_db_session):
    track_session(test_db_session, {"affiliate_id": "AFF_S"}, session_id="sess-1", now=T0)
    order = CanonicalOrder(order_id="o1", campaign_id="C_ORDER", session_id="sess-1")

    result = resolve_affiliate(test_db_session, order, now=T0)

    assert (result.affiliate_id, result.campaign_id, result.source) == ("AFF_S", "C_ORDER", "session")


def test_visitor_lookup_used_without_session_id(test_db_session):
    track_session(test_db_session, {"visitor_id": "vis-9", "affiliate_id": "AFF_V"}, session_id="x", now=T0)
    order = CanonicalOrder(order_id="o1", visitor_id="vis-9")

    result = resolve_affiliate(test_db_session, order, now=T0 + timedelta(days=3))

    assert result.source == "visitor_id"
    assert result.affiliate_id == "AFF_V"


def test_historic_order_with_same_email(test_db_session):
    _store_webhook(test_db_session, {
        "data": {"order": {
            "id": "old-order",
            "buyerInfo": {"email": "repeat@example.com"},
            "customFields": {"aid": "AFF_HIST", "cid": "C_HIST"},
        }},
    })
    order = CanonicalOrder(order_id="new-order", customer_email="repeat@example.com")

    result = resolve_affiliate(test_db_session, order, now=T0)

    assert result.to_dict() == {"affiliateId": "AFF_HIST", "campaignId": "C_HIST", "source": "historic_order"}


def test_historic_orders_without_affiliate_are_skipped(test_db_session):
    _store_webhook(test_db_session, {"order": {"id": "old", "buyerInfo": {"email": "x@example.com"}}})

    order = CanonicalOrder(order_id="new", customer_email="x@example.com")

    assert resolve_affiliate(test_db_session, order, now=T0) is None


def test_no_source_means_no_attribution(test_db_session):
    assert resolve_affiliate(test_db_session, CanonicalOrder(order_id="o1"), now=T0) is None


def test_search_escapes_like_wildcards(test_db_session):
    _store_webhook(test_db_session, {"email": "a_b@example.com"})
    _store_webhook(test_db_session, {"email": "axb@example.com"})

    rows = search_recent_orders_containing(test_db_session, "a_b@example.com")

    assert len(rows) == 1


def test_resolves_parsed_webhook_end_to_end(test_db_session):
    track_session(test_db_session, {"site_id": "abc-123", "affiliate_id": "AFF_SITE"}, session_id="s", now=T0)
    order = parse_order_payload({"order": {"id": "o1", "siteId": "abc-123"}})

    result = resolve_affiliate(test_db_session, order, now=T0 + timedelta(hours=1))

    assert (result.affiliate_id, result.source) == ("AFF_SITE", "site_recent")


def test_session_lookup_error_falls_through_to_history(test_db_session, monkeypatch):
    _store_webhook(test_db_session, {
        "order": {"id": "old", "buyerInfo": {"email": "back@example.com"}, "customFields": {"aid": "AFF_HIST"}},
    })

    def broken_lookup(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(session_store, "find_session", broken_lookup)
    order = CanonicalOrder(order_id="new", session_id="s1", customer_email="back@example.com")

    result = resolve_affiliate(test_db_session, order, now=T0)

    assert (result.affiliate_id, result.source) == ("AFF_HIST", "historic_order")
