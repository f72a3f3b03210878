"""
Order Payload Parser Tests (Unit)
=================================

WHAT: Unit tests for webhook body -> CanonicalOrder normalization.
WHY: Storefront payloads come in several shapes and versions; attribution
     depends on reading the right field with the right precedence.

NOTE:
These tests live outside `backend/orderbridge/tests/` to avoid loading the
integration-test `conftest.py` (database, environment).

REFERENCES:
- backend/orderbridge/services/order_parser.py
"""

import pytest

from orderbridge.services.order_parser import (
    OrderShape,
    detect_order_shape,
    first_non_null,
    parse_order_payload,
)


def test_detects_each_shape() -> None:
    assert detect_order_shape({"data": {"order": {"id": "1"}}}) is OrderShape.data_order
    assert detect_order_shape({"order": {"id": "1"}}) is OrderShape.wrapped
    assert detect_order_shape({"id": "1"}) is OrderShape.bare
    # An empty nested order does not count
    assert detect_order_shape({"data": {"order": {}}, "order": {"id": "2"}}) is OrderShape.wrapped


@pytest.mark.parametrize("body", [None, "text", 42, ["a"]])
def test_non_object_payload_gives_defaults(body) -> None:
    order = parse_order_payload(body)

    assert order.order_id is None
    assert order.total_amount is None
    assert order.currency == "USD"
    assert order.event_type == "OrderPaid"
    assert order.products == []


def test_first_non_null_treats_empty_values_as_missing() -> None:
    calls = []

    def lazy():
        calls.append("called")
        return "late"

    assert first_non_null(None, "", 0, "x", lazy) == "x"
    assert calls == []
    assert first_non_null(None, lazy) == "late"


def test_official_webhook_shape() -> None:
    body = {
        "entityId": "entity-1",
        "eventType": "wix.ecom.v1.order_paid",
        "data": {"order": {
            "id": "inner-1",
            "number": 10042,
            "priceSummary": {"total": {"amount": "120.50", "currency": "EUR"}},
            "billingInfo": {"email": "ada@example.com", "fullName": "Ada L."},
            "lineItems": [
                {"catalogReference": {"catalogItemId": "cat-9"}, "productName": "Lamp",
                 "price": {"amount": "60.25", "currency": "EUR"}, "quantity": "2"},
            ],
        }},
    }

    order = parse_order_payload(body)

    assert order.order_id == "entity-1"
    assert order.order_number == "10042"
    assert order.total_amount == 120.5
    assert order.currency == "EUR"
    assert order.customer_email == "ada@example.com"
    assert order.customer_name == "Ada L."
    assert order.event_type == "wix.ecom.v1.order_paid"
    product = order.products[0]
    assert (product.external_product_id, product.name, product.price, product.quantity) == ("cat-9", "Lamp", 60.25, 2)


@pytest.mark.parametrize(
    "order_fields, expected",
    [
        ({"totalPrice": {"amount": 10, "currency": "GBP"}, "total": 99}, (10.0, "GBP")),
        ({"total": "15.5"}, (15.5, "USD")),
        ({"totals": {"total": 20}, "currency": "CAD"}, (20.0, "CAD")),
        ({"priceSummary": {"total": {"amount": "7"}}}, (7.0, "USD")),
        ({}, (None, "USD")),
    ],
)
def test_total_sources_in_priority_order(order_fields, expected) -> None:
    order = parse_order_payload({"order": {"id": "o", **order_fields}})

    assert (order.total_amount, order.currency) == expected


def test_products_default_missing_fields() -> None:
    order = parse_order_payload({"order": {"id": "o", "currency": "EUR", "totals": {"total": 5}, "items": [{}, "junk"]}})

    assert len(order.products) == 1
    product = order.products[0]
    assert product.name == "Unknown Product"
    assert product.price == 0.0
    assert product.quantity == 1
    assert product.currency == "EUR"
    assert product.external_product_id is None


def test_customer_name_from_first_and_last_name() -> None:
    order = parse_order_payload({"order": {"buyerInfo": {"firstName": "Grace", "lastName": "Hopper"}}})

    assert order.customer_name == "Grace Hopper"


def test_buyer_note_affiliate_beats_custom_fields() -> None:
    body = {"order": {"buyerNote": "Thanks! ref=NOTE_AFF", "customFields": {"aid": "FIELD_AFF", "cid": "FIELD_CAMP"}}}

    order = parse_order_payload(body)

    assert order.affiliate_id == "NOTE_AFF"
    assert order.campaign_id == "FIELD_CAMP"


def test_note_campaign_is_last_resort() -> None:
    order = parse_order_payload({"order": {"buyerNote": "aid=AFF1 cid=CAMP9"}})

    assert order.affiliate_id == "AFF1"
    assert order.campaign_id == "CAMP9"


def test_note_needs_key_and_separator() -> None:
    assert parse_order_payload({"order": {"buyerNote": "Please use the preferred entrance"}}).affiliate_id is None
    assert parse_order_payload({"order": {"buyerNote": "Leave at door, affiliate: AFF_7"}}).affiliate_id == "AFF_7"
    assert parse_order_payload({"order": {"buyerNote": "acid=X"}}).campaign_id is None


def test_custom_field_aliases() -> None:
    body = {"order": {"customFields": {"affiliate_id": "AFF2", "campaignId": "C2", "sid": "SESS2", "visitorId": "V2"}}}

    order = parse_order_payload(body)

    assert (order.affiliate_id, order.campaign_id, order.session_id, order.visitor_id) == ("AFF2", "C2", "SESS2", "V2")


def test_channel_info_affiliate() -> None:
    order = parse_order_payload({"order": {"channelInfo": {"externalOrderId": "EXT_AFF"}}})

    assert order.affiliate_id == "EXT_AFF"


def test_buyer_custom_fields_list() -> None:
    body = {"order": {"buyerInfo": {"customFields": [
        {"name": "ref", "value": "LIST_AFF"},
        {"key": "campaign_id", "value": "LIST_CAMP"},
        {"name": "sessionId", "value": ""},
    ]}}}

    order = parse_order_payload(body)

    assert order.affiliate_id == "LIST_AFF"
    assert order.campaign_id == "LIST_CAMP"
    assert order.session_id is None


def test_site_id_sources() -> None:
    assert parse_order_payload({"order": {"siteId": "S1"}, "instanceId": "I1"}).site_id == "S1"
    assert parse_order_payload({"order": {"id": "o"}, "instanceId": "I1"}).site_id == "I1"
    url_body = {"order": {"channelInfo": {"externalOrderUrl": "https://manage.example.com/dashboard/1a2b-3c4d/orders/9"}}}
    assert parse_order_payload(url_body).site_id == "1a2b-3c4d"


def test_to_dict_is_camel_case() -> None:
    data = parse_order_payload({"order": {"id": "o1", "totalPrice": 3}}).to_dict()

    assert data["orderId"] == "o1"
    assert data["totalAmount"] == 3.0
    assert data["eventType"] == "OrderPaid"
