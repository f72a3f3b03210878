"""Order payload parser.

WHAT:
    Normalizes the many shapes a storefront order can arrive in (official
    webhook envelope, legacy `{order: ...}` wrapper, bare order objects from
    test fixtures and replays) into one `CanonicalOrder`.

WHY:
    Attribution and conversion delivery only ever see the canonical record,
    so every field-name variant is handled here and nowhere else.

HOW:
    1. `detect_order_shape` sniffs the envelope and yields a closed `OrderShape`.
    2. Each canonical field has a named extractor returning Optional values.
    3. Extractors are combined with `first_non_null` (first hit wins per field).

    Parsing never raises: unknown or malformed input resolves to defaults.

REFERENCES:
    - orderbridge/services/attribution_resolver.py (consumer, re-parses history)
    - orderbridge/routers/wix_webhooks.py (webhook intake)
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
DEFAULT_EVENT_TYPE = "OrderPaid"
UNKNOWN_PRODUCT_NAME = "Unknown Product"

AFFILIATE_KEYS = ("aid", "affiliateId", "affiliate_id", "ref")
CAMPAIGN_KEYS = ("cid", "campaignId", "campaign_id")
SESSION_KEYS = ("sessionId", "session_id", "sid")

NOTE_AFFILIATE_RE = re.compile(r"\b(?:ref|aid|affiliate)\s*[=:]\s*([A-Za-z0-9_-]+)", re.IGNORECASE)
NOTE_CAMPAIGN_RE = re.compile(r"\b(?:cid|campaign(?:_?id)?)[=:]\s*([A-Za-z0-9_-]+)", re.IGNORECASE)
ORDER_URL_SITE_RE = re.compile(r"/([a-f0-9-]+)/")


# =============================================================================
# CANONICAL RECORDS
# =============================================================================

@dataclass
class OrderProduct:
    external_product_id: Optional[str]
    name: str
    price: float
    quantity: int
    currency: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "externalProductId": self.external_product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "currency": self.currency,
        }


@dataclass
class CanonicalOrder:
    """Normalized view of an order, independent of the payload version."""
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    total_amount: Optional[float] = None
    currency: str = DEFAULT_CURRENCY
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    affiliate_id: Optional[str] = None
    campaign_id: Optional[str] = None
    session_id: Optional[str] = None
    visitor_id: Optional[str] = None
    site_id: Optional[str] = None
    products: List[OrderProduct] = field(default_factory=list)
    event_type: str = DEFAULT_EVENT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        """camelCase dict for JSON responses (admin parse/debug surface)."""
        data = asdict(self)
        return {
            "orderId": data["order_id"],
            "orderNumber": data["order_number"],
            "totalAmount": data["total_amount"],
            "currency": data["currency"],
            "customerEmail": data["customer_email"],
            "customerName": data["customer_name"],
            "affiliateId": data["affiliate_id"],
            "campaignId": data["campaign_id"],
            "sessionId": data["session_id"],
            "visitorId": data["visitor_id"],
            "siteId": data["site_id"],
            "products": [p.to_payload() for p in self.products],
            "eventType": data["event_type"],
        }


# =============================================================================
# SHAPE DETECTION
# =============================================================================

class OrderShape(str, enum.Enum):
    """Where the order object lives inside the webhook body."""
    data_order = "data_order"    # {"data": {"order": {...}}} (official webhook)
    wrapped = "wrapped"          # {"order": {...}} (legacy / replays)
    bare = "bare"                # the body is the order itself


def detect_order_shape(body: Dict[str, Any]) -> OrderShape:
    data = body.get("data")
    if isinstance(data, dict) and _truthy(data.get("order")):
        return OrderShape.data_order
    if _truthy(body.get("order")):
        return OrderShape.wrapped
    return OrderShape.bare


_ORDER_LOCATORS: Dict[OrderShape, Callable[[Dict[str, Any]], Any]] = {
    OrderShape.data_order: lambda body: body["data"]["order"],
    OrderShape.wrapped: lambda body: body["order"],
    OrderShape.bare: lambda body: body,
}


def locate_order(body: Dict[str, Any]) -> Dict[str, Any]:
    order = _ORDER_LOCATORS[detect_order_shape(body)](body)
    return order if isinstance(order, dict) else {}


# =============================================================================
# COMBINATORS / COERCION
# =============================================================================

def _truthy(value: Any) -> bool:
    # Empty strings and zero count as missing (matches how storefront payloads
    # use "" for unset fields).
    return bool(value)


def first_non_null(*candidates: Any) -> Any:
    """Return the first candidate that is set (non-empty), else None.

    Callables are evaluated lazily, in order.
    """
    for candidate in candidates:
        value = candidate() if callable(candidate) else candidate
        if _truthy(value):
            return value
    return None


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _get(obj: Any, *path: str) -> Any:
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return None
    return str(value)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        match = re.match(r"\s*(-?\d+(?:\.\d+)?)", str(value))
        return float(match.group(1)) if match else None


def _to_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, (bool, dict, list)):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


# =============================================================================
# FIELD EXTRACTORS
# =============================================================================

def extract_order_id(body: Dict[str, Any], order: Dict[str, Any]) -> Optional[str]:
    return _str(first_non_null(
        body.get("entityId"),
        order.get("id"),
        order.get("_id"),
        order.get("orderId"),
        order.get("order_id"),
    ))


def extract_order_number(order: Dict[str, Any]) -> Optional[str]:
    return _str(first_non_null(order.get("number"), order.get("orderNumber")))


def _amount_block(block: Any) -> Tuple[Optional[float], Optional[str]]:
    """A money block is either `{amount, currency}` or a bare number/string."""
    if isinstance(block, dict):
        return _to_float(first_non_null(block.get("amount"), block.get("value"))), _str(block.get("currency"))
    return _to_float(block), None


def _total_from_total_price(order: Dict[str, Any]):
    return _amount_block(order["totalPrice"]) if _truthy(order.get("totalPrice")) else None


def _total_from_total(order: Dict[str, Any]):
    return _amount_block(order["total"]) if _truthy(order.get("total")) else None


def _total_from_totals(order: Dict[str, Any]):
    total = _get(order, "totals", "total")
    if not _truthy(total):
        return None
    return _to_float(total), _str(order.get("currency"))


def _total_from_price_summary(order: Dict[str, Any]):
    total = _get(order, "priceSummary", "total")
    return _amount_block(total) if _truthy(total) else None


TOTAL_EXTRACTORS = (
    _total_from_total_price,
    _total_from_total,
    _total_from_totals,
    _total_from_price_summary,
)


def extract_total(order: Dict[str, Any]) -> Tuple[Optional[float], str]:
    """Amount and currency from the first total block that yields an amount."""
    for extractor in TOTAL_EXTRACTORS:
        result = extractor(order)
        if result and result[0] is not None:
            amount, currency = result
            return amount, currency or DEFAULT_CURRENCY
    return None, DEFAULT_CURRENCY


def billing_block(order: Dict[str, Any]) -> Dict[str, Any]:
    return _dict(first_non_null(order.get("billingInfo"), order.get("buyerInfo"), order.get("buyer")))


def extract_customer_email(order: Dict[str, Any], billing: Dict[str, Any]) -> Optional[str]:
    return _str(first_non_null(
        billing.get("email"),
        billing.get("emailAddress"),
        order.get("buyerEmail"),
        order.get("email"),
    ))


def extract_customer_name(billing: Dict[str, Any]) -> Optional[str]:
    def joined_name():
        parts = [_str(billing.get("firstName")) or "", _str(billing.get("lastName")) or ""]
        return " ".join(parts).strip()

    return _str(first_non_null(billing.get("fullName"), billing.get("name"), joined_name))


def extract_buyer_note(order: Dict[str, Any]) -> str:
    note = first_non_null(order.get("buyerNote"), order.get("note"), order.get("customerNote"))
    return note if isinstance(note, str) else ""


def note_affiliate(note: str) -> Optional[str]:
    match = NOTE_AFFILIATE_RE.search(note)
    return match.group(1) if match else None


def note_campaign(note: str) -> Optional[str]:
    match = NOTE_CAMPAIGN_RE.search(note)
    return match.group(1) if match else None


def custom_fields_map(order: Dict[str, Any], billing: Dict[str, Any]) -> Dict[str, Any]:
    return _dict(first_non_null(
        order.get("customFields"),
        order.get("additionalFields"),
        billing.get("customFields"),
    ))


def lookup_aliases(mapping: Dict[str, Any], aliases: Iterable[str]) -> Optional[str]:
    return _str(first_non_null(*(mapping.get(key) for key in aliases)))


def buyer_custom_field(order: Dict[str, Any], aliases: Iterable[str]) -> Optional[str]:
    """Scan `buyerInfo.customFields` (a list of {name|key, value}) for an alias."""
    fields = _get(order, "buyerInfo", "customFields")
    if not isinstance(fields, list):
        return None
    aliases = tuple(aliases)
    for entry in fields:
        if not isinstance(entry, dict):
            continue
        name = first_non_null(entry.get("name"), entry.get("key"))
        if name in aliases and _truthy(entry.get("value")):
            return _str(entry.get("value"))
    return None


def extract_products(order: Dict[str, Any], order_currency: str) -> List[OrderProduct]:
    items = first_non_null(order.get("lineItems"), order.get("items"), order.get("products"))
    if not isinstance(items, list):
        return []

    products = []
    for item in items:
        if not isinstance(item, dict):
            continue
        price_block = item.get("price")
        if isinstance(price_block, dict):
            price_value = first_non_null(price_block.get("amount"), _get(item, "priceData", "price"))
        else:
            price_value = first_non_null(price_block, _get(item, "priceData", "price"))

        products.append(OrderProduct(
            external_product_id=_str(first_non_null(
                item.get("productId"),
                item.get("product_id"),
                _get(item, "catalogReference", "catalogItemId"),
                item.get("id"),
            )),
            name=_str(first_non_null(item.get("name"), item.get("productName"), item.get("title")))
            or UNKNOWN_PRODUCT_NAME,
            price=_to_float(price_value) or 0.0,
            quantity=_to_int(first_non_null(item.get("quantity")), 1),
            currency=_str(first_non_null(_get(item, "price", "currency"), item.get("currency")))
            or order_currency,
        ))
    return products


def extract_site_id(body: Dict[str, Any], order: Dict[str, Any]) -> Optional[str]:
    def from_order_url():
        url = _get(order, "channelInfo", "externalOrderUrl")
        if not isinstance(url, str):
            return None
        match = ORDER_URL_SITE_RE.search(url)
        return match.group(1) if match else None

    return _str(first_non_null(order.get("siteId"), body.get("siteId"), body.get("instanceId"), from_order_url))


def extract_visitor_id(order: Dict[str, Any], custom_fields: Dict[str, Any]) -> Optional[str]:
    return _str(first_non_null(
        _get(order, "buyerInfo", "visitorId"),
        order.get("visitorId"),
        custom_fields.get("visitorId"),
    ))


def extract_event_type(body: Dict[str, Any]) -> str:
    return _str(first_non_null(body.get("eventType"), body.get("event_type"))) or DEFAULT_EVENT_TYPE


# =============================================================================
# ENTRY POINT
# =============================================================================

def parse_order_payload(body: Any) -> CanonicalOrder:
    """Parse an arbitrary webhook body into a `CanonicalOrder`.

    Attribution sources, first non-null wins independently per field:
        1. buyer note (`ref=`, `aid=`, `affiliate=`) -> affiliate
        2. custom fields map with known aliases
        3. channel info `affiliateId` / `externalOrderId`
        4. buyer custom fields list (`name`/`key` matched against the aliases)
    A `cid=` token in the buyer note is the last resort for the campaign.
    """
    if not isinstance(body, dict):
        logger.debug("[ORDER_PARSER] Non-object payload (%s), using defaults", type(body).__name__)
        return CanonicalOrder()

    order = locate_order(body)
    billing = billing_block(order)
    custom_fields = custom_fields_map(order, billing)
    channel_info = _dict(order.get("channelInfo"))
    note = extract_buyer_note(order)

    total_amount, currency = extract_total(order)

    affiliate_id = _str(first_non_null(
        lambda: note_affiliate(note),
        lambda: lookup_aliases(custom_fields, AFFILIATE_KEYS),
        lambda: _str(first_non_null(channel_info.get("affiliateId"), channel_info.get("externalOrderId"))),
        lambda: buyer_custom_field(order, AFFILIATE_KEYS),
    ))
    campaign_id = _str(first_non_null(
        lambda: lookup_aliases(custom_fields, CAMPAIGN_KEYS),
        lambda: buyer_custom_field(order, CAMPAIGN_KEYS),
        lambda: note_campaign(note),
    ))
    session_id = _str(first_non_null(
        lambda: lookup_aliases(custom_fields, SESSION_KEYS),
        lambda: buyer_custom_field(order, SESSION_KEYS),
    ))

    return CanonicalOrder(
        order_id=extract_order_id(body, order),
        order_number=extract_order_number(order),
        total_amount=total_amount,
        currency=currency,
        customer_email=extract_customer_email(order, billing),
        customer_name=extract_customer_name(billing),
        affiliate_id=affiliate_id,
        campaign_id=campaign_id,
        session_id=session_id,
        visitor_id=extract_visitor_id(order, custom_fields),
        site_id=extract_site_id(body, order),
        products=extract_products(order, currency),
        event_type=extract_event_type(body),
    )

