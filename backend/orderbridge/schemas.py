"""Pydantic schemas for request/response payloads.

Field names follow the tracking SDK and Market!N conventions (camelCase on
the wire); Python attributes are snake_case with aliases.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Visitor tracking
class TrackSessionRequest(BaseModel):
    """Payload sent by the tracking SDK on landing / navigation."""

    session_id: Optional[str] = Field(None, alias="sessionId", description="Client session id (generated when absent)")
    visitor_id: Optional[str] = Field(None, alias="visitorId", description="Fingerprint or cookie visitor id")
    site_id: Optional[str] = Field(None, alias="siteId", description="Storefront site id")
    affiliate_id: Optional[str] = Field(None, alias="affiliateId")
    campaign_id: Optional[str] = Field(None, alias="campaignId")
    product_id: Optional[str] = Field(None, alias="productId")
    landing_url: Optional[str] = Field(None, alias="landingUrl")
    referrer_url: Optional[str] = Field(None, alias="referrerUrl")
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    ip_address: Optional[str] = Field(None, alias="ipAddress")
    user_agent: Optional[str] = Field(None, alias="userAgent")
    country: Optional[str] = None
    device_type: Optional[str] = Field(None, alias="deviceType")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "example": {
                "sessionId": "sess_8f2c",
                "visitorId": "vis_41aa",
                "siteId": "a1b2c3d4-0000-1111-2222-333344445555",
                "affiliateId": "AFF123",
                "campaignId": "CAMP456",
                "landingUrl": "https://shop.example.com/?aid=AFF123",
                "utm_source": "newsletter",
            }
        },
    )

    def session_fields(self) -> Dict[str, Any]:
        """Column-named values for the session store (without the session id)."""
        return self.model_dump(exclude={"session_id"}, exclude_none=True)


class TrackSessionResponse(BaseModel):
    status: str = Field(description="created or updated")
    session_id: str = Field(alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class IdentifyVisitorRequest(BaseModel):
    """Links an identity (signup / checkout) to the visitor's session."""

    session_id: Optional[str] = Field(None, alias="sessionId")
    visitor_id: Optional[str] = Field(None, alias="visitorId")
    site_id: Optional[str] = Field(None, alias="siteId")
    email: Optional[str] = None
    phone: Optional[str] = None
    customer_id: Optional[str] = Field(None, alias="customerId")
    order_id: Optional[str] = Field(None, alias="orderId")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def identity(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "phone": self.phone,
            "customerId": self.customer_id,
            "orderId": self.order_id,
        }


class VisitorSessionOut(BaseModel):
    """Public representation of a visitor session."""

    session_id: str
    site_id: Optional[str] = None
    visitor_id: Optional[str] = None
    affiliate_id: Optional[str] = None
    campaign_id: Optional[str] = None
    product_id: Optional[str] = None
    landing_url: Optional[str] = None
    referrer_url: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    country: Optional[str] = None
    device_type: Optional[str] = None
    identity: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    expires_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Admin
class ConversionJobOut(BaseModel):
    id: int
    job_id: str
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    order_webhook_id: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConversionFailureOut(BaseModel):
    id: int
    queue_id: Optional[int] = None
    job_id: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    alert_sent: bool = False
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BrandConfigRequest(BaseModel):
    """Connect a storefront site to a Market!N brand."""

    brand_id: str = Field(alias="brandId", min_length=1)
    brand_name: Optional[str] = Field(None, alias="brandName")
    marketin_api_key: Optional[str] = Field(None, alias="marketinApiKey")
    instance_id: Optional[str] = Field(None, alias="instanceId")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {"brandId": "123", "brandName": "Acme Store", "marketinApiKey": "mk_live_..."}
        },
    )


class BrandConfigResponse(BaseModel):
    success: bool = True
    site_id: str = Field(serialization_alias="siteId")
    brand_id: str = Field(serialization_alias="brandId")
    brand_name: Optional[str] = Field(None, serialization_alias="brandName")
    api_key_stored: bool = Field(False, serialization_alias="apiKeyStored")
    api_key_validated: Optional[bool] = Field(None, serialization_alias="apiKeyValidated")


class WebhookSummary(BaseModel):
    event_type: Optional[str] = Field(None, serialization_alias="eventType")
    order_id: Optional[str] = Field(None, serialization_alias="orderId")
    is_test: bool = Field(False, serialization_alias="isTest")


class OrderWebhookOut(BaseModel):
    id: int
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    summary: WebhookSummary
    payload: Any = None


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool = Field(serialization_alias="hasMore")


class OrderWebhookPage(BaseModel):
    items: List[OrderWebhookOut]
    pagination: Pagination
