"""Pydantic schemas for tracked events, Conversions API payloads and responses."""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# INBOUND EVENT PARTS
# =============================================================================


class CustomerFields(BaseModel):
    """Customer identity captured by the funnel (clear text, hashed later)."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None

    def present_fields(self) -> Dict[str, str]:
        """Return only the fields holding a non-blank value."""
        return {
            name: value
            for name, value in self.model_dump().items()
            if isinstance(value, str) and value.strip()
        }

    def has_identity(self) -> bool:
        return bool(self.present_fields())


class ProductFields(BaseModel):
    """Product being viewed, checked out or offered."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = None


class AttributionFields(BaseModel):
    """UTM parameters plus the raw Meta click id (fbclid) and request domain."""

    model_config = ConfigDict(frozen=True)

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    click_id: Optional[str] = None
    domain: Optional[str] = None


class ClientFields(BaseModel):
    """Browser/request context forwarded unhashed to Meta."""

    model_config = ConfigDict(frozen=True)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class TrackedEvent(BaseModel):
    """A validated event, immutable once built by the preparation pipeline."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    event_name: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    occurred_at_ms: int
    page_url: Optional[str] = None
    transaction_id: Optional[str] = None
    value_amount: Optional[Decimal] = Field(None, ge=0)
    customer: CustomerFields = Field(default_factory=CustomerFields)
    product: Optional[ProductFields] = None
    attribution: AttributionFields = Field(default_factory=AttributionFields)
    client: ClientFields = Field(default_factory=ClientFields)


# =============================================================================
# CONVERSIONS API WIRE FORMAT
# =============================================================================


class HashedIdentity(BaseModel):
    """SHA256-hashed customer fields keyed the way Meta names them."""

    em: Optional[str] = None
    ph: Optional[str] = None
    fn: Optional[str] = None
    ln: Optional[str] = None
    db: Optional[str] = None
    ge: Optional[str] = None
    ct: Optional[str] = None
    st: Optional[str] = None
    zp: Optional[str] = None
    country: Optional[str] = None


class UserData(HashedIdentity):
    """Meta `user_data`: hashed identity plus raw matching signals."""

    model_config = ConfigDict(frozen=True)

    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class ContentItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    quantity: int = 1
    item_price: float = 0.0


class CustomData(BaseModel):
    """Meta `custom_data`. UTM fields ride along as opaque custom parameters."""

    model_config = ConfigDict(frozen=True)

    currency: str
    value: float = 0.0
    content_type: Optional[str] = None
    content_ids: Optional[List[str]] = None
    content_name: Optional[str] = None
    content_category: Optional[str] = None
    contents: Optional[List[ContentItem]] = None
    order_id: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None


class PreparedEvent(BaseModel):
    """A fully-formed server event ready for the Conversions API batch.

    Example wire form:
        {
            "event_name": "Purchase",
            "event_time": 1730000000,
            "event_id": "5f2b...",
            "event_source_url": "https://funnel.example.com/obrigado",
            "user_data": {"em": "<sha256>", "fbc": "fb.1.1730000000000.abc"},
            "custom_data": {"currency": "BRL", "value": 97.0, "order_id": "tx_1"},
            "action_source": "website"
        }
    """

    model_config = ConfigDict(frozen=True)

    event_name: str
    event_time: int = Field(..., description="Unix time in seconds")
    event_id: str = Field(..., description="Deduplication key shared with the browser pixel")
    event_source_url: Optional[str] = None
    user_data: UserData
    custom_data: CustomData
    action_source: Literal["website"] = "website"

    # Not sent to Meta
    source_event_name: str = Field("", exclude=True)
    name_mapped: bool = Field(True, exclude=True)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the JSON object Meta expects (None fields dropped)."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_pixel_payload(self) -> Dict[str, Any]:
        """Browser pixel call that pairs with this server event.

        The page fires `fbq('track', event_name, parameters)` with the same
        eventID so Meta keeps only one of the two deliveries.
        """
        parameters = self.custom_data.model_dump(mode="json", exclude_none=True)
        parameters["eventID"] = self.event_id
        return {
            "event_name": self.event_name,
            "event_id": self.event_id,
            "parameters": parameters,
        }


class DuplicateEvent(BaseModel):
    """Control-flow signal: this logical event was already processed."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_name: str
    duplicate: Literal[True] = True


# =============================================================================
# SESSION ATTRIBUTION
# =============================================================================


class UTMSnapshot(BaseModel):
    """Last-touch UTM capture for a session."""

    utm_source: str = "direct"
    utm_medium: str = "none"
    utm_campaign: str = "organic"
    utm_term: str = ""
    utm_content: str = ""
    utm_id: str = ""
    gclid: str = ""
    fbclid: str = ""
    msclkid: str = ""
    referrer: str = "direct"
    landing_page: str = ""
    domain: Optional[str] = None
    captured_at_ms: int = 0

    def to_attribution_fields(self) -> AttributionFields:
        """Project onto the fields the preparation pipeline consumes."""
        return AttributionFields(
            utm_source=self.utm_source or None,
            utm_medium=self.utm_medium or None,
            utm_campaign=self.utm_campaign or None,
            utm_term=self.utm_term or None,
            utm_content=self.utm_content or None,
            click_id=self.fbclid or None,
            domain=self.domain,
        )


class FunnelMilestones(BaseModel):
    """Funnel progress flags. Out-of-order milestones are accepted."""

    page_views: int = 0
    lead_captured: bool = False
    lead_captured_at_ms: Optional[int] = None
    checkout_started: bool = False
    checkout_started_at_ms: Optional[int] = None
    purchased: bool = False
    purchased_at_ms: Optional[int] = None
    purchase_count: int = 0
    total_revenue: Decimal = Decimal("0")
    offers_viewed: Dict[str, int] = Field(default_factory=dict)


class SessionAttributionRecord(BaseModel):
    """Per-session state owned by the session store."""

    session_id: str
    utm: Optional[UTMSnapshot] = None
    customer: CustomerFields = Field(default_factory=CustomerFields)
    product: Optional[ProductFields] = None
    milestones: FunnelMilestones = Field(default_factory=FunnelMilestones)
    current_page: Optional[str] = None
    page_title: Optional[str] = None
    created_at_ms: int = 0
    last_update_ms: int = 0


class SessionReport(BaseModel):
    session_id: str
    utm_data: UTMSnapshot
    has_utm: bool
    lead_captured: bool
    checkout_started: bool
    purchased: bool
    total_revenue: float
    page_views: int
    purchase_count: int


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class PageContext(BaseModel):
    """Page the event happened on, as reported by the tracking script."""

    url: Optional[str] = None
    title: Optional[str] = None
    referrer: Optional[str] = None
    domain: Optional[str] = None


class TrackingRequest(BaseModel):
    """Request body for every funnel tracking endpoint.

    Example:
        {
            "session_id": "sess_8f2c",
            "data": {"transactionId": "tx_1", "amount": 97.0},
            "page": {"url": "https://funnel.example.com/obrigado"},
            "utm": {"utm_source": "facebook", "fbclid": "IwAR..."},
            "client": {"fbp": "fb.1.1730000000000.123456789"}
        }
    """

    session_id: str = Field(..., min_length=1, description="Funnel session id")
    data: Dict[str, Any] = Field(default_factory=dict, description="Step-specific fields")
    page: PageContext = Field(default_factory=PageContext)
    utm: Dict[str, Optional[str]] = Field(default_factory=dict, description="Raw UTM query params")
    client: ClientFields = Field(default_factory=ClientFields)


class FacebookResult(BaseModel):
    """Outcome of the Conversions API leg of a funnel step."""

    success: bool
    event_id: Optional[str] = None
    event_name: Optional[str] = None
    duplicate: bool = False
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None
    attempts: int = 0
    error: Optional[Dict[str, Any]] = None
    pixel: Optional[Dict[str, Any]] = None


class ProcessResult(BaseModel):
    """Response of every `process_*` funnel operation."""

    success: bool
    session_id: str
    utm_data: Optional[UTMSnapshot] = None
    facebook: Optional[FacebookResult] = None
    error: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)
