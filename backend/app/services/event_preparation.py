"""Event preparation pipeline for the Meta Conversions API.

WHAT:
    Turns a loosely-typed funnel event plus the session's attribution context
    into a schema-valid PreparedEvent, or a DuplicateEvent signal.

WHY:
    - Same logical action must yield the same event_id on browser and server
    - Purchase events without order id / value / identity are useless to Meta
    - PII must be hashed before it leaves the process

HOW:
    1. Validate event_name and session_id
    2. Freeze the input into a TrackedEvent (occurred_at = now)
    3. Derive the event id and admit it in the DeduplicationCache
    4. Map funnel names to Meta standard events
    5. Enforce purchase requirements
    6. Build user_data (hashed identity, IP, UA, fbp, fbc) and custom_data

REFERENCES:
    - app/services/dedup_cache.py
    - app/services/identity_hashing.py
    - app/services/click_id.py
"""

import ipaddress
import logging
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError
from app.schemas import (
    AttributionFields,
    ClientFields,
    ContentItem,
    CustomData,
    CustomerFields,
    DuplicateEvent,
    PreparedEvent,
    ProductFields,
    SessionAttributionRecord,
    TrackedEvent,
    UserData,
)
from app.services.click_id import (
    current_time_ms,
    format_click_id,
    validate_browser_id,
    validate_click_cookie,
)
from app.services.dedup_cache import DeduplicationCache, generate_event_id
from app.services.identity_hashing import hash_identity

logger = logging.getLogger(__name__)


# =============================================================================
# EVENT NAME MAPPING
# =============================================================================

DEFAULT_EVENT_MAPPING: Mapping[str, str] = MappingProxyType({
    "page_view": "PageView",
    "PageView": "PageView",
    "view_content": "ViewContent",
    "ViewContent": "ViewContent",
    "lead_captured": "Lead",
    "Lead": "Lead",
    "checkout_started": "InitiateCheckout",
    "InitiateCheckout": "InitiateCheckout",
    "payment_info_added": "AddPaymentInfo",
    "AddPaymentInfo": "AddPaymentInfo",
    "purchase_completed": "Purchase",
    "Purchase": "Purchase",
    "upsell_view": "ViewContent",
    "downsell_view": "ViewContent",
    "add_to_cart": "AddToCart",
    "AddToCart": "AddToCart",
    "complete_registration": "CompleteRegistration",
    "CompleteRegistration": "CompleteRegistration",
    # Funnel-specific steps
    "funnel_step_1": "ViewContent",
    "funnel_step_2": "ViewContent",
    "funnel_step_3": "InitiateCheckout",
    "order_bump_view": "ViewContent",
    "order_bump_add": "AddToCart",
    "upsell_1_view": "ViewContent",
    "upsell_2_view": "ViewContent",
    "downsell_1_view": "ViewContent",
    "thank_you_page": "Purchase",
})

PURCHASE_EVENTS = frozenset({"Purchase"})


class EventNameMapper:
    """Finite lookup from funnel event names to Meta standard events.

    Unknown names pass through unchanged; callers get `mapped=False` and a
    warning is logged.
    """

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        table = dict(DEFAULT_EVENT_MAPPING)
        if overrides:
            table.update(overrides)
        self._table: Mapping[str, str] = MappingProxyType(table)

    @property
    def table(self) -> Mapping[str, str]:
        return self._table

    def map(self, event_name: str) -> Tuple[str, bool]:
        """Return (meta_event_name, was_mapped)."""
        mapped = self._table.get(event_name)
        if mapped is None:
            logger.warning(f"[PREPARE] Unmapped event name passed through: {event_name}")
            return event_name, False
        return mapped, True


# =============================================================================
# HELPERS
# =============================================================================


def is_public_ip(ip: Optional[str]) -> bool:
    """True for routable addresses; private/loopback/link-local are not sent.

    Those come from proxies or local testing and would attribute the event to
    the wrong visitor.
    """
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    )


def _as_model(model_cls, value: Any):
    if value is None or isinstance(value, model_cls):
        return value
    return model_cls.model_validate(value)


def _missing_from(error: PydanticValidationError) -> List[str]:
    missing = []
    for item in error.errors():
        loc = item.get("loc") or ()
        name = str(loc[0]) if loc else "event"
        if name == "value_amount":
            name = "value"
        if name not in missing:
            missing.append(name)
    return missing


RawEvent = Mapping[str, Any]


# =============================================================================
# PREPARER
# =============================================================================


class EventPreparer:
    """Builds PreparedEvents and owns the admit step of deduplication.

    Usage:
        ```python
        preparer = EventPreparer(cache=DeduplicationCache())
        outcome = preparer.prepare({
            "event_name": "purchase_completed",
            "session_id": "s1",
            "transaction_id": "tx_1",
            "value": 97,
            "customer": {"email": "a@b.com"},
        })
        if isinstance(outcome, DuplicateEvent):
            ...  # already sent, nothing to do
        ```
    """

    def __init__(
        self,
        cache: DeduplicationCache,
        mapper: Optional[EventNameMapper] = None,
        currency: str = "BRL",
        default_country: Optional[str] = "br",
        hashing_enabled: bool = True,
        clock=current_time_ms,
    ):
        self.cache = cache
        self.mapper = mapper or EventNameMapper()
        self.currency = currency
        self.default_country = default_country
        self.hashing_enabled = hashing_enabled
        self._clock = clock

    def prepare(
        self,
        raw_event: RawEvent,
        session: Optional[SessionAttributionRecord] = None,
    ) -> Union[PreparedEvent, DuplicateEvent]:
        """Validate, deduplicate and build one outbound event.

        Args:
            raw_event: Funnel event (event_name, session_id, page_url,
                transaction_id, value, customer, product, attribution, client)
            session: Stored attribution used to fill absent customer,
                product and attribution fields

        Returns:
            PreparedEvent, or DuplicateEvent if the id was already admitted

        Raises:
            ValidationError: Missing/invalid required fields
        """
        event_name = raw_event.get("event_name")
        if not isinstance(event_name, str) or not event_name.strip():
            raise ValidationError(["event_name"], "event_name must be a non-empty string")

        session_id = raw_event.get("session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationError(["session_id"], "session_id must be a non-empty string")

        event = self._freeze(raw_event, event_name.strip(), session_id.strip(), session)

        event_id = generate_event_id(event.session_id, event.event_name, event.occurred_at_ms)
        if not self.cache.admit(event_id):
            return DuplicateEvent(event_id=event_id, event_name=event.event_name)

        meta_event_name, mapped = self.mapper.map(event.event_name)

        if meta_event_name in PURCHASE_EVENTS:
            missing = self._missing_purchase_fields(event)
            if missing:
                self.cache.release(event_id)
                logger.warning(
                    f"[PREPARE] Purchase validation failed: {missing}",
                    extra={"event_id": event_id, "session_id": event.session_id},
                )
                raise ValidationError(missing, f"Purchase validation failed, missing: {', '.join(missing)}")

        prepared = PreparedEvent(
            event_name=meta_event_name,
            event_time=event.occurred_at_ms // 1000,
            event_id=event_id,
            event_source_url=event.page_url or None,
            user_data=self._build_user_data(event),
            custom_data=self._build_custom_data(event),
            source_event_name=event.event_name,
            name_mapped=mapped,
        )

        logger.info(
            f"[PREPARE] Prepared {prepared.event_name} ({event.event_name})",
            extra={
                "event_id": event_id,
                "session_id": event.session_id,
                "user_data_keys": sorted(prepared.user_data.model_dump(exclude_none=True)),
            },
        )
        return prepared

    def _freeze(
        self,
        raw: RawEvent,
        event_name: str,
        session_id: str,
        session: Optional[SessionAttributionRecord],
    ) -> TrackedEvent:
        """Coerce the raw mapping (plus session context) into a TrackedEvent."""
        try:
            customer = _as_model(CustomerFields, raw.get("customer"))
            product = _as_model(ProductFields, raw.get("product"))
            attribution = _as_model(AttributionFields, raw.get("attribution"))
            client = _as_model(ClientFields, raw.get("client"))

            if session is not None:
                customer = self._merge_customer(session.customer, customer)
                if product is None:
                    product = session.product
                if attribution is None and session.utm is not None:
                    attribution = session.utm.to_attribution_fields()

            value = raw.get("value", raw.get("value_amount"))

            return TrackedEvent(
                event_name=event_name,
                session_id=session_id,
                occurred_at_ms=self._clock(),
                page_url=raw.get("page_url") or None,
                transaction_id=raw.get("transaction_id") or None,
                value_amount=value if value not in ("", None) else None,
                customer=customer or CustomerFields(),
                product=product,
                attribution=attribution or AttributionFields(),
                client=client or ClientFields(),
            )
        except PydanticValidationError as e:
            raise ValidationError(_missing_from(e), f"Invalid event payload: {e.error_count()} error(s)") from e

    @staticmethod
    def _merge_customer(
        stored: CustomerFields,
        incoming: Optional[CustomerFields],
    ) -> CustomerFields:
        if incoming is None:
            return stored
        merged = stored.model_dump()
        merged.update(incoming.present_fields())
        return CustomerFields(**merged)

    @staticmethod
    def _missing_purchase_fields(event: TrackedEvent) -> List[str]:
        missing = []
        if event.value_amount is None or event.value_amount <= 0:
            missing.append("value")
        if not event.transaction_id:
            missing.append("transaction_id")
        if not event.customer.has_identity():
            missing.append("customer")
        return missing

    def _build_user_data(self, event: TrackedEvent) -> UserData:
        customer = event.customer
        if self.default_country and not customer.country:
            customer = customer.model_copy(update={"country": self.default_country})

        fields: Dict[str, Any] = hash_identity(customer, self.hashing_enabled).model_dump(exclude_none=True)

        client = event.client
        if is_public_ip(client.ip_address):
            fields["client_ip_address"] = client.ip_address.strip()
        elif client.ip_address:
            logger.debug(f"[PREPARE] Non-public client IP dropped: {client.ip_address}")

        if client.user_agent:
            fields["client_user_agent"] = client.user_agent

        fbp = validate_browser_id(client.fbp)
        if fbp:
            fields["fbp"] = fbp

        fbc = format_click_id(
            event.attribution.click_id,
            event.attribution.domain,
            now_ms=event.occurred_at_ms,
        )
        if fbc is None:
            fbc = validate_click_cookie(client.fbc)
        if fbc:
            fields["fbc"] = fbc

        return UserData(**fields)

    def _build_custom_data(self, event: TrackedEvent) -> CustomData:
        value = event.value_amount if event.value_amount is not None else Decimal("0")
        fields: Dict[str, Any] = {
            "currency": self.currency,
            "value": float(value),
            "content_type": "product",
        }

        if event.transaction_id:
            fields["order_id"] = event.transaction_id

        product = event.product
        if product is not None and product.id:
            fields["content_ids"] = [product.id]
            fields["content_name"] = product.name
            fields["content_category"] = product.category
            fields["contents"] = [
                ContentItem(
                    id=product.id,
                    quantity=1,
                    item_price=float(product.price or 0),
                )
            ]

        attribution = event.attribution
        for key in ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content"):
            utm_value = getattr(attribution, key)
            if utm_value:
                fields[key] = utm_value

        return CustomData(**fields)
