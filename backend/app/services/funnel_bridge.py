"""Funnel → Meta Conversions API bridge.

WHAT:
    The five funnel entry points (page view, lead, checkout start, purchase,
    offer view). Each one updates the session store, prepares the Meta event
    with the session's UTM/customer context and delivers it.

WHY:
    Route handlers (and the tracking script behind them) only know the
    session id and the fields of the current step. Everything captured
    earlier in the funnel lives here.

CONTRACT:
    Every process_* coroutine returns a ProcessResult and never raises.
    - Duplicate event: facebook.success=True, facebook.duplicate=True, no HTTP call
    - Invalid event: success=False, error names the missing fields
    - Delivery failure: success=True (step recorded), facebook.success=False

REFERENCES:
    - app/services/session_store.py
    - app/services/event_preparation.py
    - app/services/meta_capi_service.py
"""

import logging
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError
from app.schemas import (
    ClientFields,
    CustomerFields,
    DuplicateEvent,
    FacebookResult,
    ProcessResult,
    ProductFields,
    SessionReport,
)
from app.services.dedup_cache import DeduplicationCache
from app.services.event_preparation import EventNameMapper, EventPreparer
from app.services.identity_hashing import split_full_name
from app.services.meta_capi_service import MetaCAPIService
from app.services.session_store import (
    MILESTONE_CHECKOUT,
    MILESTONE_LEAD,
    MILESTONE_OFFER,
    MILESTONE_PAGE_VIEW,
    MILESTONE_PURCHASE,
    SessionStore,
)
from app.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

ClientInput = Union[ClientFields, Mapping[str, Any], None]


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    """First non-empty value among snake_case / camelCase aliases."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def _price(value: Any) -> Decimal:
    """Parse a product price; unparseable values are logged and treated as 0."""
    if value in (None, ""):
        return Decimal("0")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        price = None
    if price is None or not price.is_finite():
        logger.warning(f"[FUNNEL] Ignoring unparseable price: {value!r}")
        return Decimal("0")
    return price


def _client_fields(client: ClientInput) -> Optional[ClientFields]:
    if client is None or isinstance(client, ClientFields):
        return client
    return ClientFields.model_validate(dict(client))


def _customer_from(data: Mapping[str, Any]) -> CustomerFields:
    """Build CustomerFields from a lead/purchase form payload."""
    first_name = _pick(data, "first_name", "firstName")
    last_name = _pick(data, "last_name", "lastName")
    if not first_name and not last_name:
        first_name, last_name = split_full_name(_pick(data, "name"))

    return CustomerFields(
        email=_pick(data, "email"),
        phone=_pick(data, "phone"),
        first_name=first_name,
        last_name=last_name,
        date_of_birth=_pick(data, "date_of_birth", "dateOfBirth"),
        gender=_pick(data, "gender"),
        city=_pick(data, "city"),
        state=_pick(data, "state"),
        zip_code=_pick(data, "zip_code", "zipCode"),
        country=_pick(data, "country"),
    )


def never_raises(step: str):
    """Decorator turning any exception of a funnel step into a failed ProcessResult."""

    def decorator(func):
        @wraps(func)
        async def wrapper(self, session_id, *args, **kwargs) -> ProcessResult:
            try:
                # Reject before the step body touches session state
                if not isinstance(session_id, str) or not session_id.strip():
                    raise ValidationError(["session_id"], "session_id must be a non-empty string")
                try:
                    return await func(self, session_id, *args, **kwargs)
                except PydanticValidationError as e:
                    fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
                    raise ValidationError(fields or ["payload"]) from e
            except ValidationError as e:
                logger.warning(
                    f"[FUNNEL] {step} rejected for session {session_id}: {e.message}",
                    extra={"missing": e.missing},
                )
                return ProcessResult(
                    success=False,
                    session_id=str(session_id),
                    error=e.to_dict(),
                    facebook=FacebookResult(success=False, error=e.to_dict()),
                )
            except Exception as e:
                logger.exception(f"[FUNNEL] {step} failed for session {session_id}")
                capture_exception(e, extra={"step": step, "session_id": str(session_id)})
                return ProcessResult(
                    success=False,
                    session_id=str(session_id),
                    error={"type": "internal_error", "message": str(e)},
                )

        return wrapper

    return decorator


class FunnelBridge:
    """Session attribution + event preparation + CAPI delivery.

    Usage:
        ```python
        bridge = FunnelBridge.from_settings(get_settings())
        await bridge.process_page_view("s1", {"url": url}, {"utm_source": "facebook"})
        await bridge.process_purchase("s1", {"transactionId": "t1", "amount": 97})
        ```
    """

    def __init__(
        self,
        store: SessionStore,
        preparer: EventPreparer,
        capi: MetaCAPIService,
    ):
        self.store = store
        self.preparer = preparer
        self.capi = capi

    @classmethod
    def from_settings(cls, settings, **capi_kwargs) -> "FunnelBridge":
        """Wire store, cache, preparer and CAPI client from Settings."""
        cache = DeduplicationCache(
            window_hours=settings.DEDUP_WINDOW_HOURS,
            enabled=settings.DEDUP_ENABLED,
            max_entries=settings.DEDUP_MAX_ENTRIES,
        )
        preparer = EventPreparer(
            cache=cache,
            mapper=EventNameMapper(settings.CUSTOM_EVENT_MAPPING),
            currency=settings.DEFAULT_CURRENCY,
            default_country=settings.DEFAULT_COUNTRY,
            hashing_enabled=settings.CUSTOMER_DATA_HASHING,
        )
        return cls(
            store=SessionStore(inactivity_hours=settings.SESSION_INACTIVITY_HOURS),
            preparer=preparer,
            capi=MetaCAPIService.from_settings(settings, **capi_kwargs),
        )

    @property
    def cache(self) -> DeduplicationCache:
        return self.preparer.cache

    async def _send(
        self,
        session_id: str,
        raw_event: Dict[str, Any],
        on_admitted=None,
    ) -> FacebookResult:
        """Prepare and deliver one event for the session.

        Args:
            on_admitted: Called once the event is known to be new and valid,
                before delivery (used to record milestones exactly once)

        Raises:
            ValidationError: propagated to the never_raises wrapper
        """
        raw_event["session_id"] = session_id
        outcome = self.preparer.prepare(raw_event, self.store.get(session_id))

        if isinstance(outcome, DuplicateEvent):
            logger.info(f"[FUNNEL] Duplicate {outcome.event_name} for session {session_id}, not sent")
            return FacebookResult(
                success=True,
                duplicate=True,
                event_id=outcome.event_id,
                event_name=outcome.event_name,
            )

        if on_admitted is not None:
            on_admitted()

        delivery = await self.capi.deliver([outcome])
        return FacebookResult(
            success=delivery.success,
            event_id=outcome.event_id,
            event_name=outcome.event_name,
            events_received=delivery.events_received,
            fbtrace_id=delivery.fbtrace_id,
            attempts=delivery.attempts,
            error=delivery.error.to_dict() if delivery.error else None,
            pixel=outcome.to_pixel_payload(),
        )

    @never_raises("PageView")
    async def process_page_view(
        self,
        session_id: str,
        page_data: Optional[Mapping[str, Any]] = None,
        utm_params: Optional[Mapping[str, Any]] = None,
        client: ClientInput = None,
    ) -> ProcessResult:
        """Capture last-touch UTMs and send PageView."""
        page_data = page_data or {}
        utm = self.store.capture_attribution(session_id, utm_params, page_data)
        record = self.store.record_milestone(session_id, MILESTONE_PAGE_VIEW, page_data)

        facebook = await self._send(session_id, {
            "event_name": "page_view",
            "page_url": page_data.get("url"),
            "client": _client_fields(client),
        })

        logger.info(f"[FUNNEL] PageView {page_data.get('url')} (session {session_id})")
        return ProcessResult(
            success=True,
            session_id=session_id,
            utm_data=utm,
            facebook=facebook,
            details={"page_views": record.milestones.page_views},
        )

    @never_raises("Lead")
    async def process_lead(
        self,
        session_id: str,
        lead_fields: Mapping[str, Any],
        page_data: Optional[Mapping[str, Any]] = None,
        client: ClientInput = None,
    ) -> ProcessResult:
        """Store lead identity in the session and send Lead."""
        page_data = page_data or {}
        utm = self.store.get_attribution(session_id)
        customer = self.store.record_customer(session_id, _customer_from(lead_fields))
        self.store.record_milestone(session_id, MILESTONE_LEAD)

        facebook = await self._send(session_id, {
            "event_name": "lead_captured",
            "page_url": page_data.get("url"),
            "value": _pick(lead_fields, "value"),
            "client": _client_fields(client),
        })

        logger.info(f"[FUNNEL] Lead captured (session {session_id})")
        return ProcessResult(
            success=True,
            session_id=session_id,
            utm_data=utm,
            facebook=facebook,
            details={"customer_fields": sorted(customer.present_fields())},
        )

    @never_raises("InitiateCheckout")
    async def process_checkout_start(
        self,
        session_id: str,
        checkout_fields: Mapping[str, Any],
        page_data: Optional[Mapping[str, Any]] = None,
        client: ClientInput = None,
    ) -> ProcessResult:
        """Remember the product being bought and send InitiateCheckout."""
        page_data = page_data or {}
        utm = self.store.get_attribution(session_id)
        product = ProductFields(
            id=str(_pick(checkout_fields, "product_id", "productId", default="main-product")),
            name=_pick(checkout_fields, "product_name", "productName", default="Main product"),
            category=_pick(checkout_fields, "category", default="digital"),
            price=_price(_pick(checkout_fields, "price")),
        )
        self.store.record_product(session_id, product)
        self.store.record_milestone(session_id, MILESTONE_CHECKOUT)

        facebook = await self._send(session_id, {
            "event_name": "checkout_started",
            "page_url": page_data.get("url"),
            "value": product.price,
            "product": product,
            "client": _client_fields(client),
        })

        logger.info(f"[FUNNEL] Checkout started: {product.price} (session {session_id})")
        return ProcessResult(
            success=True,
            session_id=session_id,
            utm_data=utm,
            facebook=facebook,
            details={"product": product.model_dump(mode="json")},
        )

    @never_raises("Purchase")
    async def process_purchase(
        self,
        session_id: str,
        purchase_fields: Mapping[str, Any],
        page_data: Optional[Mapping[str, Any]] = None,
        client: ClientInput = None,
    ) -> ProcessResult:
        """Send Purchase; revenue is added to the session once per admitted event."""
        page_data = page_data or {}
        utm = self.store.get_attribution(session_id)

        customer_data = _pick(purchase_fields, "customer_data", "customerData")
        if customer_data:
            self.store.record_customer(session_id, _customer_from(customer_data))

        transaction_id = _pick(purchase_fields, "transaction_id", "transactionId")
        amount = _pick(purchase_fields, "amount", "value")
        transaction = {
            "transaction_id": transaction_id,
            "amount": amount,
            "payment_method": _pick(purchase_fields, "payment_method", "paymentMethod", default="PIX"),
            "order_bump": bool(_pick(purchase_fields, "order_bump", "orderBump", default=False)),
        }

        facebook = await self._send(
            session_id,
            {
                "event_name": "purchase_completed",
                "page_url": page_data.get("url"),
                "transaction_id": transaction_id,
                "value": amount,
                "client": _client_fields(client),
            },
            on_admitted=lambda: self.store.record_milestone(
                session_id, MILESTONE_PURCHASE, {"amount": amount}
            ),
        )

        logger.info(f"[FUNNEL] Purchase {transaction_id}: {amount} (session {session_id})")
        return ProcessResult(
            success=True,
            session_id=session_id,
            utm_data=utm,
            facebook=facebook,
            details={"transaction": transaction},
        )

    @never_raises("OfferView")
    async def process_offer_view(
        self,
        session_id: str,
        offer_fields: Mapping[str, Any],
        page_data: Optional[Mapping[str, Any]] = None,
        client: ClientInput = None,
    ) -> ProcessResult:
        """Send ViewContent for an upsell/downsell page."""
        page_data = page_data or {}
        utm = self.store.get_attribution(session_id)
        offer_type = str(_pick(offer_fields, "type", default="upsell"))
        product = ProductFields(
            id=str(_pick(offer_fields, "product_id", "productId", default="offer-product")),
            name=_pick(offer_fields, "product_name", "productName", default="Special offer"),
            category="offer",
            price=_price(_pick(offer_fields, "price")),
        )
        self.store.record_milestone(session_id, MILESTONE_OFFER, {"type": offer_type})

        facebook = await self._send(session_id, {
            "event_name": f"{offer_type}_view",
            "page_url": page_data.get("url"),
            "value": product.price,
            "product": product,
            "client": _client_fields(client),
        })

        logger.info(f"[FUNNEL] {offer_type} viewed: {product.name} (session {session_id})")
        return ProcessResult(
            success=True,
            session_id=session_id,
            utm_data=utm,
            facebook=facebook,
            details={
                "offer": {
                    "type": offer_type,
                    "product": product.model_dump(mode="json"),
                    "original_price": _pick(offer_fields, "original_price", "originalPrice"),
                }
            },
        )

    def session_report(self, session_id: str) -> SessionReport:
        return self.store.session_report(session_id)

    def sweep(self) -> Dict[str, int]:
        """Purge idle sessions and expired dedup keys."""
        return {
            "sessions": self.store.sweep(),
            "dedup_keys": self.cache.sweep(),
        }
