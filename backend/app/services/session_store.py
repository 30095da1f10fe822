"""Session attribution store (UTM + customer + funnel milestones).

WHAT:
    Short-lived, in-memory state per funnel session: the last captured UTM
    snapshot, the customer data accumulated across steps, and which funnel
    milestones happened.

WHY:
    The purchase happens pages (and sometimes hours) after the ad click.
    The preparation pipeline needs the session's UTM/fbclid and identity to
    enrich a purchase that arrives with only a transaction id.

POLICIES:
    - UTM: last touch. Every capture replaces the stored snapshot
    - Customer: merge. Non-empty incoming fields overwrite, empty never erase
    - Milestones: additive. Two purchases add revenue twice
    - Sweep removes sessions idle longer than the inactivity threshold

CONCURRENCY:
    One lock guards the map. Returned records are copies; only this store
    mutates session state.
"""

import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Union

from app.schemas import (
    CustomerFields,
    ProductFields,
    SessionAttributionRecord,
    SessionReport,
    UTMSnapshot,
)
from app.services.click_id import current_time_ms

logger = logging.getLogger(__name__)

MS_PER_HOUR = 60 * 60 * 1000

UTM_DEFAULTS = {
    "utm_source": "direct",
    "utm_medium": "none",
    "utm_campaign": "organic",
}
UTM_PASSTHROUGH = ("utm_term", "utm_content", "utm_id", "gclid", "fbclid", "msclkid")

MILESTONE_PAGE_VIEW = "page_view"
MILESTONE_LEAD = "lead_captured"
MILESTONE_CHECKOUT = "checkout_started"
MILESTONE_PURCHASE = "purchased"
MILESTONE_OFFER = "offer_viewed"


def _to_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"[SESSION] Ignoring non-numeric amount: {value!r}")
        return Decimal("0")


class SessionStore:
    """In-memory SessionAttributionRecord store keyed by session id.

    Usage:
        store = SessionStore(inactivity_hours=24)
        store.capture_attribution("s1", {"utm_source": "facebook"}, {"url": "..."})
        store.record_customer("s1", {"email": "a@b.com"})
        store.record_milestone("s1", "purchased", {"amount": 97})
    """

    def __init__(
        self,
        inactivity_hours: float = 24,
        clock: Callable[[], int] = current_time_ms,
    ):
        self.inactivity_ms = int(inactivity_hours * MS_PER_HOUR)
        self._clock = clock
        self._sessions: Dict[str, SessionAttributionRecord] = {}
        self._lock = threading.Lock()

    def _touch(self, session_id: str, now: int) -> SessionAttributionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            record = SessionAttributionRecord(
                session_id=session_id,
                created_at_ms=now,
                last_update_ms=now,
            )
            self._sessions[session_id] = record
            logger.debug(f"[SESSION] Created session {session_id}")
        record.last_update_ms = now
        return record

    def capture_attribution(
        self,
        session_id: str,
        utm_params: Optional[Mapping[str, Any]] = None,
        page_context: Optional[Mapping[str, Any]] = None,
    ) -> UTMSnapshot:
        """Replace the session's UTM snapshot (last-touch).

        Args:
            session_id: Funnel session id
            utm_params: Raw query params (utm_*, fbclid, gclid, msclkid)
            page_context: url, referrer, domain of the landing page

        Returns:
            The stored snapshot
        """
        utm_params = utm_params or {}
        page_context = page_context or {}

        values: Dict[str, Any] = {}
        for key, default in UTM_DEFAULTS.items():
            values[key] = str(utm_params.get(key) or default)
        for key in UTM_PASSTHROUGH:
            values[key] = str(utm_params.get(key) or "")

        with self._lock:
            now = self._clock()
            snapshot = UTMSnapshot(
                **values,
                referrer=page_context.get("referrer") or "direct",
                landing_page=page_context.get("url") or "",
                domain=page_context.get("domain") or None,
                captured_at_ms=now,
            )
            record = self._touch(session_id, now)
            record.utm = snapshot

        logger.info(
            f"[SESSION] UTM captured for {session_id}",
            extra={
                "utm_source": snapshot.utm_source,
                "utm_campaign": snapshot.utm_campaign,
                "has_fbclid": bool(snapshot.fbclid),
            },
        )
        return snapshot.model_copy()

    def record_customer(
        self,
        session_id: str,
        fields: Union[CustomerFields, Mapping[str, Any], None],
    ) -> CustomerFields:
        """Merge customer fields into the session (non-destructive)."""
        if fields is None:
            incoming: Dict[str, str] = {}
        elif isinstance(fields, CustomerFields):
            incoming = fields.present_fields()
        else:
            incoming = CustomerFields.model_validate(dict(fields)).present_fields()

        with self._lock:
            record = self._touch(session_id, self._clock())
            merged = record.customer.model_dump()
            merged.update(incoming)
            record.customer = CustomerFields(**merged)
            customer = record.customer

        logger.debug(f"[SESSION] Customer fields for {session_id}: {sorted(customer.present_fields())}")
        return customer

    def record_product(self, session_id: str, product: ProductFields) -> None:
        with self._lock:
            record = self._touch(session_id, self._clock())
            record.product = product

    def record_milestone(
        self,
        session_id: str,
        milestone: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> SessionAttributionRecord:
        """Record a funnel milestone. Additive; order is not enforced.

        Milestones:
            page_view: increments page_views (data: url, title)
            lead_captured / checkout_started: sets flag + timestamp
            purchased: adds data["amount"] to total_revenue every call
            offer_viewed: counts views per data["type"] (upsell, downsell)
        """
        data = data or {}
        with self._lock:
            now = self._clock()
            record = self._touch(session_id, now)
            milestones = record.milestones

            if milestone == MILESTONE_PAGE_VIEW:
                milestones.page_views += 1
                if data.get("url"):
                    record.current_page = data["url"]
                if data.get("title"):
                    record.page_title = data["title"]
            elif milestone == MILESTONE_LEAD:
                milestones.lead_captured = True
                milestones.lead_captured_at_ms = now
            elif milestone == MILESTONE_CHECKOUT:
                milestones.checkout_started = True
                milestones.checkout_started_at_ms = now
            elif milestone == MILESTONE_PURCHASE:
                milestones.purchased = True
                milestones.purchased_at_ms = now
                milestones.purchase_count += 1
                milestones.total_revenue += _to_decimal(data.get("amount"))
            elif milestone == MILESTONE_OFFER:
                offer_type = str(data.get("type") or "upsell")
                milestones.offers_viewed[offer_type] = milestones.offers_viewed.get(offer_type, 0) + 1
            else:
                logger.warning(f"[SESSION] Unknown milestone {milestone!r} for {session_id}")

            snapshot = record.model_copy(deep=True)

        return snapshot

    def get(self, session_id: str) -> Optional[SessionAttributionRecord]:
        """Return a copy of the session record, or None."""
        with self._lock:
            record = self._sessions.get(session_id)
            return record.model_copy(deep=True) if record is not None else None

    def get_attribution(self, session_id: str) -> UTMSnapshot:
        """Return the session's UTM snapshot, or the direct/none/organic default."""
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None or record.utm is None:
                return UTMSnapshot()
            return record.utm.model_copy()

    def session_report(self, session_id: str) -> SessionReport:
        """Summarize a session's attribution and funnel progress."""
        record = self.get(session_id) or SessionAttributionRecord(session_id=session_id)
        utm = record.utm or UTMSnapshot()
        milestones = record.milestones
        return SessionReport(
            session_id=session_id,
            utm_data=utm,
            has_utm=utm.utm_source != "direct",
            lead_captured=milestones.lead_captured,
            checkout_started=milestones.checkout_started,
            purchased=milestones.purchased,
            total_revenue=float(milestones.total_revenue),
            page_views=milestones.page_views,
            purchase_count=milestones.purchase_count,
        )

    def sweep(self) -> int:
        """Drop sessions idle beyond the inactivity threshold."""
        with self._lock:
            now = self._clock()
            stale = [
                session_id
                for session_id, record in self._sessions.items()
                if now - record.last_update_ms > self.inactivity_ms
            ]
            for session_id in stale:
                del self._sessions[session_id]
            remaining = len(self._sessions)

        if stale:
            logger.info(f"[SESSION] Swept {len(stale)} idle session(s), {remaining} remaining")
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
