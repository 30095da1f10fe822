"""Unit tests for the session attribution store.

WHAT:
    Last-touch UTM capture, customer merge, additive milestones and sweep.

REFERENCES:
    - app/services/session_store.py (module under test)
"""

from decimal import Decimal

from app.schemas import CustomerFields, ProductFields
from app.services.session_store import (
    MILESTONE_CHECKOUT,
    MILESTONE_LEAD,
    MILESTONE_OFFER,
    MILESTONE_PAGE_VIEW,
    MILESTONE_PURCHASE,
    MS_PER_HOUR,
)


class TestCaptureAttribution:
    """Test UTM capture policy."""

    def test_missing_params_default_to_direct(self, store):
        snapshot = store.capture_attribution("s1", {}, {"url": "https://example.com/"})

        assert snapshot.utm_source == "direct"
        assert snapshot.utm_medium == "none"
        assert snapshot.utm_campaign == "organic"
        assert snapshot.referrer == "direct"
        assert snapshot.landing_page == "https://example.com/"

    def test_last_touch_replaces_snapshot(self, store, clock):
        """WHAT: A later capture fully replaces the earlier one.
        WHY: Last-touch attribution; stale fbclid must not survive.
        """
        store.capture_attribution("s1", {"utm_source": "facebook", "fbclid": "IwAR1"})
        clock.advance(1000)
        store.capture_attribution("s1", {"utm_source": "google", "gclid": "g1"})

        utm = store.get_attribution("s1")
        assert utm.utm_source == "google"
        assert utm.gclid == "g1"
        assert utm.fbclid == ""
        assert utm.captured_at_ms == clock()

    def test_values_are_stored_as_strings(self, store):
        snapshot = store.capture_attribution("s1", {"utm_source": "facebook", "utm_content": 42})
        assert snapshot.utm_content == "42"

    def test_domain_is_kept_for_fbc(self, store):
        snapshot = store.capture_attribution("s1", {"fbclid": "IwAR1"}, {"domain": "www.example.com"})
        fields = snapshot.to_attribution_fields()

        assert fields.click_id == "IwAR1"
        assert fields.domain == "www.example.com"

    def test_unknown_session_gets_default_snapshot(self, store):
        assert store.get_attribution("missing").utm_source == "direct"
        assert "missing" not in store


class TestCustomer:
    def test_fields_merge_across_steps(self, store):
        store.record_customer("s1", {"email": "a@b.com"})
        customer = store.record_customer("s1", CustomerFields(phone="11999990000"))

        assert customer.email == "a@b.com"
        assert customer.phone == "11999990000"

    def test_empty_values_never_erase(self, store):
        store.record_customer("s1", {"email": "a@b.com"})
        customer = store.record_customer("s1", {"email": "", "first_name": "Maria"})

        assert customer.email == "a@b.com"
        assert customer.first_name == "Maria"

    def test_product_is_stored(self, store):
        store.record_product("s1", ProductFields(id="p1", price=Decimal("97")))
        assert store.get("s1").product.id == "p1"


class TestMilestones:
    """Test additive milestone recording."""

    def test_purchases_are_additive(self, store):
        store.record_milestone("s1", MILESTONE_PURCHASE, {"amount": 97})
        record = store.record_milestone("s1", MILESTONE_PURCHASE, {"amount": "47.50"})

        assert record.milestones.purchased is True
        assert record.milestones.purchase_count == 2
        assert record.milestones.total_revenue == Decimal("144.50")

    def test_non_numeric_amount_adds_nothing(self, store):
        record = store.record_milestone("s1", MILESTONE_PURCHASE, {"amount": "abc"})
        assert record.milestones.total_revenue == Decimal("0")
        assert record.milestones.purchase_count == 1

    def test_out_of_order_milestones_are_accepted(self, store, clock):
        store.record_milestone("s1", MILESTONE_CHECKOUT)
        record = store.record_milestone("s1", MILESTONE_LEAD)

        assert record.milestones.checkout_started is True
        assert record.milestones.lead_captured is True
        assert record.milestones.lead_captured_at_ms == clock()

    def test_page_views_and_offers_are_counted(self, store):
        store.record_milestone("s1", MILESTONE_PAGE_VIEW, {"url": "https://example.com/a", "title": "A"})
        store.record_milestone("s1", MILESTONE_OFFER, {"type": "upsell"})
        store.record_milestone("s1", MILESTONE_OFFER, {"type": "upsell"})
        record = store.record_milestone("s1", MILESTONE_OFFER, {"type": "downsell"})

        assert record.milestones.page_views == 1
        assert record.current_page == "https://example.com/a"
        assert record.milestones.offers_viewed == {"upsell": 2, "downsell": 1}

    def test_returned_record_is_a_copy(self, store):
        record = store.record_milestone("s1", MILESTONE_PAGE_VIEW)
        record.milestones.page_views = 99

        assert store.get("s1").milestones.page_views == 1


class TestReportAndSweep:
    def test_report_summarizes_session(self, store):
        store.capture_attribution("s1", {"utm_source": "facebook"})
        store.record_milestone("s1", MILESTONE_PAGE_VIEW)
        store.record_milestone("s1", MILESTONE_PURCHASE, {"amount": 97})

        report = store.session_report("s1")
        assert report.has_utm is True
        assert report.purchased is True
        assert report.total_revenue == 97.0
        assert report.page_views == 1
        assert report.purchase_count == 1

    def test_report_for_unknown_session(self, store):
        report = store.session_report("nobody")
        assert report.has_utm is False
        assert report.utm_data.utm_source == "direct"
        assert report.total_revenue == 0.0

    def test_sweep_removes_idle_sessions(self, store, clock):
        store.capture_attribution("idle", {})
        clock.advance(23 * MS_PER_HOUR)
        store.record_milestone("active", MILESTONE_PAGE_VIEW)
        clock.advance(2 * MS_PER_HOUR)

        assert store.sweep() == 1
        assert "idle" not in store
        assert "active" in store
        assert len(store) == 1
