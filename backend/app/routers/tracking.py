"""Funnel tracking endpoints.

WHAT:
    Receives funnel steps from the tracking script (page view, lead,
    checkout, purchase, upsell/downsell view) and hands them to the
    FunnelBridge, which enriches, deduplicates and sends them to Meta.

WHY:
    Server-side delivery of the same events the browser pixel fires, with a
    shared event_id so Meta keeps one of each.

REFERENCES:
    - app/services/funnel_bridge.py
    - Meta Conversions API: https://developers.facebook.com/docs/marketing-api/conversions-api
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status

from app.deps import get_bridge
from app.schemas import ClientFields, ProcessResult, SessionReport, TrackingRequest
from app.services.funnel_bridge import FunnelBridge

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/tracking", tags=["Tracking"])


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def _client_from_request(request: Request, payload: TrackingRequest) -> ClientFields:
    """Fill IP and User-Agent from the HTTP request when the script did not send them.

    ProxyHeadersMiddleware (app.main) already resolved X-Forwarded-For into
    request.client.host.
    """
    client = payload.client
    updates = {}
    if not client.ip_address and request.client:
        updates["ip_address"] = request.client.host
    if not client.user_agent:
        updates["user_agent"] = request.headers.get("user-agent")
    return client.model_copy(update=updates) if updates else client


def _finish(response: Response, result: ProcessResult) -> ProcessResult:
    """Map a failed validation to 400; everything else is 200 with the result body."""
    if not result.success and result.error and result.error.get("type") == "validation_error":
        logger.info(
            f"[TRACKING] Rejected step for session {result.session_id}",
            extra={"missing": result.error.get("details", {}).get("missing")},
        )
        response.status_code = status.HTTP_400_BAD_REQUEST
    return result


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post("/page-view", response_model=ProcessResult)
async def track_page_view(
    request: Request,
    response: Response,
    payload: TrackingRequest,
    bridge: FunnelBridge = Depends(get_bridge),
):
    """Capture UTMs (last touch) and send PageView."""
    result = await bridge.process_page_view(
        payload.session_id,
        payload.page.model_dump(),
        payload.utm,
        client=_client_from_request(request, payload),
    )
    return _finish(response, result)


@router.post("/lead", response_model=ProcessResult)
async def track_lead(
    request: Request,
    response: Response,
    payload: TrackingRequest,
    bridge: FunnelBridge = Depends(get_bridge),
):
    """Store lead identity and send Lead."""
    result = await bridge.process_lead(
        payload.session_id,
        payload.data,
        payload.page.model_dump(),
        client=_client_from_request(request, payload),
    )
    return _finish(response, result)


@router.post("/checkout", response_model=ProcessResult)
async def track_checkout(
    request: Request,
    response: Response,
    payload: TrackingRequest,
    bridge: FunnelBridge = Depends(get_bridge),
):
    """Send InitiateCheckout with the product being bought."""
    result = await bridge.process_checkout_start(
        payload.session_id,
        payload.data,
        payload.page.model_dump(),
        client=_client_from_request(request, payload),
    )
    return _finish(response, result)


@router.post("/purchase", response_model=ProcessResult)
async def track_purchase(
    request: Request,
    response: Response,
    payload: TrackingRequest,
    bridge: FunnelBridge = Depends(get_bridge),
):
    """Send Purchase (requires transactionId, amount > 0 and customer identity)."""
    result = await bridge.process_purchase(
        payload.session_id,
        payload.data,
        payload.page.model_dump(),
        client=_client_from_request(request, payload),
    )
    return _finish(response, result)


@router.post("/offer-view", response_model=ProcessResult)
async def track_offer_view(
    request: Request,
    response: Response,
    payload: TrackingRequest,
    bridge: FunnelBridge = Depends(get_bridge),
):
    """Send ViewContent for an upsell/downsell offer."""
    result = await bridge.process_offer_view(
        payload.session_id,
        payload.data,
        payload.page.model_dump(),
        client=_client_from_request(request, payload),
    )
    return _finish(response, result)


@router.get("/sessions/{session_id}", response_model=SessionReport)
def session_report(session_id: str, bridge: FunnelBridge = Depends(get_bridge)):
    """Attribution and funnel progress for one session."""
    return bridge.session_report(session_id)


@router.get("/health")
def tracking_health(bridge: FunnelBridge = Depends(get_bridge)):
    """Health check for the tracking service.

    WHAT: Reports whether CAPI delivery is configured and in-memory state sizes
    WHY: A missing token silently turns every delivery into a failure
    """
    return {
        "status": "healthy",
        "service": "tracking",
        "capi_configured": bridge.capi.is_configured,
        "dedup_keys": len(bridge.cache),
        "sessions": len(bridge.store),
    }
