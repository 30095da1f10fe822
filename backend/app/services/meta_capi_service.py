"""Meta Conversions API (CAPI) Service.

WHAT:
    Sends prepared server-side events to Meta in one batch request with a
    bounded timeout and linear-backoff retries.

WHY:
    - Server-side events survive ad blockers and iOS 14+ tracking limits
    - Deduplication with the browser pixel happens at Meta via event_id
    - Callers need a result object, never an exception, so one bad delivery
      cannot take down a request handler

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/v18.0/{pixel_id}/events?access_token=...

RETRY POLICY:
    - Network errors, timeouts and 5xx: retried up to max_retries attempts,
      sleeping attempt * retry_base_delay between them
    - 4xx: terminal PlatformRejection with Meta's error payload
    - 200 with events_received != batch size: terminal PlatformRejection

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - app/services/event_preparation.py (builds the events)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from app.deps import get_settings
from app.exceptions import ConfigurationError, PlatformRejection, TrackingError, TransportError
from app.schemas import PreparedEvent

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """
    Result of one Conversions API delivery.

    Attributes:
        success: True only if Meta acknowledged every event sent
        events_sent: Batch size
        events_received: Count reported by Meta (if it answered)
        fbtrace_id: Meta trace id for support tickets
        attempts: HTTP attempts made
        error: The failure (TransportError, PlatformRejection, ConfigurationError)
    """

    success: bool
    events_sent: int = 0
    events_received: Optional[int] = None
    fbtrace_id: Optional[str] = None
    attempts: int = 0
    error: Optional[TrackingError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "events_sent": self.events_sent,
            "events_received": self.events_received,
            "fbtrace_id": self.fbtrace_id,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
        }


class MetaCAPIService:
    """Client for Meta's Conversions API.

    WHAT: Batches PreparedEvents and POSTs them with retries
    WHY: Single place for delivery semantics (timeout, retry, success check)

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token")
        result = await service.deliver([prepared_event])
        if not result.success:
            logger.error(result.error.to_dict())
        ```
    """

    def __init__(
        self,
        pixel_id: Optional[str],
        access_token: Optional[str],
        test_event_code: Optional[str] = None,
        api_base_url: Optional[str] = None,
        timeout: float = 5.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize CAPI service with pixel credentials.

        Args:
            pixel_id: Meta Pixel ID (from Events Manager)
            access_token: System user token with access to the pixel
            test_event_code: Routes events to Test Events when set
            api_base_url: Graph API base including version (defaults to
                Settings.conversions_api_base)
            timeout: Per-request timeout in seconds
            max_retries: Total attempts for retryable failures
            retry_base_delay: Backoff unit in seconds (attempt * delay)
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Awaitable sleep used between attempts
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.test_event_code = test_event_code
        self.api_base_url = (api_base_url or get_settings().conversions_api_base).rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "MetaCAPIService":
        """Build the client from application Settings."""
        return cls(
            pixel_id=settings.FACEBOOK_PIXEL_ID,
            access_token=settings.FACEBOOK_ACCESS_TOKEN,
            test_event_code=settings.FACEBOOK_TEST_EVENT_CODE,
            api_base_url=settings.conversions_api_base,
            timeout=settings.CAPI_TIMEOUT_SECONDS,
            max_retries=settings.CAPI_MAX_RETRIES,
            retry_base_delay=settings.CAPI_RETRY_BASE_DELAY_SECONDS,
            **kwargs,
        )

    @property
    def events_url(self) -> str:
        return f"{self.api_base_url}/{self.pixel_id}/events"

    def config_errors(self) -> List[str]:
        """List missing configuration values (empty when ready to send)."""
        errors = []
        if not self.pixel_id:
            errors.append("FACEBOOK_PIXEL_ID")
        if not self.access_token:
            errors.append("FACEBOOK_ACCESS_TOKEN")
        return errors

    @property
    def is_configured(self) -> bool:
        return not self.config_errors()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def send_event(self, event: PreparedEvent) -> DeliveryResult:
        return await self.deliver([event])

    async def deliver(
        self,
        events: Union[PreparedEvent, Sequence[PreparedEvent]],
    ) -> DeliveryResult:
        """Send one batch of events to Meta.

        Never raises: every failure is returned inside DeliveryResult.error.

        Args:
            events: A PreparedEvent or a sequence of them

        Returns:
            DeliveryResult
        """
        if isinstance(events, PreparedEvent):
            events = [events]
        events = list(events)

        missing = self.config_errors()
        if missing:
            error = ConfigurationError(
                f"Conversions API not configured: missing {', '.join(missing)}",
                details={"missing": missing},
            )
            logger.error(f"[META_CAPI] {error.message}")
            return DeliveryResult(success=False, events_sent=len(events), error=error)

        if not events:
            return DeliveryResult(success=True, events_sent=0, events_received=0)

        payload: Dict[str, Any] = {"data": [event.to_wire() for event in events]}
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e.event_name for e in events],
                "event_ids": [e.event_id for e in events],
                "test_mode": bool(self.test_event_code),
            }
        )

        last_error: Optional[TrackingError] = None
        async with self._client() as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    result = await self._post(client, payload, len(events))
                except TransportError as e:
                    last_error = e
                    if attempt < self.max_retries:
                        delay = attempt * self.retry_base_delay
                        logger.warning(
                            f"[META_CAPI] Attempt {attempt}/{self.max_retries} failed ({e.message}), "
                            f"retrying in {delay:.1f}s"
                        )
                        await self._sleep(delay)
                    continue
                except PlatformRejection as e:
                    logger.error(
                        f"[META_CAPI] Rejected: {e.message}",
                        extra={"response": e.payload, "status_code": e.status_code},
                    )
                    received = e.payload.get("events_received") if isinstance(e.payload, dict) else None
                    return DeliveryResult(
                        success=False,
                        events_sent=len(events),
                        events_received=received,
                        attempts=attempt,
                        error=e,
                    )

                logger.info(
                    f"[META_CAPI] Success: {result.get('events_received')} event(s) received",
                    extra={
                        "events_received": result.get("events_received"),
                        "fbtrace_id": result.get("fbtrace_id"),
                        "attempt": attempt,
                    }
                )
                return DeliveryResult(
                    success=True,
                    events_sent=len(events),
                    events_received=result.get("events_received"),
                    fbtrace_id=result.get("fbtrace_id"),
                    attempts=attempt,
                )

        final = TransportError(
            f"Delivery failed after {self.max_retries} attempt(s): "
            f"{last_error.message if last_error else 'unknown error'}",
            status_code=getattr(last_error, "status_code", None),
            attempts=self.max_retries,
            cause=getattr(last_error, "cause", None),
        )
        logger.error(f"[META_CAPI] {final.message}")
        return DeliveryResult(
            success=False,
            events_sent=len(events),
            attempts=self.max_retries,
            error=final,
        )

    async def _post(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        expected: int,
    ) -> Dict[str, Any]:
        """Make one HTTP attempt and classify its outcome.

        Raises:
            TransportError: Network error, timeout or 5xx (retryable)
            PlatformRejection: 4xx, unreadable body or wrong received count
        """
        try:
            response = await client.post(
                self.events_url,
                params={"access_token": self.access_token},
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout after {self.timeout}s", cause=e)
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}", cause=e)

        body = self._json_or_text(response)

        if response.status_code >= 500:
            raise TransportError(
                f"Meta CAPI server error {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code != 200:
            message = response.text
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                message = error.get("message", response.text)
            elif error:
                message = str(error)
            raise PlatformRejection(
                f"Meta CAPI error {response.status_code}: {message}",
                status_code=response.status_code,
                payload=body,
            )

        if not isinstance(body, dict):
            raise PlatformRejection(
                "Meta CAPI returned a non-JSON body",
                status_code=response.status_code,
                payload=body,
            )

        received = body.get("events_received")
        if received != expected:
            raise PlatformRejection(
                f"Meta acknowledged {received} of {expected} event(s)",
                status_code=response.status_code,
                payload=body,
            )

        return body

    @staticmethod
    def _json_or_text(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def validate_access_token(self) -> bool:
        """Check that the token is valid and can see the pixel.

        WHAT: GET /me then GET /{pixel_id} with the token
        WHY: Surface expired or unlinked system user tokens at startup
            instead of on the first purchase

        Returns:
            True if both lookups succeed
        """
        if not self.is_configured:
            logger.error(f"[META_CAPI] Cannot validate token, missing: {self.config_errors()}")
            return False

        params = {"fields": "id,name", "access_token": self.access_token}
        try:
            async with self._client() as client:
                me = await client.get(f"{self.api_base_url}/me", params=params)
                if me.status_code != 200:
                    logger.error(
                        f"[META_CAPI] Access token rejected ({me.status_code})",
                        extra={"response": self._json_or_text(me)},
                    )
                    return False

                pixel = await client.get(f"{self.api_base_url}/{self.pixel_id}", params=params)
                if pixel.status_code != 200:
                    logger.error(
                        f"[META_CAPI] Token has no access to pixel {self.pixel_id} ({pixel.status_code})",
                        extra={"response": self._json_or_text(pixel)},
                    )
                    return False
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error validating token: {e}")
            return False

        logger.info(f"[META_CAPI] Access token valid for pixel {self.pixel_id}")
        return True
