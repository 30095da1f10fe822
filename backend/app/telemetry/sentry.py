"""
Sentry Error Tracking
=====================

Error tracking for the tracking API and the Conversions API bridge.

Related files:
- app/main.py: Initializes Sentry on app startup
- app/services/funnel_bridge.py: Reports unexpected failures that were
  converted into failed results (they never reach FastAPI's handler)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str], environment: str = "development") -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False if no DSN is configured or init failed.
    """
    global _initialized

    if not dsn:
        logger.info("[SENTRY] No SENTRY_DSN configured - error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=logging.INFO,        # breadcrumbs
                    event_level=logging.ERROR,  # events
                ),
            ],
            traces_sample_rate=0.1,
            # Customer PII is hashed before it leaves the bridge; keep Sentry blind to it too
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a caught exception.

    Used for failures that are handled (converted into a failed result)
    but should still be visible in monitoring.
    """
    if not _initialized:
        logger.debug(f"[SENTRY] Disabled, not reporting: {exception!r}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
