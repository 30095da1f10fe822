"""
Application State
=================

Process-wide state that persists across requests.

WHAT it stores:
- bridge: the FunnelBridge singleton, which owns the dedup cache and the
  session attribution store (both in memory)

WHY this exists:
- Dedup history and session UTMs must survive between HTTP requests
- Route handlers are created per request; the state is not

Design:
- Simple module-level singleton, created lazily from Settings
- A process restart loses all dedup history and session attribution
- `reset_bridge()` lets tests and app factories start from a clean slate
"""

import logging
from typing import Optional

from app.deps import get_settings
from app.services.funnel_bridge import FunnelBridge

logger = logging.getLogger(__name__)

bridge: Optional[FunnelBridge] = None


def get_bridge() -> FunnelBridge:
    """Return the shared FunnelBridge, building it on first use."""
    global bridge
    if bridge is None:
        settings = get_settings()
        bridge = FunnelBridge.from_settings(settings)
        if not bridge.capi.is_configured:
            logger.warning(
                f"[STATE] Conversions API disabled, missing: {bridge.capi.config_errors()}. "
                "Events will be tracked but not delivered."
            )
        else:
            logger.info(f"[STATE] Funnel bridge ready for pixel {settings.FACEBOOK_PIXEL_ID}")
    return bridge


def set_bridge(instance: Optional[FunnelBridge]) -> None:
    global bridge
    bridge = instance


def reset_bridge() -> None:
    set_bridge(None)
