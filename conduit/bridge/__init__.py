"""Bridge package - Fan-out of session events to front ends.

Holds the per-session event hub and the HTTP + SSE relay that exposes
the orchestrator to browsers.
"""
from __future__ import annotations

__all__ = [
    "EventHub",
    "Subscription",
]

from conduit.bridge.event_bus import EventHub, Subscription
