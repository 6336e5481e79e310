"""Travel time estimates from the Google Distance Matrix API."""
from __future__ import annotations

import math
from typing import Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.logging import logger


class TravelTimeProvider:
    """Best-effort drive time lookup.

    Any missing configuration or upstream failure degrades to the configured
    default estimate; callers never see an exception from this class.
    """

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    def is_configured(self) -> bool:
        return bool((self.settings.google_maps_api_key or "").strip())

    def _drive_seconds(self, origin: str, destination: str) -> Optional[int]:
        params = {
            "origins": origin,
            "destinations": destination,
            "mode": "driving",
            "key": self.settings.google_maps_api_key,
        }
        with httpx.Client(timeout=self.settings.http_timeout_seconds, transport=self._transport) as client:
            response = client.get(self.settings.google_maps_base_url, params=params)
            response.raise_for_status()
            body = response.json()
        rows = body.get("rows") or []
        elements = (rows[0].get("elements") or []) if rows else []
        duration = (elements[0].get("duration") or {}) if elements else {}
        value = duration.get("value")
        return int(value) if value is not None else None

    def estimate_travel_minutes(self, origin: Optional[str], destination: Optional[str]) -> int:
        default = int(self.settings.default_eta_minutes)
        if not self.is_configured() or not origin or not destination:
            return default
        try:
            seconds = self._drive_seconds(origin, destination)
        except Exception as exc:
            logger.warning("Travel time lookup failed", error=str(exc), destination=destination)
            return default
        if seconds is None:
            return default
        return max(1, math.ceil(seconds / 60))

    def estimate_round_trip_minutes(self, origin: Optional[str], destination: Optional[str]) -> Optional[int]:
        """Two drive legs plus load/dump time, or None when no live estimate is available."""
        if not self.is_configured() or not origin or not destination:
            return None
        try:
            out_leg = self._drive_seconds(origin, destination) or 0
            back_leg = self._drive_seconds(destination, origin) or 0
        except Exception as exc:
            logger.warning("Round trip lookup failed", error=str(exc), destination=destination)
            return None
        return math.ceil((out_leg + back_leg) / 60) + int(self.settings.load_dump_minutes)
