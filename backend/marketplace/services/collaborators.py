"""Ports for the identity-side services the engine consumes, plus their HTTP adapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from marketplace.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedAddress:
    lat: float
    lng: float
    city: Optional[str] = None


class AddressResolver(Protocol):
    def resolve(self, customer_id: str, address_ref: str) -> Optional[ResolvedAddress]:
        """Location of ``address_ref`` if it belongs to ``customer_id``, else None."""


class EngineerCounters(Protocol):
    def reset_monthly_counters(self) -> int:
        """Reset per-engineer abuse counters; returns how many engineers were reset."""


class HttpAddressResolver:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._base_url = (base_url if base_url is not None else settings.address_service_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.collaborator_timeout_seconds

    def resolve(self, customer_id: str, address_ref: str) -> Optional[ResolvedAddress]:
        if not self._base_url:
            raise RuntimeError("ADDRESS_SERVICE_URL is not configured")
        resp = httpx.get(
            f"{self._base_url}/addresses/{address_ref}",
            params={"owner_id": customer_id},
            timeout=self._timeout,
        )
        if resp.status_code in (403, 404):
            return None
        resp.raise_for_status()
        data = resp.json()
        if str(data.get("owner_id", customer_id)) != str(customer_id):
            return None
        coords = data.get("coords") or data
        try:
            lat = float(coords["lat"])
            lng = float(coords["lng"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Address %s has no usable coordinates", address_ref)
            return None
        return ResolvedAddress(lat=lat, lng=lng, city=data.get("city"))


class HttpEngineerCounters:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        self._base_url = (base_url if base_url is not None else settings.engineer_service_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.collaborator_timeout_seconds

    def reset_monthly_counters(self) -> int:
        if not self._base_url:
            raise RuntimeError("ENGINEER_SERVICE_URL is not configured")
        resp = httpx.post(f"{self._base_url}/engineers/counters/reset", timeout=self._timeout)
        resp.raise_for_status()
        body = resp.json() if resp.content else {}
        return int(body.get("reset", 0) or 0)
