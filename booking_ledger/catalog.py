from __future__ import annotations

import logging
import os

import httpx

from .domain import CatalogPackage, ServiceType
from .errors import LedgerError, ValidationFailed
from .money import to_money

CATALOG_SERVICE_URL = os.getenv("CATALOG_SERVICE_URL", "http://localhost:8010")

logger = logging.getLogger(__name__)


class CatalogUnavailable(LedgerError):
    status_code = 502
    retryable = True


def _optional_money(data: dict, key: str):
    value = data.get(key)
    return to_money(value) if value is not None else None


async def fetch_package(service_type, package_id: str) -> CatalogPackage:
    """Look up a tour or car-rental package's prices in the catalog service."""
    service = ServiceType(service_type)
    url = f"{CATALOG_SERVICE_URL}/packages/{service.value.lower()}/{package_id}"
    headers = {"accept": "application/json"}

    # Ignore HTTP(S)_PROXY env vars for internal service calls.
    try:
        async with httpx.AsyncClient(timeout=10.0, trust_env=False) as client:
            r = await client.get(url, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("Catalog lookup failed (package=%s): %s", package_id, e)
        raise CatalogUnavailable(f"Catalog service unavailable: {e}")

    if r.status_code == 404:
        raise ValidationFailed(f"Unknown {service.value} package {package_id}")
    if r.status_code >= 400:
        raise CatalogUnavailable(f"Catalog error: {r.text}")

    data = r.json()
    return CatalogPackage(
        package_id=str(package_id),
        currency=str(data.get("currency") or "BDT").upper(),
        base_price_adult=_optional_money(data, "base_price_adult"),
        base_price_child=_optional_money(data, "base_price_child"),
        daily_price=_optional_money(data, "daily_price"),
    )
