"""Address geocoding through Nominatim (admin event form helper)."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from rag_mse.core.config import settings
from rag_mse.core.structured_logging import build_log_context

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3


class GeocodeTimeout(Exception):
    pass


class GeocodeUpstreamError(Exception):
    pass


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    display_name: str


def validate_query(query: str | None) -> str:
    """Return the trimmed query or raise ValueError with a user-facing message."""
    value = (query or "").strip()
    if not value:
        raise ValueError("Adresse ist erforderlich")
    if len(value) < MIN_QUERY_LENGTH:
        raise ValueError(f"Adresse muss mindestens {MIN_QUERY_LENGTH} Zeichen haben")
    return value


def user_agent() -> str:
    contact = settings.admin_emails_list[0] if settings.admin_emails_list else "admin@rag-mse.de"
    return f"RAG-MSE-Website ({settings.app_url or 'https://rag-mse.de'}; {contact})"


async def geocode(
    query: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float | None = None,
) -> GeocodeResult | None:
    """
    Look up the first Nominatim match for an address.

    Returns None when there is no match.

    Raises:
        ValueError: query too short
        GeocodeTimeout: upstream did not answer in time
        GeocodeUpstreamError: upstream returned an error or invalid data
    """
    value = validate_query(query)
    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.GEOCODE_TIMEOUT_SECONDS,
            transport=transport,
            headers={"User-Agent": user_agent()},
        ) as client:
            response = await client.get(settings.GEOCODE_URL, params={"format": "json", "q": value, "limit": 1})
    except httpx.TimeoutException as e:
        logger.warning("Geocoding request timed out", extra=build_log_context(error=str(e)))
        raise GeocodeTimeout("Zeitüberschreitung bei der Geocoding-Suche") from e
    except httpx.RequestError as e:
        raise GeocodeUpstreamError(f"Geocoding request failed: {e}") from e

    if response.status_code != 200:
        raise GeocodeUpstreamError(f"Nominatim API error: {response.status_code}")

    try:
        data = response.json()
        if not data:
            return None
        first = data[0]
        return GeocodeResult(
            latitude=float(first["lat"]),
            longitude=float(first["lon"]),
            display_name=first["display_name"],
        )
    except (ValueError, KeyError, TypeError, IndexError) as e:
        raise GeocodeUpstreamError(f"Invalid geocoding response: {e}") from e
