"""Address lookup for the admin event form."""

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from rag_mse.core.deps import enforce_fixed_window, require_admin
from rag_mse.core.rate_limit import (
    GEOCODE_MAX_ATTEMPTS,
    GEOCODE_PREFIX,
    GEOCODE_WINDOW_SECONDS,
    AttemptLimiter,
    get_attempt_limiter,
)
from rag_mse.services import geocode_service
from rag_mse.services.client_ip_service import get_client_key

router = APIRouter(prefix="/geocode", tags=["geocode"], dependencies=[Depends(require_admin)])


class GeocodeResponse(BaseModel):
    latitude: float
    longitude: float
    display_name: str


def get_geocode_transport() -> httpx.AsyncBaseTransport | None:
    """HTTP transport for the geocoder; None uses the network."""
    return None


@router.get("", response_model=GeocodeResponse)
async def geocode_address(
    request: Request,
    q: str | None = Query(None, max_length=500),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
    transport: httpx.AsyncBaseTransport | None = Depends(get_geocode_transport),
):
    """
    Resolve an address to coordinates.

    Requires: admin role
    """
    enforce_fixed_window(
        attempt_limiter,
        GEOCODE_PREFIX,
        get_client_key(request),
        window_seconds=GEOCODE_WINDOW_SECONDS,
        max_attempts=GEOCODE_MAX_ATTEMPTS,
        action="geocode",
    )
    try:
        result = await geocode_service.geocode(q, transport=transport)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except geocode_service.GeocodeTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except geocode_service.GeocodeUpstreamError:
        raise HTTPException(status_code=502, detail="Fehler bei der Geocoding-Suche")

    if result is None:
        raise HTTPException(status_code=404, detail="Kein Ergebnis für diese Adresse gefunden")
    return GeocodeResponse(
        latitude=result.latitude,
        longitude=result.longitude,
        display_name=result.display_name,
    )
