"""
Road-following polylines for drawing a line on a map.

Purely cosmetic: estimation never reads this. Any failure or malformed answer
falls back to joining the stops with straight segments.
"""
import logging
from typing import Any, List, Optional, Sequence, Tuple

import httpx

from ..cache import TTLCache
from ..models import Stop

logger = logging.getLogger(__name__)

OSRM_BASE = "https://router.project-osrm.org/route/v1/driving"
HTTP_HEADERS = {"User-Agent": "busradar/0.1.0"}
MAX_WAYPOINTS = 100


def straight_line(stops: Sequence[Stop]) -> List[Tuple[float, float]]:
    return [(s.latitude, s.longitude) for s in stops]


def thin(points: List[Tuple[float, float]], limit: int = MAX_WAYPOINTS) -> List[Tuple[float, float]]:
    """Evenly drop points so at most `limit` remain, always keeping the last."""
    if len(points) <= limit:
        return points
    step = -(-len(points) // (limit - 1))
    return points[:-1][::step] + [points[-1]]


def parse_osrm_route(data: Any) -> Optional[List[Tuple[float, float]]]:
    """(lat, lng) points of the first route, or None when the body is not a usable route."""
    if not isinstance(data, dict) or data.get("code") != "Ok":
        return None
    routes = data.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        return None
    geometry = routes[0].get("geometry") or {}
    coords = geometry.get("coordinates") if isinstance(geometry, dict) else None
    if not isinstance(coords, list) or not coords:
        return None
    try:
        return [(float(lat), float(lng)) for lng, lat, *_ in coords]
    except (TypeError, ValueError):
        return None


class StraightLineGeometry:
    async def get_geometry(self, line_id: str, stops: Sequence[Stop]) -> List[Tuple[float, float]]:
        return straight_line(stops)

    def invalidate(self, line_id: Optional[str] = None) -> None:
        pass


class OsrmRouteGeometry:
    def __init__(
        self,
        base_url: str = OSRM_BASE,
        ttl: float = 600.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.cache = TTLCache(ttl)

    async def _fetch(self, line_id: str, stops: Sequence[Stop]) -> List[Tuple[float, float]]:
        points = thin(straight_line(stops))
        # OSRM takes lng,lat
        coords = ";".join(f"{lng},{lat}" for lat, lng in points)
        url = f"{self.base_url}/{coords}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=HTTP_HEADERS, transport=self.transport) as client:
                r = await client.get(url, params={"overview": "full", "geometries": "geojson"})
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("OSRM failed for line %s: %s", line_id, e)
            return straight_line(stops)

        shape = parse_osrm_route(data)
        if shape is None:
            code = data.get("code") if isinstance(data, dict) else None
            logger.warning("OSRM returned no usable route for line %s: %s", line_id, code)
            return straight_line(stops)
        logger.debug("OSRM: %d points for line %s", len(shape), line_id)
        return shape

    async def get_geometry(self, line_id: str, stops: Sequence[Stop]) -> List[Tuple[float, float]]:
        if len(stops) < 2:
            return straight_line(stops)
        signature = tuple(s.id for s in stops)
        cached = self.cache.get(line_id)
        if cached is not None and cached[0] != signature:
            self.cache.invalidate(line_id)

        async def fetch():
            return signature, await self._fetch(line_id, stops)

        # straight-line fallbacks are cached as well
        _, shape = await self.cache.get_or_fetch(line_id, fetch)
        return shape

    def invalidate(self, line_id: Optional[str] = None) -> None:
        self.cache.invalidate(line_id)
