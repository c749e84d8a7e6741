import asyncio
import logging
import importlib
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .config import Settings
from .estimator import estimate_vehicle_positions
from .models import (
    ArrivalSample,
    ArrivalsResponse,
    BusLine,
    LinesResponse,
    ShapeResponse,
    StopsResponse,
    VehiclesResponse,
)
from .providers.base import ProviderError, RouteGeometrySource, TransitProvider
from .providers.routing import OsrmRouteGeometry, StraightLineGeometry

# =========================
# App, config & CORS
# =========================
load_dotenv()
settings = Settings.from_env()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="busradar", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =========================
# Collaborators
# =========================
def load_provider(name: str = settings.provider, opts: Optional[dict] = None):
    try:
        module = importlib.import_module(f"busradar.providers.{name}")
    except ModuleNotFoundError as e:
        raise RuntimeError(f"Provider module not found: {name}") from e
    class_name = f"{name.capitalize()}Provider"
    if not hasattr(module, class_name):
        class_name = "Provider"
    ProviderClass = getattr(module, class_name, None)
    if ProviderClass is None:
        raise RuntimeError(f"Provider class not found in module '{name}'")
    return ProviderClass(**(settings.provider_opts if opts is None else opts))


def load_geometry():
    if settings.route_geometry == "straight":
        return StraightLineGeometry()
    return OsrmRouteGeometry(ttl=settings.geometry_ttl)


provider: TransitProvider = load_provider()
geometry: RouteGeometrySource = load_geometry()


def estimator_hook():
    return logger.debug if settings.debug else None


def line_or_404(line_id: str) -> BusLine:
    line = provider.get_line(line_id)
    if line is None:
        raise HTTPException(status_code=404, detail=f"Line {line_id} not found")
    return line


def unavailable(what: str, e: Exception) -> HTTPException:
    logger.error("%s failed: %s", what, e)
    return HTTPException(status_code=503, detail=f"{what} temporarily unavailable: {e}")

# =========================
# Basic endpoints
# =========================
@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/lines", response_model=LinesResponse)
async def lines():
    return LinesResponse(lines=provider.list_lines())

# =========================
# Per-line data
# =========================
@app.get("/line/{line_id}/stops", response_model=StopsResponse)
async def line_stops(line_id: str):
    """Ordered stops of a line."""
    line = line_or_404(line_id)
    try:
        stops = await provider.get_stops(line)
    except (ProviderError, httpx.HTTPError) as e:
        raise unavailable("stop list", e)
    return StopsResponse(line_id=line_id, stops=stops)


@app.get("/line/{line_id}/arrivals", response_model=ArrivalsResponse)
async def line_arrivals(line_id: str):
    """Raw per-stop ETA samples, for diagnostics."""
    line = line_or_404(line_id)
    try:
        stops = await provider.get_stops(line)
        arrivals = await provider.get_arrivals(line, stops) if stops else []
    except (ProviderError, httpx.HTTPError) as e:
        raise unavailable("arrivals", e)
    return ArrivalsResponse(line_id=line_id, arrivals=arrivals)


@app.get("/line/{line_id}/shape", response_model=ShapeResponse)
async def line_shape(line_id: str):
    """Road-following shape of a line, straight segments when routing fails."""
    line = line_or_404(line_id)
    try:
        stops = await provider.get_stops(line)
    except (ProviderError, httpx.HTTPError) as e:
        raise unavailable("stop list", e)
    shape = await geometry.get_geometry(line_id, stops)
    return ShapeResponse(line_id=line_id, route_geometry=shape)

# =========================
# Estimated vehicle positions
# =========================
@app.get("/line/{line_id}/vehicles", response_model=VehiclesResponse)
async def line_vehicles(line_id: str):
    """Vehicles inferred from the current ETA snapshot, plus stops and shape for drawing."""
    line = line_or_404(line_id)
    try:
        stops = await provider.get_stops(line)
    except (ProviderError, httpx.HTTPError) as e:
        raise unavailable("stop list", e)

    if not stops:
        return VehiclesResponse(line_id=line_id, vehicles=[], stops=[])

    async def fetch_arrivals() -> Tuple[List[ArrivalSample], Optional[str]]:
        try:
            return await provider.get_arrivals(line, stops), None
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning("live arrivals for line %s unavailable: %s", line_id, e)
            return [], f"live arrivals unavailable: {e}"

    (arrivals, problem), shape = await asyncio.gather(
        fetch_arrivals(),
        geometry.get_geometry(line_id, stops),
    )

    vehicles = estimate_vehicle_positions(
        line_id, stops, arrivals, config=settings.estimator, hook=estimator_hook(),
    )
    return VehiclesResponse(
        line_id=line_id,
        vehicles=vehicles,
        stops=stops,
        route_geometry=shape,
        degraded=problem is not None,
        detail=problem,
    )
