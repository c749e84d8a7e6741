from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Tuple
from datetime import datetime, timezone


class Stop(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Routing-system identity (map marker id)")
    code: str = Field(..., description="Code used to request the stop's ETA; not interchangeable with id")
    display_name: str = ""
    latitude: float
    longitude: float
    sequence_index: int = Field(..., ge=0, description="0-based position in route order")


class ArrivalSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    stop_code: str
    eta_minutes: Optional[int] = Field(None, description="None when no estimate is available right now")
    direction: Optional[str] = Field(None, description="Direction hint reported upstream, e.g. a destination name")
    raw_text: str = Field("", description="Upstream response text, diagnostics only")


class StopProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    stop_id: str
    stop_code: str
    display_name: str
    latitude: float
    longitude: float
    eta_minutes: Optional[int] = None


class DetectedVehicle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="line-direction-ordinal, unique within one estimation")
    line_id: str
    direction: str
    latitude: float
    longitude: float
    anchor_stop_id: str
    anchor_stop_name: str
    eta_to_anchor_minutes: int = Field(..., ge=0)
    stops_ahead: List[StopProjection] = Field(default_factory=list)


class BusLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_id: str
    name: str
    map_id: int
    slug: str


class LinesResponse(BaseModel):
    lines: List[BusLine]


class StopsResponse(BaseModel):
    line_id: str
    stops: List[Stop]


class ArrivalsResponse(BaseModel):
    line_id: str
    arrivals: List[ArrivalSample]


class ShapeResponse(BaseModel):
    line_id: str
    route_geometry: List[Tuple[float, float]] = Field(default_factory=list, description="(lat, lng) pairs")


class VehiclesResponse(BaseModel):
    line_id: str
    vehicles: List[DetectedVehicle]
    stops: List[Stop]
    route_geometry: List[Tuple[float, float]] = Field(default_factory=list)
    degraded: bool = Field(False, description="True when live arrivals could not be retrieved")
    detail: Optional[str] = None
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
