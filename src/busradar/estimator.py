"""
Vehicle position estimation from a single snapshot of per-stop ETAs.

There is no vehicle telemetry: a vehicle is inferred wherever the ETA
sequence along the route has a local minimum, because ETAs grow again on
both sides of the stop the vehicle is about to reach.

    samples --build_arrival_index--> {stop_code: sample}
            --detect_anchors--------> anchor stops (route order)
            --interpolate_position--> coordinates
            --project_stops_ahead---> downstream stops + ETAs

Everything here is pure: no I/O, no shared state.
"""
import re
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence

from .config import EstimatorConfig
from .geo import interpolate_position
from .models import ArrivalSample, DetectedVehicle, Stop, StopProjection

Hook = Callable[[str], None]

DEFAULT_DIRECTION = "route"


def _noop(message: str) -> None:
    return None


class EtaPoint(NamedTuple):
    stop: Stop
    eta_minutes: int
    route_index: int
    direction: Optional[str]


def build_arrival_index(samples: Iterable[ArrivalSample]) -> Dict[str, ArrivalSample]:
    """Map stop code -> usable sample. Later samples for the same code win."""
    index: Dict[str, ArrivalSample] = {}
    for sample in samples:
        if sample.eta_minutes is not None:
            index[sample.stop_code] = sample
    return index


def eta_points(stops: Sequence[Stop], index: Dict[str, ArrivalSample]) -> List[EtaPoint]:
    points: List[EtaPoint] = []
    for i, stop in enumerate(stops):
        sample = index.get(stop.code)
        if sample is None:
            continue
        points.append(EtaPoint(stop, sample.eta_minutes, i, sample.direction))
    return points


def detect_anchors(
    stops: Sequence[Stop],
    index: Dict[str, ArrivalSample],
    config: Optional[EstimatorConfig] = None,
    hook: Optional[Hook] = None,
) -> List[EtaPoint]:
    """
    Return the stops that look like the next stop of a distinct vehicle.

    Neighbours are taken within the ETA-bearing stops only, so gaps in
    coverage are skipped. A run of equal ETAs is one candidate, anchored on
    its first stop; it counts when the values on both sides of the run are
    strictly higher (a missing side counts as higher) and its ETA is within
    the anchor ceiling.
    """
    config = config or EstimatorConfig()
    hook = hook or _noop
    points = eta_points(stops, index)

    anchors: List[EtaPoint] = []
    n = len(points)
    i = 0
    while i < n:
        eta = points[i].eta_minutes
        j = i
        while j + 1 < n and points[j + 1].eta_minutes == eta:
            j += 1

        lower_than_before = i == 0 or points[i - 1].eta_minutes > eta
        lower_than_after = j == n - 1 or points[j + 1].eta_minutes > eta
        if lower_than_before and lower_than_after:
            if eta <= config.anchor_ceiling_minutes:
                anchors.append(points[i])
                hook(f"anchor at stop {points[i].stop.id} (route index {points[i].route_index}, eta {eta} min)")
            else:
                hook(f"minimum at stop {points[i].stop.id} ignored: eta {eta} min over ceiling")
        i = j + 1

    return anchors


def project_stops_ahead(
    stops: Sequence[Stop],
    index: Dict[str, ArrivalSample],
    anchor_index: int,
) -> List[StopProjection]:
    projections = []
    for stop in stops[anchor_index:]:
        sample = index.get(stop.code)
        projections.append(StopProjection(
            stop_id=stop.id,
            stop_code=stop.code,
            display_name=stop.display_name,
            latitude=stop.latitude,
            longitude=stop.longitude,
            eta_minutes=sample.eta_minutes if sample is not None else None,
        ))
    return projections


def direction_tag(direction: Optional[str]) -> str:
    if not direction or direction.strip().lower() == "unknown":
        return DEFAULT_DIRECTION
    slug = re.sub(r"[^a-z0-9]+", "-", direction.lower()).strip("-")
    return slug or DEFAULT_DIRECTION


def estimate_vehicle_positions(
    line_id: str,
    stops: Sequence[Stop],
    samples: Iterable[ArrivalSample],
    config: Optional[EstimatorConfig] = None,
    hook: Optional[Hook] = None,
) -> List[DetectedVehicle]:
    """
    Estimate where the vehicles of a line are right now.

    `stops` must already be in route order. Samples for codes that are not
    on the route are ignored. Returns one vehicle per anchor, in route order,
    or [] when there is no usable ETA at all.
    """
    if stops is None:
        raise ValueError("stops is required")
    if samples is None:
        raise ValueError("samples is required")
    config = config or EstimatorConfig()
    hook = hook or _noop

    index = build_arrival_index(samples)
    hook(f"line {line_id}: {len(index)} usable samples for {len(stops)} stops")
    if not index:
        return []

    vehicles: List[DetectedVehicle] = []
    for ordinal, anchor in enumerate(detect_anchors(stops, index, config, hook)):
        k = anchor.route_index
        previous = stops[k - 1] if k > 0 else stops[k]
        lat, lng = interpolate_position(
            (anchor.stop.latitude, anchor.stop.longitude),
            (previous.latitude, previous.longitude),
            anchor.eta_minutes,
            config.minutes_per_stop,
            config.interpolation_cap,
        )
        tag = direction_tag(anchor.direction)
        vehicles.append(DetectedVehicle(
            id=f"{line_id}-{tag}-{ordinal}",
            line_id=line_id,
            direction=anchor.direction or DEFAULT_DIRECTION,
            latitude=lat,
            longitude=lng,
            anchor_stop_id=anchor.stop.id,
            anchor_stop_name=anchor.stop.display_name,
            eta_to_anchor_minutes=max(anchor.eta_minutes, 0),
            stops_ahead=project_stops_ahead(stops, index, k),
        ))

    hook(f"line {line_id}: {len(vehicles)} vehicles detected")
    return vehicles
