from .estimator import build_arrival_index, detect_anchors, estimate_vehicle_positions
from .geo import haversine_km, interpolate_position

__all__ = [
    "build_arrival_index",
    "detect_anchors",
    "estimate_vehicle_positions",
    "haversine_km",
    "interpolate_position",
]
