import os
import json
from dataclasses import dataclass, field
from typing import Any, Dict


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Heuristic constants of the position estimator.

    minutes_per_stop and interpolation_cap are approximations: neither has
    been checked against real vehicle positions.
    """
    anchor_ceiling_minutes: float = 15
    minutes_per_stop: float = 5.0
    interpolation_cap: float = 0.8

    def __post_init__(self):
        if self.anchor_ceiling_minutes < 0:
            raise ValueError("anchor_ceiling_minutes must be >= 0")
        if self.minutes_per_stop <= 0:
            raise ValueError("minutes_per_stop must be > 0")
        if not 0 < self.interpolation_cap <= 1:
            raise ValueError("interpolation_cap must be in (0, 1]")

    @classmethod
    def from_env(cls) -> "EstimatorConfig":
        return cls(
            anchor_ceiling_minutes=_env_float("BUSRADAR_ANCHOR_CEILING", cls.anchor_ceiling_minutes),
            minutes_per_stop=_env_float("BUSRADAR_MINUTES_PER_STOP", cls.minutes_per_stop),
            interpolation_cap=_env_float("BUSRADAR_INTERPOLATION_CAP", cls.interpolation_cap),
        )


@dataclass(frozen=True)
class Settings:
    provider: str = "dbus"
    provider_opts: Dict[str, Any] = field(default_factory=dict)
    route_geometry: str = "osrm"
    frontend_origin: str = "http://localhost:5173"
    log_level: str = "INFO"
    debug: bool = False
    geometry_ttl: float = 600.0
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        opts_raw = os.getenv("PROVIDER_OPTS", "{}")
        try:
            opts = json.loads(opts_raw)
        except json.JSONDecodeError:
            opts = {}
        if not isinstance(opts, dict):
            opts = {}
        return cls(
            provider=os.getenv("PROVIDER", "dbus"),
            provider_opts=opts,
            route_geometry=os.getenv("ROUTE_GEOMETRY", "osrm").lower(),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:5173"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            debug=_env_bool("BUSRADAR_DEBUG"),
            geometry_ttl=_env_float("BUSRADAR_GEOMETRY_TTL", 600.0),
            estimator=EstimatorConfig.from_env(),
        )
