from typing import List, Optional, Sequence

import pytest

from busradar.models import ArrivalSample, Stop


def make_stops(n: int) -> List[Stop]:
    """Stops marching north, 0.01 degrees apart. id and code deliberately differ."""
    return [
        Stop(
            id=f"m{i}",
            code=f"{2700 + i}",
            display_name=f"Stop {i}",
            latitude=43.30 + i * 0.01,
            longitude=-1.98,
            sequence_index=i,
        )
        for i in range(n)
    ]


def make_samples(stops: Sequence[Stop], etas: Sequence[Optional[int]], direction: Optional[str] = None) -> List[ArrivalSample]:
    return [
        ArrivalSample(stop_code=s.code, eta_minutes=eta, direction=direction if eta is not None else None)
        for s, eta in zip(stops, etas)
    ]


@pytest.fixture()
def route():
    def build(etas, direction=None):
        stops = make_stops(len(etas))
        return stops, make_samples(stops, etas, direction)
    return build
