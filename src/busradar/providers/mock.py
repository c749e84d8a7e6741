from typing import Dict, List, Optional, Sequence

from ..models import ArrivalSample, BusLine, Stop

MOCK_LINE = BusLine(line_id="M1", name="Mock Loop", map_id=0, slug="m1-mock-loop")

# A short line along the Donostia seafront: two buses, one approaching
# stop 3 and one approaching stop 7; stop 5 has no estimate.
MOCK_STOPS: List[Stop] = [
    Stop(id=f"m{i}", code=f"{2700 + i}", display_name=name, latitude=lat, longitude=lng, sequence_index=i)
    for i, (name, lat, lng) in enumerate([
        ("Antiguo", 43.3105, -2.0060),
        ("Ondarreta", 43.3123, -2.0002),
        ("Miraconcha", 43.3141, -1.9940),
        ("Pio XII", 43.3160, -1.9880),
        ("Easo", 43.3172, -1.9842),
        ("Centro", 43.3190, -1.9810),
        ("Boulevard", 43.3212, -1.9845),
        ("Gros", 43.3232, -1.9785),
    ])
]

MOCK_ETAS: Dict[str, Optional[int]] = {
    "2700": 12, "2701": 8, "2702": 4, "2703": 1,
    "2704": 6, "2705": None, "2706": 3, "2707": 7,
}


class MockProvider:
    def __init__(self, **kwargs):
        # kwargs may contain provider options; unused here
        pass

    def list_lines(self) -> List[BusLine]:
        return [MOCK_LINE]

    def get_line(self, line_id: str) -> Optional[BusLine]:
        return MOCK_LINE if line_id == MOCK_LINE.line_id else None

    async def get_stops(self, line: BusLine) -> List[Stop]:
        return list(MOCK_STOPS)

    async def get_arrivals(self, line: BusLine, stops: Sequence[Stop]) -> List[ArrivalSample]:
        return [
            ArrivalSample(
                stop_code=s.code,
                eta_minutes=MOCK_ETAS.get(s.code),
                direction="Gros" if MOCK_ETAS.get(s.code) is not None else None,
                raw_text="mock",
            )
            for s in stops
        ]
