from typing import List, Optional, Protocol, Sequence, Tuple

from ..models import ArrivalSample, BusLine, Stop


class ProviderError(RuntimeError):
    """Upstream data could not be retrieved or understood."""


class TransitProvider(Protocol):
    def list_lines(self) -> List[BusLine]:
        ...

    def get_line(self, line_id: str) -> Optional[BusLine]:
        ...

    async def get_stops(self, line: BusLine) -> List[Stop]:
        ...

    async def get_arrivals(self, line: BusLine, stops: Sequence[Stop]) -> List[ArrivalSample]:
        ...


class RouteGeometrySource(Protocol):
    async def get_geometry(self, line_id: str, stops: Sequence[Stop]) -> List[Tuple[float, float]]:
        ...
