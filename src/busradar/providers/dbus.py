# src/busradar/providers/dbus.py
"""
DBUS (Donostia / San Sebastián) collaborator.

dbus.eus publishes no vehicle feed. What it has:
  - one WordPress page per line, carrying an AJAX nonce and the id of the
    Google-Maps marker file for that line,
  - the marker file itself (ordered stops, with marker_id and parada_id),
  - an AJAX action answering "next bus at this stop" as HTML text.

The ETA request needs the stop's parada_id (Stop.code), never marker_id.
"""
import re
import asyncio
import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import httpx

from ..cache import TTLCache
from ..models import ArrivalSample, BusLine, Stop
from .base import ProviderError

logger = logging.getLogger(__name__)

DBUS_BASE = "https://dbus.eus"
DBUS_TZ = ZoneInfo("Europe/Madrid")
BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Accept": "text/html",
}

LINES: List[BusLine] = [
    BusLine(line_id=line_id, name=name, map_id=map_id, slug=slug)
    for line_id, name, map_id, slug in [
        ("05", "Benta Berri", 5, "05-benta-berri"),
        ("08", "Gros-Intxaurrondo", 8, "08-gros-intxaurrondo"),
        ("09", "Egia-Intxaurrondo", 9, "09-egia-intxaurrondo"),
        ("13", "Altza", 13, "13-altza"),
        ("14", "Bidebieta", 14, "14-bidebieta"),
        ("16", "Igeldo", 16, "16-igeldo"),
        ("17", "Gros-Amara-Miramon", 17, "17-gros-amara-miramon"),
        ("18", "Seminarioa", 18, "18-seminarioa"),
        ("19", "Aiete-Bera Bera", 4, "19-aiete-bera-bera"),
        ("21", "Amara-Mutualitateak", 21, "21-amara-mutualitateak"),
        ("23", "Errondo-Puio", 23, "23-errondo-puio"),
        ("24", "Altza-Gros-Antiguo-Intxaurrondo", 24, "24-altza-gros-antiguo-intxaurrondo"),
        ("25", "BentaBerri-Añorga", 25, "25-bentaberri-anorga"),
        ("26", "Amara-Martutene", 26, "26-amara-martutene"),
        ("27", "Altza-Intxaurrondo-Antiguo-Gros", 27, "27-altza-intxaurrondo-antiguo-gros"),
        ("28", "Amara-Ospitaleak", 28, "28-amara-ospitaleak"),
        ("29", "Intxaurrondo Sur", 29, "29-intxaurrondo-sur"),
        ("31", "Intxaurrondo-Ospitaleak-Altza", 31, "31-intxaurrondo-ospitaleak-altza"),
        ("32", "Puio-Errondo", 32, "32-puio-errondo"),
        ("33", "Larratxo-Intxaur-Berio-Igara", 19, "33-larratxo-intxaur-berio-igara"),
        ("35", "Antiguo-Aiete-Ospitaleak", 35, "35-antiguo-aiete-ospitaleak"),
        ("36", "Aldakonea-San Roke", 36, "36-aldakonea-san-roke"),
        ("37", "Rodil-Zorroaga", 37, "37-rodil-zorroaga"),
        ("38", "Trintxerpe-Altza-Molinao", 38, "38-trintxerpe-altza-molinao"),
        ("39", "Urgull", 39, "39-urgull"),
        ("40", "Gros-Antiguo-Igara", 40, "40-gros-antiguo-igara"),
        ("41", "Gros-Egia-Martutene", 41, "41-gros-egia-martutene"),
        ("42", "Aldapa-Egia", 42, "42-aldapa-egia"),
        ("43", "Anoeta-Igara", 43, "43-anoeta-igara"),
        ("45", "Estaciones-Antiguo-Aiete", 45, "45-estaciones-renfe-bus-geltokiak-antiguo-aiete"),
        ("46", "San Antonio-Morlans", 46, "46-san-antonio-morlans"),
        ("B1", "Benta Berri-Berio-Añorga", 101, "b1-benta-berri-berio-anorga"),
        ("B2", "Aiete-Bera Bera", 102, "b2-aiete-bera-bera"),
        ("B3", "Egia-Intxaurrondo", 103, "b3-egia-intxaurrondo"),
        ("B4", "Amara-Riberas-Martutene", 104, "b4-amara-riberas-martutene"),
        ("B6", "Altza", 106, "b6-altza"),
        ("B7", "Igeldo", 107, "b7-igeldo"),
        ("B8", "Miraconcha-BentaBerri-Seminario", 108, "b8-miraconcha-bentaberri-seminario"),
        ("B9", "Amara-Errondo-Puio", 109, "b9-amara-errondo-puio"),
        ("B10", "Zubiaurre-Bidebieta-Buenavista", 110, "b10-zubiaurre-bidebieta-buenavista"),
    ]
]

MAP_ID_RE = re.compile(r"(\d+)markers\.xml")
NONCE_RES = [
    re.compile(r"""security["']?\s*[:=]\s*["']([a-f0-9]+)["']""", re.I),
    re.compile(r"""nonce["']?\s*[:=]\s*["']([a-f0-9]+)["']""", re.I),
]
NONCE_FALLBACK_RE = re.compile(r"""["']([a-f0-9]{10})["']""", re.I)


class NonceRejected(ProviderError):
    """The AJAX endpoint refused the nonce (HTTP 403 or a bare "-1" body)."""


def parse_line_page(html: str) -> Tuple[str, int]:
    """Extract (nonce, map_id) from a line page."""
    m = MAP_ID_RE.search(html)
    if not m:
        raise ProviderError("could not find map id in line page")
    map_id = int(m.group(1))

    nonce = ""
    for pattern in NONCE_RES:
        m = pattern.search(html)
        if m:
            nonce = m.group(1)
            break
    if not nonce:
        m = NONCE_FALLBACK_RE.search(html)
        if m:
            nonce = m.group(1)
    if not nonce:
        raise ProviderError("could not find nonce in line page")
    return nonce, map_id


def parse_markers(xml_text: str) -> List[Stop]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ProviderError(f"invalid markers XML: {e}") from e

    def val(marker, tag):
        return (marker.findtext(tag) or "").strip()

    stops: List[Stop] = []
    for i, marker in enumerate(root.iter("marker")):
        try:
            lat, lng = (float(x) for x in (val(marker, "address") or "0,0").split(",")[:2])
        except ValueError:
            lat, lng = 0.0, 0.0
        stops.append(Stop(
            id=val(marker, "marker_id"),
            code=val(marker, "parada_id"),
            display_name=val(marker, "title_es"),
            latitude=lat,
            longitude=lng,
            sequence_index=i,
        ))
    return stops


def parse_arrival(line_id: str, stop_code: str, html: str) -> ArrivalSample:
    """
    The answer holds entries like: Linea 33:  "Berio-Igara": 10 min.
    Upstream writes line numbers without leading zeros ("Linea 5", not "05").
    """
    number = line_id.lstrip("0") or line_id
    pattern = re.compile(rf'Linea\s+{re.escape(number)}:\s+"([^"]+)":\s*(\d+)\s*min', re.I)
    m = pattern.search(html)
    if not m:
        return ArrivalSample(stop_code=stop_code, eta_minutes=None, direction=None, raw_text=html)
    return ArrivalSample(stop_code=stop_code, eta_minutes=int(m.group(2)), direction=m.group(1), raw_text=html)


class DbusProvider:
    def __init__(
        self,
        base_url: str = DBUS_BASE,
        verify_ssl: bool = False,
        timeout: float = 10.0,
        batch_size: int = 10,
        batch_pause: float = 0.05,
        retries: int = 1,
        cache_ttl: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = lambda: datetime.now(DBUS_TZ),
        **_,
    ):
        self.base_url = base_url.rstrip("/")
        # dbus.eus has served an incomplete certificate chain
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.batch_size = max(1, int(batch_size))
        self.batch_pause = batch_pause
        self.retries = max(0, int(retries))
        self.transport = transport
        self.now = now
        self.line_data = TTLCache(cache_ttl)
        self.stops_cache = TTLCache(cache_ttl)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            verify=self.verify_ssl,
            transport=self.transport,
        )

    # ---- catalogue ----
    def list_lines(self) -> List[BusLine]:
        return list(LINES)

    def get_line(self, line_id: str) -> Optional[BusLine]:
        for line in LINES:
            if line.line_id == line_id:
                return line
        return None

    # ---- line page ----
    async def get_line_data(self, line: BusLine) -> Tuple[str, int]:
        async def fetch():
            url = f"{self.base_url}/es/{line.slug}/"
            logger.info("fetching line page %s", url)
            try:
                async with self._client() as client:
                    r = await client.get(url, headers=BROWSER_HEADERS)
                    r.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProviderError(f"line page HTTP {e.response.status_code}: {e.response.text[:200]}") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"line page request failed: {e}") from e
            nonce, map_id = parse_line_page(r.text)
            logger.debug("line %s: map id %s, nonce %s", line.line_id, map_id, nonce)
            return nonce, map_id

        return await self.line_data.get_or_fetch(line.slug, fetch, stale_on_error=True)

    # ---- stops ----
    async def get_stops(self, line: BusLine) -> List[Stop]:
        _, map_id = await self.get_line_data(line)

        async def fetch():
            url = f"{self.base_url}/wp-content/uploads/wp-google-maps/{map_id}markers.xml"
            try:
                async with self._client() as client:
                    r = await client.get(url)
                    r.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProviderError(f"markers HTTP {e.response.status_code}: {e.response.text[:200]}") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"markers request failed: {e}") from e
            stops = parse_markers(r.text)
            logger.info("line %s: %d stops", line.line_id, len(stops))
            return stops

        return await self.stops_cache.get_or_fetch(map_id, fetch, stale_on_error=True)

    # ---- arrivals ----
    async def _post_arrival(self, client: httpx.AsyncClient, line: BusLine, stop_code: str, nonce: str) -> str:
        now = self.now()
        form = {
            "action": "calcula_parada",
            "security": nonce,
            "linea": line.line_id,
            "parada": stop_code,
            "dia": str(now.day),
            "mes": str(now.month),
            "year": str(now.year),
            "hora": str(now.hour),
            "minuto": str(now.minute),
        }
        attempt = 0
        while True:
            try:
                r = await client.post(
                    f"{self.base_url}/wp-admin/admin-ajax.php",
                    data=form,
                    headers={"Accept": "*/*"},
                )
                if r.status_code == 403 or r.text.strip() == "-1":
                    raise NonceRejected(f"nonce rejected for stop {stop_code} (HTTP {r.status_code})")
                r.raise_for_status()
                return r.text
            except httpx.TransportError:
                if attempt >= self.retries:
                    raise
                attempt += 1

    async def get_arrival(self, client: httpx.AsyncClient, line: BusLine, stop_code: str, nonce: str) -> ArrivalSample:
        html = await self._post_arrival(client, line, stop_code, nonce)
        return parse_arrival(line.line_id, stop_code, html)

    async def get_arrivals(self, line: BusLine, stops: Sequence[Stop]) -> List[ArrivalSample]:
        nonce, _ = await self.get_line_data(line)

        coded = [s for s in stops if s.code]
        if len(coded) != len(stops):
            logger.warning("line %s: %d stops have no code", line.line_id, len(stops) - len(coded))
        if not coded:
            return []

        results: List[ArrivalSample] = []
        failures = 0
        rejected = False
        async with self._client() as client:
            for start in range(0, len(coded), self.batch_size):
                batch = coded[start:start + self.batch_size]
                outcomes = await asyncio.gather(
                    *(self.get_arrival(client, line, s.code, nonce) for s in batch),
                    return_exceptions=True,
                )
                for stop, outcome in zip(batch, outcomes):
                    if isinstance(outcome, (httpx.HTTPError, NonceRejected)):
                        failures += 1
                        rejected = rejected or isinstance(outcome, NonceRejected)
                        logger.warning("arrival for stop %s failed: %s", stop.code, outcome)
                        results.append(ArrivalSample(stop_code=stop.code, eta_minutes=None))
                    elif isinstance(outcome, BaseException):
                        raise outcome
                    else:
                        results.append(outcome)
                if start + self.batch_size < len(coded):
                    await asyncio.sleep(self.batch_pause)

        if rejected or failures == len(coded):
            # the next call re-scrapes the line page for a fresh nonce
            self.line_data.invalidate(line.slug)
        if failures == len(coded):
            raise ProviderError(f"all {failures} arrival requests failed for line {line.line_id}")

        with_eta = sum(1 for a in results if a.eta_minutes is not None)
        logger.info("line %s: %d/%d stops with ETA", line.line_id, with_eta, len(results))
        return results
