import asyncio
from datetime import datetime
from urllib.parse import parse_qs

import httpx
import pytest

from busradar.providers.base import ProviderError
from busradar.providers.dbus import (
    DbusProvider,
    parse_arrival,
    parse_line_page,
    parse_markers,
)

LINE_PAGE = """
<html><script>
var wpgmza = {"marker_url": "https://dbus.eus/wp-content/uploads/wp-google-maps/19markers.xml"};
var ajax = {"security": "a1b2c3d4e5"};
</script></html>
"""

MARKERS = """<?xml version="1.0" encoding="UTF-8"?>
<markers>
  <marker><marker_id>501</marker_id><map_id>19</map_id><title_es>Larratxo</title_es>
    <parada_id>2711</parada_id><address>43.3100,-1.9500</address></marker>
  <marker><marker_id>502</marker_id><map_id>19</map_id><title_es>Intxaurrondo</title_es>
    <parada_id>2712</parada_id><address>43.3150,-1.9600</address></marker>
  <marker><marker_id>503</marker_id><map_id>19</map_id><title_es><![CDATA[Berio]]></title_es>
    <parada_id>2713</parada_id><address>43.3200,-1.9700</address></marker>
</markers>
"""

ETAS = {"2711": 9, "2712": 3, "2713": None}


def answer(line, minutes):
    return f'<p>Linea {line}:  "Berio-Igara": {minutes} min.</p>'


def fixed_now():
    return datetime(2024, 5, 17, 8, 42)


def make_provider(handler, **kwargs):
    return DbusProvider(transport=httpx.MockTransport(handler), batch_pause=0, now=fixed_now, **kwargs)


def dbus_handler(posts=None, failing=()):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/es/"):
            return httpx.Response(200, text=LINE_PAGE)
        if path.endswith("markers.xml"):
            return httpx.Response(200, text=MARKERS)
        if path == "/wp-admin/admin-ajax.php":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if posts is not None:
                posts.append(form)
            if form["parada"] in failing:
                raise httpx.ConnectError("refused", request=request)
            eta = ETAS.get(form["parada"])
            return httpx.Response(200, text=answer(33, eta) if eta is not None else "<p>Sin datos</p>")
        return httpx.Response(404)
    return handler


# ---- parsing ----

def test_parse_line_page():
    assert parse_line_page(LINE_PAGE) == ("a1b2c3d4e5", 19)


def test_parse_line_page_fallback_nonce():
    html = "<a href='/x/7markers.xml'></a><div data-x='0123456789'></div>"
    assert parse_line_page(html) == ("0123456789", 7)


def test_parse_line_page_without_map_id():
    with pytest.raises(ProviderError):
        parse_line_page("<html>security: 'abcdef'</html>")


def test_parse_line_page_without_nonce():
    with pytest.raises(ProviderError):
        parse_line_page("<html>12markers.xml</html>")


def test_parse_markers_keeps_both_identifiers_and_order():
    stops = parse_markers(MARKERS)
    assert [s.id for s in stops] == ["501", "502", "503"]
    assert [s.code for s in stops] == ["2711", "2712", "2713"]
    assert [s.sequence_index for s in stops] == [0, 1, 2]
    assert stops[2].display_name == "Berio"
    assert (stops[0].latitude, stops[0].longitude) == (43.31, -1.95)


def test_parse_markers_empty_document():
    assert parse_markers("<markers></markers>") == []


def test_parse_markers_rejects_garbage():
    with pytest.raises(ProviderError):
        parse_markers("<markers>")


def test_parse_arrival_strips_leading_zero():
    sample = parse_arrival("05", "2711", 'Linea 5:  "Benta Berri": 7 min.')
    assert sample.eta_minutes == 7
    assert sample.direction == "Benta Berri"
    assert sample.stop_code == "2711"


def test_parse_arrival_ignores_other_lines():
    sample = parse_arrival("33", "2711", 'Linea 5:  "Benta Berri": 7 min.')
    assert sample.eta_minutes is None
    assert sample.direction is None
    assert "Linea 5" in sample.raw_text


def test_parse_arrival_takes_first_match():
    html = 'Linea 33:  "Berio-Igara": 4 min. Linea 33:  "Berio-Igara": 19 min.'
    assert parse_arrival("33", "2711", html).eta_minutes == 4


# ---- provider ----

def test_catalogue_lookup():
    provider = DbusProvider()
    assert provider.get_line("33").map_id == 19
    assert provider.get_line("99") is None
    assert any(line.line_id == "B10" for line in provider.list_lines())


def test_get_stops_scrapes_map_id_and_caches():
    requests = []

    def handler(request):
        requests.append(request.url.path)
        return dbus_handler()(request)

    provider = make_provider(handler)
    line = provider.get_line("33")

    async def main():
        first = await provider.get_stops(line)
        second = await provider.get_stops(line)
        return first, second

    first, second = asyncio.run(main())
    assert [s.code for s in first] == ["2711", "2712", "2713"]
    assert first == second
    assert requests == ["/es/33-larratxo-intxaur-berio-igara/", "/wp-content/uploads/wp-google-maps/19markers.xml"]


def test_get_stops_line_page_error():
    provider = make_provider(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(ProviderError):
        asyncio.run(provider.get_stops(provider.get_line("33")))


def test_get_arrivals_posts_stop_code_and_local_time():
    posts = []
    provider = make_provider(dbus_handler(posts))
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        return await provider.get_arrivals(line, stops)

    samples = asyncio.run(main())
    assert [(s.stop_code, s.eta_minutes) for s in samples] == [("2711", 9), ("2712", 3), ("2713", None)]
    assert sorted(p["parada"] for p in posts) == ["2711", "2712", "2713"]
    form = posts[0]
    assert form["action"] == "calcula_parada"
    assert form["security"] == "a1b2c3d4e5"
    assert form["linea"] == "33"
    assert (form["dia"], form["mes"], form["year"], form["hora"], form["minuto"]) == ("17", "5", "2024", "8", "42")


def test_get_arrivals_batches_preserve_order():
    provider = make_provider(dbus_handler(), batch_size=2)
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        return await provider.get_arrivals(line, stops)

    assert [s.stop_code for s in asyncio.run(main())] == ["2711", "2712", "2713"]


def test_failed_stop_becomes_empty_sample():
    provider = make_provider(dbus_handler(failing={"2712"}), retries=2)
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        return await provider.get_arrivals(line, stops)

    samples = asyncio.run(main())
    assert [s.eta_minutes for s in samples] == [9, None, None]


def test_all_stops_failing_raises():
    provider = make_provider(dbus_handler(failing={"2711", "2712", "2713"}))
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        return await provider.get_arrivals(line, stops)

    with pytest.raises(ProviderError):
        asyncio.run(main())


def test_retry_recovers_transient_error():
    attempts = {"n": 0}
    base = dbus_handler()

    def handler(request):
        if request.url.path == "/wp-admin/admin-ajax.php":
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise httpx.ReadTimeout("slow", request=request)
        return base(request)

    provider = make_provider(handler, retries=1)
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        return await provider.get_arrivals(line, stops[:1])

    assert asyncio.run(main())[0].eta_minutes == 9


def test_rejected_nonce_forces_fresh_line_page():
    pages = iter([
        LINE_PAGE.replace("a1b2c3d4e5", "aaaaaaaaaa"),
        LINE_PAGE.replace("a1b2c3d4e5", "bbbbbbbbbb"),
    ])
    nonces_sent = []

    def handler(request):
        path = request.url.path
        if path.startswith("/es/"):
            return httpx.Response(200, text=next(pages))
        if path == "/wp-admin/admin-ajax.php":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            nonces_sent.append(form["security"])
            if form["security"] == "aaaaaaaaaa":
                return httpx.Response(403, text="-1")
            return httpx.Response(200, text=answer(33, ETAS[form["parada"]] or 20))
        return dbus_handler()(request)

    provider = make_provider(handler)
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        with pytest.raises(ProviderError):
            await provider.get_arrivals(line, stops)
        return await provider.get_arrivals(line, stops)

    samples = asyncio.run(main())
    assert [s.eta_minutes for s in samples] == [9, 3, 20]
    assert set(nonces_sent[:3]) == {"aaaaaaaaaa"}
    assert set(nonces_sent[3:]) == {"bbbbbbbbbb"}


def test_minus_one_body_counts_as_rejected_nonce():
    def handler(request):
        if request.url.path == "/wp-admin/admin-ajax.php":
            return httpx.Response(200, text="-1")
        return dbus_handler()(request)

    provider = make_provider(handler)
    line = provider.get_line("33")

    async def main():
        stops = await provider.get_stops(line)
        with pytest.raises(ProviderError):
            await provider.get_arrivals(line, stops)

    asyncio.run(main())
    assert provider.line_data.peek(line.slug) is None
