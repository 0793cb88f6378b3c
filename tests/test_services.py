import io
from datetime import datetime

import httpx
import PIL.Image
import pytest
from openpyxl import load_workbook

from utilbot.errors import GeocodingError, OcrServiceError
from utilbot.services import (
    Geocoder, GeotagRenderer, OcrClient, RateLimiter, RoutingClient, WorkbookWriter, degrees_to_dms,
    filter_listing, haversine_m, image_anchor, sheet_title, split_address_into_lines
)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _jpeg(width=320, height=240):
    buffer = io.BytesIO()
    PIL.Image.new("RGB", (width, height), (10, 120, 200)).save(buffer, "JPEG")
    return buffer.getvalue()


# --- GEOMETRY ---
def test_haversine_known_distance():
    # One degree of latitude is roughly 111.2 km.
    assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)
    assert haversine_m(-6.2, 106.8, -6.2, 106.8) == 0


def test_degrees_to_dms_hemispheres():
    lat, lon = degrees_to_dms(-6.5, 106.25)
    assert lat == "6°30'0\" S"
    assert lon == "106°15'0\" E"


def test_split_address_into_lines():
    assert split_address_into_lines("Short street") == ["Short street"]
    long_address = ", ".join(["Jalan Panjang Sekali Nomor 123"] * 10)
    lines = split_address_into_lines(long_address, 75, 3)
    assert len(lines) == 3
    assert all(len(line) <= 75 for line in lines)
    assert lines[-1].endswith("...")


# --- ROUTING ---
@pytest.mark.asyncio
async def test_routing_without_key_uses_straight_line():
    async with _client(lambda request: httpx.Response(500)) as client:
        result = await RoutingClient(client, "").route(0, 0, 1, 0, "car")
    assert result.estimated
    assert result.distance_m == pytest.approx(111_195, rel=1e-3)
    # 50 km/h
    assert result.duration_s == pytest.approx(result.distance_m / (50 / 3.6))


@pytest.mark.asyncio
async def test_routing_uses_ors_summary_and_profile():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["start"] = request.url.params["start"]
        return httpx.Response(200, json={
            "features": [{"properties": {"summary": {"distance": 2345.6, "duration": 789.0}}}]
        })

    async with _client(handler) as client:
        result = await RoutingClient(client, "key").route(-6.2, 106.8, -6.3, 106.9, "foot")
    assert (result.distance_m, result.duration_s, result.estimated) == (2345.6, 789.0, False)
    assert seen["path"].endswith("/foot-walking")
    assert seen["start"] == "106.8,-6.2"


@pytest.mark.asyncio
async def test_routing_falls_back_on_http_error():
    async with _client(lambda request: httpx.Response(503)) as client:
        result = await RoutingClient(client, "key").route(0, 0, 0, 1, "motorcycle")
    assert result.estimated


# --- GEOCODING ---
@pytest.mark.asyncio
async def test_geocoder_reverse_and_forward():
    def handler(request):
        assert request.headers["User-Agent"].startswith("UtilBot")
        if request.url.path == "/reverse":
            return httpx.Response(200, json={"display_name": "Monas, Jakarta"})
        return httpx.Response(200, json=[{"lat": "-6.175", "lon": "106.827", "display_name": "Monas"}])

    async with _client(handler) as client:
        geocoder = Geocoder(client, RateLimiter(max_requests=100, period_seconds=1))
        assert await geocoder.address_for(-6.175, 106.827) == "Monas, Jakarta"
        result = await geocoder.coordinates_for("monas")
    assert (result.latitude, result.longitude, result.display_name) == (-6.175, 106.827, "Monas")


@pytest.mark.asyncio
async def test_geocoder_empty_search_and_errors():
    def handler(request):
        if request.url.path == "/search":
            return httpx.Response(200, json=[])
        return httpx.Response(502)

    async with _client(handler) as client:
        geocoder = Geocoder(client, RateLimiter(max_requests=100, period_seconds=1))
        assert await geocoder.coordinates_for("nowhere") is None
        with pytest.raises(GeocodingError):
            await geocoder.address_for(0, 0)


# --- OCR ---
@pytest.mark.asyncio
async def test_ocr_client_parses_text(tmp_path):
    image = tmp_path / "scan.jpg"
    image.write_bytes(_jpeg())

    def handler(request):
        return httpx.Response(200, json={"ParsedResults": [{"ParsedText": "  HELLO  \n"}]})

    async with _client(handler) as client:
        assert await OcrClient(client, "k").extract_text(image) == "HELLO"


@pytest.mark.asyncio
async def test_ocr_client_reports_processing_errors(tmp_path):
    image = tmp_path / "scan.jpg"
    image.write_bytes(_jpeg())

    def handler(request):
        return httpx.Response(200, json={"IsErroredOnProcessing": True, "ErrorMessage": ["bad image"]})

    async with _client(handler) as client:
        with pytest.raises(OcrServiceError):
            await OcrClient(client, "k").extract_text(image)


# --- ARCHIVE ---
def test_filter_listing_is_case_insensitive_glob():
    listing = ["  photos/A.JPG", "docs/readme.txt", "", "photos/b.jpeg"]
    assert filter_listing(listing, "*.jpg") == ["photos/A.JPG"]
    assert filter_listing(listing, "readme") == ["docs/readme.txt"]


# --- GEOTAGS ---
@pytest.mark.asyncio
async def test_geotag_render_keeps_photo_size_without_map_key():
    class FailingGeocoder:
        async def address_for(self, latitude, longitude):
            raise GeocodingError("offline")

    async with _client(lambda request: httpx.Response(500)) as client:
        renderer = GeotagRenderer(client, FailingGeocoder(), "")
        tagged = await renderer.render(_jpeg(800, 600), -6.2, 106.8, datetime(2024, 1, 20, 10, 30))

    with PIL.Image.open(io.BytesIO(tagged)) as image:
        assert image.format == "JPEG"
        assert image.size == (800, 600)


# --- WORKBOOK ---
def test_sheet_title_sanitizes_and_deduplicates():
    used = set()
    assert sheet_title("Site: A/B", used) == "Site_ A_B"
    assert sheet_title("site: a/b", used) == "site_ a_b_2"
    assert len(sheet_title("x" * 40, used)) == 31


def test_image_anchor_grid():
    assert image_anchor(0) == (1, 1)
    assert image_anchor(4) == (9, 1)
    assert image_anchor(5) == (1, 8)


def test_workbook_writer_one_sheet_per_folder(tmp_path):
    for sheet, count in (("alpha", 6), ("beta", 1)):
        folder = tmp_path / sheet
        folder.mkdir()
        for i in range(count):
            (folder / f"image_{1000 + i}_{i + 1}.jpg").write_bytes(_jpeg())

    output = WorkbookWriter().build(tmp_path, tmp_path / "ImageAllSheet.xlsx")

    workbook = load_workbook(output)
    assert workbook.sheetnames == ["alpha", "beta"]
    alpha = workbook["alpha"]
    assert alpha.column_dimensions["A"].width == 17
    assert alpha.column_dimensions["B"].width == 1
