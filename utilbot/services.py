# -*- coding: utf-8 -*-

# --- IMPORTS ---
import asyncio
import fnmatch
import io
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

# HTTP
import httpx

# Images / Spreadsheets
import PIL.Image
from PIL import ImageDraw, ImageFont
from openpyxl import Workbook
from openpyxl.drawing.image import Image as XLImage
from openpyxl.utils import get_column_letter

# Local Imports
from .constants import FALLBACK_SPEED_KMH, ORS_PROFILES
from .errors import (
    ArchiveToolError, GeocodingError, MapRenderError, OcrServiceError, RoutingError
)

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
ORS_URL = "https://api.openrouteservice.org/v2/directions"
OCR_SPACE_URL = "https://api.ocr.space/parse/image"
MAPBOX_STATIC_URL = "https://api.mapbox.com/styles/v1/mapbox/streets-v11/static"
USER_AGENT = "UtilBot/1.0 (personal project)"
EARTH_RADIUS_M = 6371e3


# --- RATE LIMITER ---
class RateLimiter:
    """Sliding-window limiter: at most `max_requests` per `period_seconds`."""

    def __init__(self, max_requests: int, period_seconds: float):
        self.max_requests = max_requests
        self.period = timedelta(seconds=period_seconds)
        self.request_timestamps = []
        self.lock = asyncio.Lock()

    async def acquire(self):
        async with self.lock:
            now = datetime.now()
            self.request_timestamps = [t for t in self.request_timestamps if now - t < self.period]

            if len(self.request_timestamps) >= self.max_requests:
                # Wait until the oldest request leaves the window
                wait_time = (self.period - (now - self.request_timestamps[0])).total_seconds() + 0.05
                if wait_time > 0:
                    logger.debug(f"Rate limit reached. Waiting {wait_time:.2f}s...")
                    await asyncio.sleep(wait_time)

            self.request_timestamps.append(datetime.now())


# --- GEOMETRY HELPERS ---
def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def degrees_to_dms(lat: float, lon: float) -> tuple[str, str]:
    def _convert(value: float, positive: str, negative: str) -> str:
        absolute = abs(value)
        degrees = int(absolute)
        minutes_full = (absolute - degrees) * 60
        minutes = int(minutes_full)
        seconds = round((minutes_full - minutes) * 60)
        return f"{degrees}°{minutes}'{seconds}\" {positive if value >= 0 else negative}"

    return _convert(lat, "N", "S"), _convert(lon, "E", "W")


def split_address_into_lines(address: str, max_chars: int = 75, max_lines: int = 3) -> list[str]:
    """Wraps an address at spaces/commas; the last allowed line is truncated with '...'."""
    lines = []
    remaining = (address or "").strip()
    while remaining and len(lines) < max_lines:
        if len(remaining) <= max_chars:
            lines.append(remaining)
            break
        if len(lines) == max_lines - 1:
            lines.append(remaining[:max_chars - 3] + "...")
            break
        break_at = max(remaining.rfind(" ", 1, max_chars + 1), remaining.rfind(",", 1, max_chars + 1))
        if break_at > 0:
            keep_separator = remaining[break_at] == ","
            lines.append(remaining[:break_at + (1 if keep_separator else 0)].strip())
            remaining = remaining[break_at + 1:].strip()
        else:
            lines.append(remaining[:max_chars])
            remaining = remaining[max_chars:].strip()
    return lines


# --- GEOCODING ---
@dataclass
class GeocodeResult:
    latitude: float
    longitude: float
    display_name: str


class Geocoder:
    """Forward and reverse geocoding through OpenStreetMap Nominatim."""

    def __init__(self, client: httpx.AsyncClient, limiter: RateLimiter | None = None):
        self.client = client
        # Nominatim usage policy: at most one request per second.
        self.limiter = limiter or RateLimiter(max_requests=1, period_seconds=1)

    async def _get(self, endpoint: str, params: dict):
        await self.limiter.acquire()
        try:
            response = await self.client.get(
                f"{NOMINATIM_URL}/{endpoint}",
                params={**params, "format": "json"},
                headers={"User-Agent": USER_AGENT},
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeocodingError(f"Nominatim {endpoint} failed: {e}") from e

    async def address_for(self, latitude: float, longitude: float) -> str | None:
        data = await self._get("reverse", {"lat": latitude, "lon": longitude, "zoom": 18})
        return data.get("display_name") if isinstance(data, dict) else None

    async def coordinates_for(self, query: str) -> GeocodeResult | None:
        data = await self._get("search", {"q": query, "limit": 1})
        if not data:
            return None
        first = data[0]
        return GeocodeResult(float(first["lat"]), float(first["lon"]), first.get("display_name", query))


# --- ROUTING ---
@dataclass
class RouteResult:
    distance_m: float
    duration_s: float
    estimated: bool = False  # True when computed from the straight-line fallback


class RoutingClient:
    """OpenRouteService directions, with a straight-line fallback."""

    def __init__(self, client: httpx.AsyncClient, api_key: str = ""):
        self.client = client
        self.api_key = api_key

    @staticmethod
    def direct(lat1: float, lon1: float, lat2: float, lon2: float) -> RouteResult:
        distance = haversine_m(lat1, lon1, lat2, lon2)
        return RouteResult(distance, distance / (FALLBACK_SPEED_KMH / 3.6), estimated=True)

    async def _fetch(self, lat1, lon1, lat2, lon2, transport_mode) -> RouteResult:
        profile = ORS_PROFILES.get(transport_mode, "driving-car")
        try:
            response = await self.client.get(
                f"{ORS_URL}/{profile}",
                params={"api_key": self.api_key, "start": f"{lon1},{lat1}", "end": f"{lon2},{lat2}"},
                headers={"Accept": "application/geo+json;charset=UTF-8"},
            )
            response.raise_for_status()
            summary = response.json()["features"][0]["properties"]["summary"]
            return RouteResult(float(summary["distance"]), float(summary["duration"]))
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            raise RoutingError(f"Route lookup failed: {e}") from e

    async def route(self, lat1: float, lon1: float, lat2: float, lon2: float, transport_mode: str) -> RouteResult:
        if not self.api_key:
            logger.warning("ORS_API_KEY not configured. Falling back to direct distance.")
            return self.direct(lat1, lon1, lat2, lon2)
        try:
            return await self._fetch(lat1, lon1, lat2, lon2, transport_mode)
        except RoutingError as e:
            logger.error(f"{e}. Falling back to direct distance.")
            return self.direct(lat1, lon1, lat2, lon2)


# --- OCR ---
class OcrClient:
    """Text extraction through the OCR.space HTTP API."""

    def __init__(self, client: httpx.AsyncClient, api_key: str = ""):
        self.client = client
        if not api_key:
            logger.warning("OCR_API_KEY not set; using the OCR.space demo key.")
        self.api_key = api_key or "helloworld"

    async def extract_text(self, image_path: Path) -> str:
        """Returns the recognized text, or an empty string when the image has none."""
        logger.info(f"Sending {Path(image_path).name} to OCR.space...")
        try:
            with open(image_path, "rb") as f:
                response = await self.client.post(
                    OCR_SPACE_URL,
                    data={
                        "apikey": self.api_key,
                        "language": "eng",
                        "isOverlayRequired": "false",
                        "scale": "true",
                        "isTable": "false",
                        "OCREngine": "2",
                    },
                    files={"file": (Path(image_path).name, f, "image/jpeg")},
                    timeout=60,
                )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, OSError, ValueError) as e:
            raise OcrServiceError(f"OCR request failed: {e}") from e

        if result.get("IsErroredOnProcessing"):
            raise OcrServiceError(f"OCR.space error: {result.get('ErrorMessage')}")
        parsed = result.get("ParsedResults") or []
        return (parsed[0].get("ParsedText") or "").strip() if parsed else ""


# --- ARCHIVE TOOLS ---
class ArchiveTool:
    """Thin async wrapper over the zip / unzip / unrar binaries."""

    async def _run(self, *args: str, cwd: Path | None = None) -> tuple[int, str, str]:
        logger.info(f"Running: {' '.join(str(a) for a in args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(a) for a in args],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError as e:
            raise ArchiveToolError(f"'{args[0]}' is not installed on the server") from e
        stdout, stderr = await proc.communicate()
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def create_archive(self, files: list, destination: Path) -> Path:
        code, _, err = await self._run("zip", "-j", destination, *files)
        if code != 0:
            raise ArchiveToolError(f"zip exited with {code}: {err.strip()}")
        return Path(destination)

    async def extract_archive(self, archive: Path, destination: Path) -> list[Path]:
        archive = Path(archive)
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        ext = archive.suffix.lower()
        if ext == ".zip":
            code, _, err = await self._run("unzip", "-o", archive, "-d", destination)
        elif ext == ".rar":
            code, _, err = await self._run("unrar", "x", "-o+", archive, f"{destination}/")
        else:
            raise ArchiveToolError(f"Unsupported archive type: {ext}")
        if code != 0:
            raise ArchiveToolError(f"Extraction exited with {code}: {err.strip()}")
        root = destination.resolve()
        return sorted(
            p for p in destination.rglob("*")
            if p.is_file() and root in p.resolve().parents
        )

    async def list_matching(self, archive: Path, pattern: str) -> list[str]:
        archive = Path(archive)
        ext = archive.suffix.lower()
        if ext == ".zip":
            code, out, err = await self._run("unzip", "-l", archive)
        elif ext == ".rar":
            code, out, err = await self._run("unrar", "lb", archive)
        else:
            raise ArchiveToolError(f"Unsupported archive type: {ext}")
        if code != 0:
            raise ArchiveToolError(f"Listing exited with {code}: {err.strip()}")
        return filter_listing(out.splitlines(), pattern)


def filter_listing(lines: list[str], pattern: str) -> list[str]:
    """Case-insensitive glob match anywhere in the line (`*.jpg` matches '.../a.JPG')."""
    glob = f"*{pattern.strip().lower()}*"
    return [line.strip() for line in lines if line.strip() and fnmatch.fnmatchcase(line.lower(), glob)]


# --- GEOTAG RENDERING ---
GEOTAG_WIDTH = 600
MAP_SIZE = 200
MAP_ZOOM = 15
PANEL_BACKGROUND = (169, 169, 169)
TEXT_PADDING = 15


def _font(size: int, bold: bool = False):
    name = "DejaVuSans-Bold.ttf" if bold else "DejaVuSans.ttf"
    try:
        return ImageFont.truetype(name, size)
    except OSError:
        return ImageFont.load_default(size=size)


def placeholder_map_tile() -> bytes:
    tile = PIL.Image.new("RGB", (MAP_SIZE, MAP_SIZE), (221, 221, 221))
    draw = ImageDraw.Draw(tile)
    draw.text((MAP_SIZE / 2, MAP_SIZE * 0.45), "Map Error", fill=(85, 85, 85), font=_font(16), anchor="mm")
    draw.text((MAP_SIZE / 2, MAP_SIZE * 0.6), "(Map fetch failed)", fill=(119, 119, 119), font=_font(10), anchor="mm")
    buffer = io.BytesIO()
    tile.save(buffer, "PNG")
    return buffer.getvalue()


def format_stamp(when: datetime) -> str:
    return when.strftime("%A, %d-%m-%Y %I:%M %p").upper()


def render_geotag_panel(map_tile: bytes, address: str, latitude: float, longitude: float, when: datetime) -> PIL.Image.Image:
    """Builds the 600px-wide panel: map on the left, address/coordinates/time on the right."""
    with PIL.Image.open(io.BytesIO(map_tile)) as tile:
        map_image = tile.convert("RGB")

    text_width = GEOTAG_WIDTH - map_image.width
    address_font, header_font, value_font = _font(10, bold=True), _font(16, bold=True), _font(16)
    address_lines = split_address_into_lines(address, 75, 3)
    lat_dms, lon_dms = degrees_to_dms(latitude, longitude)

    line_height = 20
    text_height = (
        TEXT_PADDING + len(address_lines) * 14 + 8  # address block
        + 3 * (line_height + 6)                    # header + lat + lon rows
        + 8 + line_height + TEXT_PADDING           # date line
    )
    height = max(map_image.height, text_height)

    panel = PIL.Image.new("RGB", (GEOTAG_WIDTH, height), PANEL_BACKGROUND)
    panel.paste(map_image, (0, (height - map_image.height) // 2))
    draw = ImageDraw.Draw(panel)
    white = (255, 255, 255)
    x = map_image.width + TEXT_PADDING
    middle = map_image.width + text_width // 2

    y = TEXT_PADDING
    for line in address_lines:
        draw.text((x, y), line, fill=white, font=address_font)
        y += 14
    y += 8
    block_top = y
    draw.text((x, y), "Decimal", fill=white, font=header_font)
    draw.text((middle + TEXT_PADDING, y), "DMS", fill=white, font=header_font)
    y += line_height + 6
    draw.line((x - 5, y - 4, GEOTAG_WIDTH - TEXT_PADDING + 5, y - 4), fill=white, width=1)
    draw.text((x, y), f"Latitude {latitude:.6f}", fill=white, font=value_font)
    draw.text((middle + TEXT_PADDING, y), lat_dms, fill=white, font=value_font)
    y += line_height + 6
    draw.line((x - 5, y - 4, GEOTAG_WIDTH - TEXT_PADDING + 5, y - 4), fill=white, width=1)
    draw.text((x, y), f"Longitude {longitude:.6f}", fill=white, font=value_font)
    draw.text((middle + TEXT_PADDING, y), lon_dms, fill=white, font=value_font)
    y += line_height + 6
    draw.line((middle, block_top, middle, y), fill=white, width=1)

    draw.text((x, height - TEXT_PADDING - line_height), format_stamp(when), fill=white, font=header_font)
    return panel


def overlay_panel_on_photo(photo_bytes: bytes, panel: PIL.Image.Image) -> bytes:
    """Scales the panel to the photo width and pastes it over the bottom of the photo."""
    with PIL.Image.open(io.BytesIO(photo_bytes)) as source:
        photo = source.convert("RGB")
    if not photo.width:
        raise MapRenderError("Could not read the photo width")
    scale = photo.width / panel.width
    resized = panel.resize((photo.width, max(1, round(panel.height * scale))), PIL.Image.LANCZOS)
    photo.paste(resized, (0, max(0, photo.height - resized.height)))
    buffer = io.BytesIO()
    photo.save(buffer, "JPEG", quality=90)
    return buffer.getvalue()


class GeotagRenderer:
    """Composes a map + address + coordinates + time panel onto a photo."""

    def __init__(self, client: httpx.AsyncClient, geocoder: Geocoder, mapbox_api_key: str = ""):
        self.client = client
        self.geocoder = geocoder
        self.mapbox_api_key = mapbox_api_key

    async def fetch_map_tile(self, latitude: float, longitude: float) -> bytes:
        if not self.mapbox_api_key:
            logger.warning("MAPBOX_API_KEY not set; using placeholder map tile.")
            return placeholder_map_tile()
        url = (
            f"{MAPBOX_STATIC_URL}/pin-s({longitude},{latitude})/"
            f"{longitude},{latitude},{MAP_ZOOM}/{MAP_SIZE}x{MAP_SIZE}"
        )
        try:
            response = await self.client.get(url, params={"access_token": self.mapbox_api_key})
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            logger.error(f"Error fetching map tile: {e}")
            return placeholder_map_tile()

    async def render(self, photo_bytes: bytes, latitude: float, longitude: float, when: datetime | None = None) -> bytes:
        tile = await self.fetch_map_tile(latitude, longitude)
        try:
            address = await self.geocoder.address_for(latitude, longitude) or "Address not found"
        except GeocodingError as e:
            logger.error(f"Error fetching address for geotag: {e}")
            address = "Failed to fetch address"
        stamp = when or datetime.now()

        loop = asyncio.get_running_loop()

        def _compose_sync():
            panel = render_geotag_panel(tile, address, latitude, longitude, stamp)
            return overlay_panel_on_photo(photo_bytes, panel)

        return await loop.run_in_executor(None, _compose_sync)


# --- WORKBOOK EXPORT ---
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")
_IMAGE_BOX = (124, 153)  # px: one 17-char column by six rows
IMAGES_PER_ROW = 5
ROWS_PER_IMAGE = 7


def sheet_title(name: str, used: set) -> str:
    """Excel sheet titles: max 31 chars, no []:*?/\\, unique (case-insensitive)."""
    base = _INVALID_SHEET_CHARS.sub("_", name).strip("'")[:31] or "Sheet"
    title, n = base, 1
    while title.lower() in used:
        n += 1
        suffix = f"_{n}"
        title = base[:31 - len(suffix)] + suffix
    used.add(title.lower())
    return title


def image_anchor(index: int) -> tuple[int, int]:
    """(column index, row) of the top-left cell for the index-th image of a sheet."""
    return (index % IMAGES_PER_ROW) * 2 + 1, (index // IMAGES_PER_ROW) * ROWS_PER_IMAGE + 1


def _image_sort_key(path: Path):
    digits = re.findall(r"\d+", path.stem)
    return (int(digits[0]) if digits else 0, path.name)


class WorkbookWriter:
    """Collates one worksheet per sheet folder, embedding its images on a grid."""

    def build(self, media_dir: Path, output_path: Path) -> Path:
        workbook = Workbook()
        workbook.remove(workbook.active)
        used_titles = set()
        for folder in sorted(p for p in Path(media_dir).iterdir() if p.is_dir()):
            ws = workbook.create_sheet(title=sheet_title(folder.name, used_titles))
            images = sorted(folder.glob("*.jpg"), key=_image_sort_key)
            for i, image_path in enumerate(images):
                col_idx, row = image_anchor(i)
                col = get_column_letter(col_idx)
                ws.column_dimensions[col].width = 17
                ws.row_dimensions[row].height = 40
                ws.column_dimensions[get_column_letter(col_idx + 1)].width = 1

                xl_image = XLImage(str(image_path))
                ratio = min(_IMAGE_BOX[0] / xl_image.width, _IMAGE_BOX[1] / xl_image.height)
                xl_image.width, xl_image.height = int(xl_image.width * ratio), int(xl_image.height * ratio)
                ws.add_image(xl_image, f"{col}{row}")
        workbook.save(output_path)
        logger.info(f"Workbook written to {output_path} ({len(workbook.sheetnames)} sheets)")
        return Path(output_path)

    async def build_async(self, media_dir: Path, output_path: Path) -> Path:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.build, media_dir, output_path)


# --- SERVICE BUNDLE ---
@dataclass
class Services:
    geocoder: Geocoder
    routing: RoutingClient
    ocr: OcrClient
    archive: ArchiveTool
    geotags: GeotagRenderer
    workbook: WorkbookWriter


def build_services(client: httpx.AsyncClient, settings) -> Services:
    geocoder = Geocoder(client)
    return Services(
        geocoder=geocoder,
        routing=RoutingClient(client, settings.ors_api_key),
        ocr=OcrClient(client, settings.ocr_api_key),
        archive=ArchiveTool(),
        geotags=GeotagRenderer(client, geocoder, settings.mapbox_api_key),
        workbook=WorkbookWriter(),
    )
