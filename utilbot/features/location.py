# -*- coding: utf-8 -*-
"""
Location lookups and the two-point distance measurement.

Measurement is a small state machine inside location mode:
    /ukur [mode]   -> active, waiting for point 1
    location/pair  -> point 1 stored, waiting for point 2
    location/pair  -> route computed, result cached for 30 s, inactive again
A measurement idle for more than 10 minutes is reset on the next interaction.
Within 30 s of a completed measurement, /ukur, /ukur_mobil and /ukur_motor
recompute the cached pair under the requested transport mode instead.

State changes happen before any network call, so a user switching modes
while a lookup is in flight never touches a stale payload.
"""

# --- IMPORTS ---
import html
import json
import logging
import re
import time
from datetime import datetime

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import (
    CAP_LOCATION, GENERIC_ERROR_TEXT, LOCATION_CACHE_DIR_NAME, TRANSPORT_ALIASES, TRANSPORT_CAR,
    TRANSPORT_FOOT, TRANSPORT_LABELS, TRANSPORT_MOTORCYCLE
)
from ..errors import GeocodingError, ServiceError
from ..router import LOCATION, TEXT, Request, Rule, command
from ..session import MeasurementPayload, Mode, Point

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

HELP_TEXT = (
    "<b>Location mode</b>\n"
    "/alamat &lt;address&gt; - Find the coordinates of an address\n"
    "/koordinat &lt;lat&gt; &lt;lon&gt; - Find the address of coordinates\n"
    "/show_map &lt;place or lat,lon&gt; - Show a place on the map\n"
    "/ukur - Measure distance and walking route between two points\n"
    "/ukur_motor - Same, by motorcycle\n"
    "/ukur_mobil - Same, by car\n"
    "/ukur &lt;lat,lon&gt; &lt;lat,lon&gt; - Measure two coordinates directly\n"
    "/batal - Cancel the measurement\n"
    "You can also send a location or type coordinates like <code>-6.2, 106.8</code>.\n"
    "/menu - Back to the main menu"
)

_NUMBER = r"-?\d+(?:\.\d+)?"
COORDINATE_PAIR = re.compile(rf"^(?P<lat>{_NUMBER})\s*,\s*(?P<lon>{_NUMBER})$")
_TWO_PAIRS = re.compile(rf"^({_NUMBER})\s*,\s*({_NUMBER})\s+({_NUMBER})\s*,\s*({_NUMBER})$")
_KOORDINAT_ARGS = re.compile(rf"^({_NUMBER})[\s,]+({_NUMBER})$")

EXPIRED_TEXT = "Your measurement session expired and has been reset. Start a new one with /ukur."

MODE_COMMANDS = {
    TRANSPORT_CAR: "/ukur_mobil",
    TRANSPORT_MOTORCYCLE: "/ukur_motor",
    TRANSPORT_FOOT: "/ukur",
}


# --- FORMATTING ---
def valid_coordinates(latitude: float, longitude: float) -> bool:
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.2f} km"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)} s"
    if seconds < 3600:
        return f"{int(seconds // 60)} min"
    hours, rest = divmod(int(seconds), 3600)
    return f"{hours} h {rest // 60} min"


def route_links(first: Point, second: Point, transport_mode: str) -> tuple[str, str]:
    engine = "graphhopper_foot" if transport_mode == TRANSPORT_FOOT else "graphhopper_car"
    osm = (
        f"https://www.openstreetmap.org/directions?engine={engine}"
        f"&route={first.latitude}%2C{first.longitude}%3B{second.latitude}%2C{second.longitude}"
    )
    travel = "walking" if transport_mode == TRANSPORT_FOOT else "driving"
    google = (
        f"https://www.google.com/maps/dir/?api=1&origin={first.latitude},{first.longitude}"
        f"&destination={second.latitude},{second.longitude}&travelmode={travel}"
    )
    return osm, google


def alternate_mode_hint(transport_mode: str) -> str:
    others = [cmd for mode, cmd in MODE_COMMANDS.items() if mode != transport_mode]
    return (
        f"Use {' or '.join(others)} within 30 seconds to see the same route for another transport mode."
    )


def format_result(first: Point, second: Point, distance_m: float, duration_s: float,
                  transport_mode: str, estimated: bool = False) -> str:
    osm, google = route_links(first, second, transport_mode)

    def _point(label, point):
        address = html.escape(point.address or "Unknown location")
        return f"<b>{label}:</b>\n{address}\n({point.latitude}, {point.longitude})\n\n"

    text = (
        f"<b>Measurement result</b> (mode: {TRANSPORT_LABELS[transport_mode]})\n\n"
        + _point("Start", first)
        + _point("End", second)
        + f"<b>Distance:</b> {format_distance(distance_m)}\n"
        + f"<b>Estimated time:</b> {format_duration(duration_s)}\n"
    )
    if estimated:
        text += "<i>Straight-line estimate; routing service unavailable.</i>\n"
    text += f"\n<b>Route:</b>\n- <a href=\"{osm}\">OpenStreetMap</a>\n- <a href=\"{google}\">Google Maps</a>"
    return text


# --- HELPERS ---
def reset_measurement(payload: MeasurementPayload, now: float = 0.0) -> None:
    payload.is_active = False
    payload.first_point = None
    payload.second_point = None
    payload.transport_mode = TRANSPORT_FOOT
    payload.updated_at = now


def cache_lookup(req: Request, kind: str, query: str, latitude: float, longitude: float, display_name: str) -> None:
    cache_dir = req.dirs.ensure_feature_dir(req.user_id, LOCATION_CACHE_DIR_NAME)
    record = {
        "query": query,
        "result": {"latitude": latitude, "longitude": longitude, "display_name": display_name},
        "timestamp": datetime.now().isoformat(),
    }
    path = cache_dir / f"{int(time.time() * 1000)}_{kind}_{latitude}_{longitude}.json"
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, ensure_ascii=False)
    except OSError as e:
        logger.error(f"Could not write location cache {path}: {e}")


async def address_or_none(req: Request, latitude: float, longitude: float) -> str | None:
    try:
        return await req.services.geocoder.address_for(latitude, longitude)
    except GeocodingError as e:
        logger.error(f"Reverse geocoding failed for {latitude},{longitude}: {e}")
        return None


async def compute_and_send(req: Request, first: Point, second: Point, transport_mode: str) -> None:
    """Routes between two points, replies with the result and caches the pair for re-measurement."""
    try:
        route = await req.services.routing.route(
            first.latitude, first.longitude, second.latitude, second.longitude, transport_mode
        )
        req.store.remember_measurement(req.user_id, first, second)
        await req.reply.send_text(
            format_result(first, second, route.distance_m, route.duration_s, transport_mode, route.estimated),
            html=True,
        )
        await req.reply.send_text(alternate_mode_hint(transport_mode))
        await req.reply.send_location(
            (first.latitude + second.latitude) / 2, (first.longitude + second.longitude) / 2
        )
    except (ServiceError, TelegramError) as e:
        logger.error(f"Measurement failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT + " Start again with /ukur.")


async def notify_if_expired(req: Request) -> bool:
    """Resets a measurement idle past the timeout and tells the user. Returns True if it did."""
    if not req.store.expire_measurement_if_stale(req.user_id):
        return False
    await req.reply.send_text(EXPIRED_TEXT)
    return True


# --- HANDLERS ---
async def enter_location_mode(req: Request) -> None:
    req.store.enter_mode(req.user_id, Mode.LOCATION)
    req.dirs.ensure_feature_dir(req.user_id, LOCATION_CACHE_DIR_NAME)
    await req.reply.send_text("You are now in Location mode.\n\n" + HELP_TEXT, html=True)


async def address_command(req: Request) -> None:
    query = req.args
    if not query:
        await req.reply.send_text("Usage: /alamat <address>")
        return
    await req.reply.send_text(f"Looking up coordinates for: {query}...")
    try:
        result = await req.services.geocoder.coordinates_for(query)
    except GeocodingError as e:
        logger.error(f"Forward geocoding failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT)
        return
    if result is None:
        await req.reply.send_text("Could not find coordinates for that address.")
        return
    cache_lookup(req, "address", query, result.latitude, result.longitude, result.display_name)
    await req.reply.send_location(result.latitude, result.longitude)
    await req.reply.send_text(
        f"Address: {result.display_name}\nLatitude: {result.latitude}\nLongitude: {result.longitude}"
    )


async def coordinates_command(req: Request) -> None:
    match = _KOORDINAT_ARGS.match(req.args)
    if not match:
        await req.reply.send_text("Usage: /koordinat <lat> <lon>\nExample: /koordinat -6.2 106.8")
        return
    latitude, longitude = float(match.group(1)), float(match.group(2))
    if not valid_coordinates(latitude, longitude):
        await req.reply.send_text("Please enter valid coordinates.")
        return
    await describe_point(req, latitude, longitude, "coordinates")


async def describe_point(req: Request, latitude: float, longitude: float, kind: str) -> None:
    """Reverse-geocodes a point outside of a measurement and replies with its address."""
    await req.reply.send_text(f"Looking up the address of {latitude}, {longitude}...")
    try:
        address = await req.services.geocoder.address_for(latitude, longitude)
    except GeocodingError as e:
        logger.error(f"Reverse geocoding failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT)
        return
    if not address:
        await req.reply.send_text(
            f"Latitude: {latitude}\nLongitude: {longitude}\n\nNo address found for these coordinates."
        )
        return
    cache_lookup(req, kind, f"{latitude},{longitude}", latitude, longitude, address)
    if kind != "location":
        await req.reply.send_location(latitude, longitude)
    await req.reply.send_text(f"Latitude: {latitude}\nLongitude: {longitude}\n\nAddress: {address}")


async def show_map_command(req: Request) -> None:
    query = req.args
    if not query:
        await req.reply.send_text("Usage: /show_map <place or lat,lon>")
        return
    pair = COORDINATE_PAIR.match(query)
    if pair:
        latitude, longitude = float(pair.group("lat")), float(pair.group("lon"))
        if not valid_coordinates(latitude, longitude):
            await req.reply.send_text("Please enter valid coordinates.")
            return
        label = f"{latitude}, {longitude}"
    else:
        await req.reply.send_text(f"Searching for: {query}...")
        try:
            result = await req.services.geocoder.coordinates_for(query)
        except GeocodingError as e:
            logger.error(f"Map lookup failed for user {req.user_id}: {e}", exc_info=True)
            await req.reply.send_text(GENERIC_ERROR_TEXT)
            return
        if result is None:
            await req.reply.send_text("Could not find that place.")
            return
        latitude, longitude, label = result.latitude, result.longitude, result.display_name
    await req.reply.send_location(latitude, longitude)
    await req.reply.send_text(
        f"{label}\nhttps://www.openstreetmap.org/?mlat={latitude}&mlon={longitude}&zoom=15"
    )


async def start_measurement(req: Request, transport_mode: str) -> None:
    await notify_if_expired(req)

    payload = req.store.get_or_init_payload(req.user_id, Mode.LOCATION)
    if payload.is_active and payload.first_point is not None:
        await req.reply.send_text(
            "A measurement is already in progress and point 1 has been recorded. "
            "Send the second location, or type /batal to cancel it first."
        )
        return

    recent = req.store.recent_measurement(req.user_id)
    if recent is not None:
        await req.reply.send_text(
            f"Recalculating the same route for {TRANSPORT_LABELS[transport_mode].lower()}..."
        )
        await compute_and_send(req, recent.first_point, recent.second_point, transport_mode)
        return

    now = req.store.clock()

    def _start(p: MeasurementPayload):
        p.is_active = True
        p.first_point = None
        p.second_point = None
        p.transport_mode = transport_mode
        p.updated_at = now

    req.store.mutate_payload(req.user_id, Mode.LOCATION, _start)
    logger.info(f"User {req.user_id} started a {transport_mode} measurement")
    await req.reply.send_text(
        f"Measurement started ({TRANSPORT_LABELS[transport_mode]}).\n"
        "Send the first location (or type coordinates like -6.2, 106.8). /batal to cancel."
    )


async def measure_command(req: Request) -> None:
    args = req.args
    pairs = _TWO_PAIRS.match(args)
    if pairs:
        lat1, lon1, lat2, lon2 = (float(v) for v in pairs.groups())
        if not (valid_coordinates(lat1, lon1) and valid_coordinates(lat2, lon2)):
            await req.reply.send_text("Please enter valid coordinates.")
            return
        await req.reply.send_text("Calculating distance and route...")
        first = Point(lat1, lon1, await address_or_none(req, lat1, lon1))
        second = Point(lat2, lon2, await address_or_none(req, lat2, lon2))
        await compute_and_send(req, first, second, TRANSPORT_FOOT)
        return

    if not args:
        await start_measurement(req, TRANSPORT_FOOT)
        return
    transport_mode = TRANSPORT_ALIASES.get(args.lower())
    if transport_mode is None:
        await req.reply.send_text(
            "Usage: /ukur [car|motor|foot] or /ukur <lat,lon> <lat,lon>\n"
            "Example: /ukur -6.2,106.8 -6.3,106.9"
        )
        return
    await start_measurement(req, transport_mode)


async def measure_motorcycle_command(req: Request) -> None:
    await start_measurement(req, TRANSPORT_MOTORCYCLE)


async def measure_car_command(req: Request) -> None:
    await start_measurement(req, TRANSPORT_CAR)


async def cancel_command(req: Request) -> None:
    await notify_if_expired(req)
    payload = req.store.get_or_init_payload(req.user_id, Mode.LOCATION)
    was_active = payload.is_active
    req.store.mutate_payload(
        req.user_id, Mode.LOCATION, lambda p: reset_measurement(p, req.store.clock())
    )
    req.store.forget_measurement(req.user_id)
    if was_active:
        await req.reply.send_text("Distance measurement cancelled.")
    else:
        await req.reply.send_text("No measurement in progress.")


async def handle_point(req: Request, latitude: float, longitude: float, kind: str) -> None:
    if await notify_if_expired(req):
        return

    payload = req.store.get_or_init_payload(req.user_id, Mode.LOCATION)
    if not payload.is_active:
        await describe_point(req, latitude, longitude, kind)
        return

    point = Point(latitude, longitude)
    now = req.store.clock()

    def _capture(p: MeasurementPayload):
        if p.first_point is None:
            p.first_point = point
            p.updated_at = now
            return None
        # Second point completes the measurement; the session goes back to idle.
        first, mode = p.first_point, p.transport_mode
        reset_measurement(p, now)
        return first, mode

    completed = req.store.mutate_payload(req.user_id, Mode.LOCATION, _capture)
    point.address = await address_or_none(req, latitude, longitude)

    if completed is None:
        await req.reply.send_text(
            f"Point 1 recorded:\n{point.address or 'Unknown location'}\n({latitude}, {longitude})\n\n"
            "Now send the second location."
        )
        return

    first, transport_mode = completed
    await req.reply.send_text("Point 2 recorded. Calculating distance and route...")
    await compute_and_send(req, first, point, transport_mode)


async def handle_location(req: Request) -> None:
    latitude, longitude = req.message.location
    await handle_point(req, latitude, longitude, "location")


async def handle_coordinate_text(req: Request) -> None:
    latitude, longitude = float(req.match.group("lat")), float(req.match.group("lon"))
    if not valid_coordinates(latitude, longitude):
        await req.reply.send_text("Please enter valid coordinates.")
        return
    await handle_point(req, latitude, longitude, "coordinates")


def rules() -> list[Rule]:
    def cmd(name, handler):
        return Rule(name, TEXT, handler, command(name), CAP_LOCATION, Mode.LOCATION)

    # The bare coordinate pair is the catch-all and must stay last.
    return [
        Rule("lokasi", TEXT, enter_location_mode, command("lokasi"), CAP_LOCATION),
        cmd("alamat", address_command),
        cmd("koordinat", coordinates_command),
        cmd("show_map", show_map_command),
        cmd("ukur_motor", measure_motorcycle_command),
        cmd("ukur_mobil", measure_car_command),
        cmd("ukur", measure_command),
        cmd("batal", cancel_command),
        Rule("location_point", LOCATION, handle_location, None, CAP_LOCATION, Mode.LOCATION, passive=True),
        Rule("coordinate_pair", TEXT, handle_coordinate_text, COORDINATE_PAIR, CAP_LOCATION, Mode.LOCATION, passive=True),
    ]
