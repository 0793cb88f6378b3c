# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import CAP_KML, GENERIC_ERROR_TEXT, KML_EXPORT_DIR_NAME
from ..router import LOCATION, TEXT, Request, Rule, command
from ..session import KmlPayload, LineTrack, Mode, Placemark

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

KML_NAMESPACE = "http://www.opengis.net/kml/2.2"
IN_PROGRESS_SUFFIX = " (in progress)"

HELP_TEXT = (
    "<b>KML mode</b>\n"
    "Send a location to add a point (or to extend the line being recorded).\n"
    "/addpoint [name] - Name the next point\n"
    "/alwayspoint [name] - Name every following point (empty to clear)\n"
    "/add &lt;lat&gt; &lt;lon&gt; [name] - Add a point by coordinates\n"
    "/startline [name] - Start recording a line\n"
    "/endline - Finish the current line\n"
    "/cancelline - Discard the current line\n"
    "/createkml - Export everything as a .kml file\n"
    "/kmlstatus - Show what has been recorded\n"
    "/clearkml - Delete all points and lines\n"
    "/menu - Back to the main menu"
)

_ADD_ARGS = re.compile(r"^(-?\d+(?:\.\d+)?)\s*[,\s]\s*(-?\d+(?:\.\d+)?)(?:\s+(?P<name>.+))?$")


def valid_coordinates(latitude: float, longitude: float) -> bool:
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def resolve_point_name(payload: KmlPayload, inline_name: str | None = None) -> str:
    """
    Name for the next placemark: inline name, else the queued one-shot name
    (consumed), else the standing name, else "Point <n>".
    """
    if inline_name:
        return inline_name
    if payload.pending_point_name:
        name, payload.pending_point_name = payload.pending_point_name, None
        return name
    if payload.persistent_point_name:
        return payload.persistent_point_name
    return f"Point {len(payload.placemarks) + 1}"


def can_export(payload: KmlPayload) -> bool:
    return bool(
        payload.placemarks
        or payload.lines
        or (payload.current_line and len(payload.current_line.points) >= 2)
    )


def _coordinates(points) -> str:
    return " ".join(f"{lon},{lat},0" for lat, lon in points)


def render_kml(payload: KmlPayload, document_name: str) -> bytes:
    root = ET.Element("kml", xmlns=KML_NAMESPACE)
    document = ET.SubElement(root, "Document")
    ET.SubElement(document, "name").text = document_name

    for placemark in payload.placemarks:
        node = ET.SubElement(document, "Placemark")
        ET.SubElement(node, "name").text = placemark.name
        point = ET.SubElement(node, "Point")
        ET.SubElement(point, "coordinates").text = f"{placemark.longitude},{placemark.latitude},0"

    tracks = list(payload.lines)
    if payload.current_line and len(payload.current_line.points) >= 2:
        tracks.append(LineTrack(payload.current_line.name + IN_PROGRESS_SUFFIX, payload.current_line.points))
    for track in tracks:
        node = ET.SubElement(document, "Placemark")
        ET.SubElement(node, "name").text = track.name
        line = ET.SubElement(node, "LineString")
        ET.SubElement(line, "tessellate").text = "1"
        ET.SubElement(line, "coordinates").text = _coordinates(track.points)

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def add_placemark(payload: KmlPayload, latitude: float, longitude: float, inline_name: str | None = None) -> Placemark:
    placemark = Placemark(resolve_point_name(payload, inline_name), latitude, longitude)
    payload.placemarks.append(placemark)
    return placemark


# --- HANDLERS ---
async def enter_kml_mode(req: Request) -> None:
    payload = req.store.enter_mode(req.user_id, Mode.KML)
    await req.reply.send_text(
        "You are now in KML mode. "
        f"Saved: {len(payload.placemarks)} point(s), {len(payload.lines)} line(s).\n\n" + HELP_TEXT,
        html=True,
    )


async def add_point_command(req: Request) -> None:
    name = req.args
    if name:
        req.store.mutate_payload(req.user_id, Mode.KML, lambda p: setattr(p, "pending_point_name", name))
        await req.reply.send_text(f'The next point will be named "{name}". Send a location.')
    else:
        await req.reply.send_text("Send a location to add a point.")


async def always_point_command(req: Request) -> None:
    name = req.args or None
    req.store.mutate_payload(req.user_id, Mode.KML, lambda p: setattr(p, "persistent_point_name", name))
    if name:
        await req.reply.send_text(f'Every following point will be named "{name}". Send /alwayspoint without a name to stop.')
    else:
        await req.reply.send_text("Standing point name cleared. Points get numbered names again.")


async def add_coordinates_command(req: Request) -> None:
    match = _ADD_ARGS.match(req.args)
    if not match:
        await req.reply.send_text("Usage: /add <lat> <lon> [name]\nExample: /add -6.2 106.8 Office")
        return
    latitude, longitude = float(match.group(1)), float(match.group(2))
    if not valid_coordinates(latitude, longitude):
        await req.reply.send_text("Coordinates out of range. Latitude must be -90..90 and longitude -180..180.")
        return
    inline_name = (match.group("name") or "").strip() or None
    placemark = req.store.mutate_payload(
        req.user_id, Mode.KML, lambda p: add_placemark(p, latitude, longitude, inline_name)
    )
    await req.reply.send_text(f'Point "{placemark.name}" added at {latitude:.6f}, {longitude:.6f}.')


async def handle_location(req: Request) -> None:
    latitude, longitude = req.message.location

    def _record(p: KmlPayload):
        if p.current_line is not None:
            p.current_line.points.append((latitude, longitude))
            return f'Point {len(p.current_line.points)} added to line "{p.current_line.name}".'
        placemark = add_placemark(p, latitude, longitude)
        return f'Point "{placemark.name}" added at {latitude:.6f}, {longitude:.6f}.'

    await req.reply.send_text(req.store.mutate_payload(req.user_id, Mode.KML, _record))


async def start_line_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.KML)
    if payload.current_line is not None:
        await req.reply.send_text(
            f'Line "{payload.current_line.name}" is still being recorded. Use /endline or /cancelline first.'
        )
        return
    name = req.args or f"Line {len(payload.lines) + 1}"
    req.store.mutate_payload(req.user_id, Mode.KML, lambda p: setattr(p, "current_line", LineTrack(name)))
    await req.reply.send_text(f'Recording line "{name}". Send locations to add points, then /endline.')


async def end_line_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.KML)
    line = payload.current_line
    if line is None:
        await req.reply.send_text("No line is being recorded. Start one with /startline.")
        return
    if len(line.points) < 2:
        await req.reply.send_text("A line needs at least 2 points. Send more locations or use /cancelline.")
        return

    def _finish(p: KmlPayload):
        p.lines.append(p.current_line)
        p.current_line = None

    req.store.mutate_payload(req.user_id, Mode.KML, _finish)
    await req.reply.send_text(f'Line "{line.name}" saved with {len(line.points)} points.')


async def cancel_line_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.KML)
    if payload.current_line is None:
        await req.reply.send_text("No line is being recorded.")
        return
    req.store.mutate_payload(req.user_id, Mode.KML, lambda p: setattr(p, "current_line", None))
    await req.reply.send_text("The current line was discarded.")


async def create_kml_command(req: Request) -> None:
    """Exports points and lines. Session data is kept."""
    payload = req.store.get_or_init_payload(req.user_id, Mode.KML)
    if not can_export(payload):
        await req.reply.send_text("Nothing to export yet. Add a point or a line with at least 2 points first.")
        return
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    export_dir = req.dirs.ensure_feature_dir(req.user_id, KML_EXPORT_DIR_NAME)
    path = Path(export_dir) / f"kml_{stamp}.kml"
    try:
        path.write_bytes(render_kml(payload, f"Export {stamp}"))
        await req.reply.send_document(path, caption="Your KML file.")
    except (TelegramError, OSError) as e:
        logger.error(f"KML export failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT)
        return
    logger.info(f"Exported KML for user {req.user_id} to {path}")


async def status_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.KML)
    lines = [
        f"Points: {len(payload.placemarks)}",
        f"Lines: {len(payload.lines)}",
    ]
    if payload.current_line:
        lines.append(f'Recording: "{payload.current_line.name}" ({len(payload.current_line.points)} points)')
    if payload.pending_point_name:
        lines.append(f'Next point name: "{payload.pending_point_name}"')
    if payload.persistent_point_name:
        lines.append(f'Standing point name: "{payload.persistent_point_name}"')
    await req.reply.send_text("\n".join(lines))


async def clear_command(req: Request) -> None:
    def _clear(p: KmlPayload):
        p.placemarks = []
        p.lines = []
        p.current_line = None
        p.persistent_point_name = None
        p.pending_point_name = None

    req.store.mutate_payload(req.user_id, Mode.KML, _clear)
    await req.reply.send_text("All KML points and lines have been deleted.")


def rules() -> list[Rule]:
    def cmd(name, handler):
        return Rule(name, TEXT, handler, command(name), CAP_KML, Mode.KML)

    return [
        Rule("kml", TEXT, enter_kml_mode, command("kml"), CAP_KML),
        cmd("addpoint", add_point_command),
        cmd("alwayspoint", always_point_command),
        cmd("add", add_coordinates_command),
        cmd("startline", start_line_command),
        cmd("endline", end_line_command),
        cmd("cancelline", cancel_line_command),
        cmd("createkml", create_kml_command),
        cmd("kmlstatus", status_command),
        cmd("clearkml", clear_command),
        Rule("kml_location", LOCATION, handle_location, None, CAP_KML, Mode.KML, passive=True),
    ]
