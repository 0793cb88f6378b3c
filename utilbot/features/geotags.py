# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import re
from datetime import datetime

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import CAP_GEOTAGS, GENERIC_ERROR_TEXT
from ..errors import ServiceError
from ..router import LOCATION, PHOTO, TEXT, Request, Rule, command
from ..session import Mode, Point

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

HELP_TEXT = (
    "<b>Geotags mode</b>\n"
    "Send a photo and a location (in either order) to get the photo back with a location stamp.\n"
    "/alwaystag - Reuse one location for every following photo (type again to turn off)\n"
    "/set_time YYYY-MM-DD HH:MM - Stamp photos with a fixed time (/set_time reset for the current time)\n"
    "/menu - Back to the main menu"
)

SET_TIME_USAGE = (
    "Usage: /set_time YYYY-MM-DD HH:MM\n"
    "Example: /set_time 2024-01-20 10:30\n"
    "Or /set_time reset to use the current time."
)

_TIMESTAMP = re.compile(r"^(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2})$")


def parse_manual_timestamp(value: str) -> datetime | None:
    """Strict `YYYY-MM-DD HH:MM`. Dates that would roll over (2024-02-30) are rejected."""
    match = _TIMESTAMP.match((value or "").strip())
    if not match:
        return None
    try:
        return datetime(*(int(part) for part in match.groups()))
    except ValueError:
        return None


async def compose_and_send(req: Request, photo_file_id: str, location: Point, when: datetime | None) -> None:
    await req.reply.send_text("Processing your photo... please wait.")
    try:
        photo = await req.reply.download_bytes(photo_file_id)
        tagged = await req.services.geotags.render(photo, location.latitude, location.longitude, when)
        await req.reply.send_photo(tagged)
        logger.info(f"Geotagged photo sent to chat {req.chat_id}")
    except (ServiceError, TelegramError, OSError) as e:
        logger.error(f"Geotag compositing failed for chat {req.chat_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT)


# --- HANDLERS ---
async def enter_geotags_mode(req: Request) -> None:
    req.store.enter_mode(req.user_id, Mode.GEOTAGS)
    req.store.reset_geotags(req.chat_id)
    await req.reply.send_text("You are now in Geotags mode.\n\n" + HELP_TEXT, html=True)


async def toggle_sticky(req: Request) -> None:
    state = req.store.geotags_for_chat(req.chat_id)
    req.store.touch(req.user_id)
    if state.sticky_location or state.waiting_for_sticky:
        state.sticky_location = None
        state.waiting_for_sticky = False
        await req.reply.send_text("AlwaysTag is OFF. Every photo needs its own location again.")
    else:
        state.waiting_for_sticky = True
        await req.reply.send_text(
            "AlwaysTag is ON.\nSend the location you want to reuse for the next photos. "
            "Type /alwaystag again to turn it off."
        )


async def set_time(req: Request) -> None:
    state = req.store.geotags_for_chat(req.chat_id)
    req.store.touch(req.user_id)
    value = req.args
    if not value:
        await req.reply.send_text(SET_TIME_USAGE)
        return
    if value.lower() == "reset":
        state.custom_datetime = None
        await req.reply.send_text("Manual time cleared. Photos will use the current time.")
        return
    parsed = parse_manual_timestamp(value)
    if parsed is None:
        await req.reply.send_text("Invalid date/time.\n" + SET_TIME_USAGE)
        return
    state.custom_datetime = parsed
    await req.reply.send_text(f"Manual time set to: {parsed.strftime('%A, %d %B %Y %H:%M')}")


async def handle_photo(req: Request) -> None:
    state = req.store.geotags_for_chat(req.chat_id)
    req.store.touch(req.user_id)
    file_id = req.message.photo_file_id
    if state.sticky_location:
        await req.reply.send_text("Photo received. Using the AlwaysTag location...")
        await compose_and_send(req, file_id, state.sticky_location, state.custom_datetime)
    elif state.pending_location and not state.waiting_for_sticky:
        location, state.pending_location = state.pending_location, None
        await compose_and_send(req, file_id, location, state.custom_datetime)
    else:
        state.pending_photo_file_id = file_id
        if state.waiting_for_sticky:
            await req.reply.send_text("Photo received. Waiting for the location to use as the AlwaysTag default.")
        else:
            await req.reply.send_text("Photo received! Now send your location.")


async def handle_location(req: Request) -> None:
    state = req.store.geotags_for_chat(req.chat_id)
    req.store.touch(req.user_id)
    latitude, longitude = req.message.location
    location = Point(latitude, longitude)

    if state.waiting_for_sticky or state.sticky_location:
        verb = "updated" if state.sticky_location else "set"
        state.sticky_location = location
        state.waiting_for_sticky = False
        state.pending_location = None
        await req.reply.send_text(
            f"AlwaysTag location {verb}: {latitude:.5f}, {longitude:.5f}. The next photos will use it."
        )
    elif not state.pending_photo_file_id:
        state.pending_location = location
        await req.reply.send_text("Location received! Now send the photo.")
        return

    if state.pending_photo_file_id:
        file_id, state.pending_photo_file_id = state.pending_photo_file_id, None
        await compose_and_send(req, file_id, location, state.custom_datetime)


def rules() -> list[Rule]:
    return [
        Rule("geotags", TEXT, enter_geotags_mode, command("geotags"), CAP_GEOTAGS),
        Rule("alwaystag", TEXT, toggle_sticky, command("alwaystag"), CAP_GEOTAGS, Mode.GEOTAGS),
        Rule("set_time", TEXT, set_time, command("set_time"), CAP_GEOTAGS, Mode.GEOTAGS),
        Rule("geotags_photo", PHOTO, handle_photo, None, CAP_GEOTAGS, Mode.GEOTAGS, passive=True),
        Rule("geotags_location", LOCATION, handle_location, None, CAP_GEOTAGS, Mode.GEOTAGS, passive=True),
    ]
