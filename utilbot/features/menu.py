# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging

# Local Imports
from ..constants import (
    CAP_ARCHIVE, CAP_GEOTAGS, CAP_KML, CAP_LOCATION, CAP_OCR, CAP_WORKBOOK
)
from ..router import TEXT, Request, Rule, command
from ..session import Mode
from . import archive, geotags, kml, location, ocr, workbook

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

MENU_ENTRIES = (
    (CAP_LOCATION, "/lokasi - Address and coordinate lookups, distance measurement"),
    (CAP_ARCHIVE, "/rar - Create, extract and search ZIP/RAR archives"),
    (CAP_WORKBOOK, "/workbook - Collect photos into an Excel workbook"),
    (CAP_OCR, "/ocr - Extract text from images"),
    (CAP_KML, "/kml - Record points and lines as a KML file"),
    (CAP_GEOTAGS, "/geotags - Stamp photos with a map and location"),
)

MODE_HELP = {
    Mode.LOCATION: location.HELP_TEXT,
    Mode.ARCHIVE: archive.HELP_TEXT,
    Mode.WORKBOOK: workbook.HELP_TEXT,
    Mode.OCR: ocr.HELP_TEXT,
    Mode.KML: kml.HELP_TEXT,
    Mode.GEOTAGS: geotags.HELP_TEXT,
}


def menu_text(req: Request) -> str:
    entries = [text for capability, text in MENU_ENTRIES if req.ctx.access.is_member(req.user_id, capability)]
    if not entries:
        return "You do not have access to any feature yet. Ask the administrator to grant access."
    return "<b>Main menu</b>\nChoose a feature:\n" + "\n".join(entries) + "\n\n/help - Help for the current mode"


# --- HANDLERS ---
async def start_command(req: Request) -> None:
    req.store.set_mode(req.user_id, Mode.NONE)
    req.dirs.ensure_user_root(req.user_id)
    logger.info(f"User {req.user_id} ({req.message.display_name}) executed /start.")
    await req.reply.send_text(
        f"Hi {req.message.display_name}! Type /menu to see the available features."
    )


async def menu_command(req: Request) -> None:
    req.store.set_mode(req.user_id, Mode.MENU)
    await req.reply.send_text(menu_text(req), html=True)


async def help_command(req: Request) -> None:
    """Shows the help of the current mode, or the menu outside of any feature."""
    mode = req.store.get_mode(req.user_id)
    if mode in MODE_HELP:
        await req.reply.send_text(MODE_HELP[mode], html=True)
    else:
        await req.reply.send_text(menu_text(req), html=True)


def rules() -> list[Rule]:
    return [
        Rule("start", TEXT, start_command, command("start")),
        Rule("menu", TEXT, menu_command, command("menu")),
        Rule("help", TEXT, help_command, command("help")),
    ]
