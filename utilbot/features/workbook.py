# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import re
import time
from pathlib import Path

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import (
    CAP_WORKBOOK, GENERIC_ERROR_TEXT, WORKBOOK_DIR_NAME, WORKBOOK_FILE_NAME, WORKBOOK_MAX_BYTES
)
from ..errors import OutsideRootError, ServiceError
from ..router import MEDIA, PHOTO, TEXT, Request, Rule, command, literal
from ..session import Mode, WorkbookPayload
from ..storage import clear_directory, folder_size, safe_file_name

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

MB = 1024 * 1024

HELP_TEXT = (
    "<b>Workbook mode</b>\n"
    "- Type a sheet name (e.g. \"sheet1\") to create or select a sheet\n"
    "- Send photos to store them in the active sheet\n"
    "- Type \"send\" to get an Excel file with every sheet\n"
    "- Type \"cek\" to list the sheets created so far\n"
    "- Type \"clear\" to delete every sheet\n"
    "/menu - Back to the main menu"
)

SHEET_NAME_PATTERN = re.compile(r"^(?!/)(?P<name>[^\n]+)$")


def _media_dir(req: Request) -> Path:
    return req.dirs.ensure_feature_dir(req.user_id, WORKBOOK_DIR_NAME)


def _sheet_dirs(media_dir: Path) -> list[Path]:
    if not media_dir.exists():
        return []
    return sorted(p for p in media_dir.iterdir() if p.is_dir())


# --- HANDLERS ---
async def enter_workbook_mode(req: Request) -> None:
    req.store.enter_mode(req.user_id, Mode.WORKBOOK)
    _media_dir(req)
    await req.reply.send_text("You are now in Workbook mode.\n\n" + HELP_TEXT, html=True)


async def clear_sheets(req: Request) -> None:
    removed = clear_directory(_media_dir(req))
    logger.info(f"Removed {removed} workbook entries for user {req.user_id}")

    def _reset(p: WorkbookPayload):
        p.sheet_path = ""
        p.image_counter = 0
        p.download_count = 0

    req.store.mutate_payload(req.user_id, Mode.WORKBOOK, _reset)
    await req.reply.send_text("All sheets have been deleted.")


async def list_sheets(req: Request) -> None:
    sheets = _sheet_dirs(_media_dir(req))
    if not sheets:
        await req.reply.send_text("No sheets have been created yet.")
        return
    total = 0
    lines = []
    for sheet in sheets:
        size = folder_size(sheet)
        total += size
        lines.append(f"{sheet.name} (size: {size / MB:.2f} MB)")
    await req.reply.send_text(
        "Sheets created so far:\n" + "\n".join(lines) + f"\n\nTotal size: {total / MB:.2f} MB"
    )


async def send_workbook(req: Request) -> None:
    """
    Collates every sheet into one .xlsx. The file is written first and only then
    measured; an oversize file is reported and left on disk.
    """
    media_dir = _media_dir(req)
    if not _sheet_dirs(media_dir):
        await req.reply.send_text("There are no sheets yet. Create a sheet first.")
        return

    await req.reply.send_text("Building the Excel file...")
    output_path = media_dir / WORKBOOK_FILE_NAME
    try:
        await req.services.workbook.build_async(media_dir, output_path)
        size = output_path.stat().st_size
        if size > WORKBOOK_MAX_BYTES:
            logger.warning(f"Workbook for user {req.user_id} is {size} bytes; not sending.")
            await req.reply.send_text(
                f"Sorry, the file is {size / MB:.2f} MB, which exceeds the 50 MB limit, so it cannot be sent. "
                "Remove some photos and try again."
            )
            return
        await req.reply.send_document(output_path)
    except (ServiceError, TelegramError, OSError, ValueError) as e:
        logger.error(f"Workbook export failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(GENERIC_ERROR_TEXT)
        return
    await req.reply.send_text(f"Excel file created ({size / MB:.2f} MB).")


async def select_sheet(req: Request) -> None:
    raw_name = req.match.group("name").strip()
    name = safe_file_name(raw_name.replace("/", "_").replace("\\", "_"), fallback="sheet")
    try:
        sheet_dir = req.dirs.resolve_within_user(req.user_id, Path(WORKBOOK_DIR_NAME) / name)
    except OutsideRootError:
        await req.reply.send_text("That sheet name is not allowed.")
        return
    sheet_dir.mkdir(parents=True, exist_ok=True)

    def _select(p: WorkbookPayload):
        p.sheet_path = str(sheet_dir)
        p.image_counter = 0
        p.download_count = 0

    req.store.mutate_payload(req.user_id, Mode.WORKBOOK, _select)
    logger.info(f"User {req.user_id} selected sheet '{name}'")
    await req.reply.send_text(f'Sheet "{name}" is ready. You can send photos now.')


async def handle_photo(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.WORKBOOK)
    if not payload.sheet_path:
        await req.reply.send_text("Type a sheet name first (e.g. 'sheet1') to create a sheet.")
        return

    sheet_dir = Path(payload.sheet_path)
    destination = sheet_dir / f"image_{int(time.time() * 1000)}_{payload.image_counter + 1}.jpg"
    try:
        await req.reply.download(req.message.photo_file_id, destination)
    except (TelegramError, OSError) as e:
        logger.error(f"Workbook photo download failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text("Something went wrong while downloading the photo. Please try again.")
        return

    def _count(p: WorkbookPayload):
        p.image_counter += 1
        p.download_count += 1
        return p.download_count

    count = req.store.mutate_payload(req.user_id, Mode.WORKBOOK, _count)
    await req.reply.send_text(f'Photo #{count} saved to sheet "{sheet_dir.name}".')


async def unsupported_media(req: Request) -> None:
    await req.reply.send_text("Only photos are supported in Workbook mode.")


def rules() -> list[Rule]:
    def passive_text(name, handler, pattern):
        return Rule(name, TEXT, handler, pattern, CAP_WORKBOOK, Mode.WORKBOOK, passive=True)

    # Reserved words come before the sheet-name catch-all.
    return [
        Rule("workbook", TEXT, enter_workbook_mode, command("workbook"), CAP_WORKBOOK),
        passive_text("workbook_send", send_workbook, literal("send")),
        passive_text("workbook_cek", list_sheets, literal("cek")),
        passive_text("workbook_clear", clear_sheets, literal("clear")),
        Rule("workbook_photo", PHOTO, handle_photo, None, CAP_WORKBOOK, Mode.WORKBOOK, passive=True),
        Rule("workbook_media", MEDIA, unsupported_media, None, CAP_WORKBOOK, Mode.WORKBOOK, passive=True),
        passive_text("workbook_sheet", select_sheet, SHEET_NAME_PATTERN),
    ]
