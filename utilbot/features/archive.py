# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import time
from datetime import datetime
from pathlib import Path

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import (
    ARCHIVE_DIR_NAME, ARCHIVE_EXTENSIONS, CAP_ARCHIVE, GENERIC_ERROR_TEXT, SEARCH_RESULT_LINE_CAP
)
from ..errors import OutsideRootError, ServiceError
from ..router import DOCUMENT, TEXT, Request, Rule, command
from ..session import ArchivePayload, Mode
from ..storage import clear_directory, safe_file_name

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

ZIP, EXTRACT, SEARCH = ("zip", "extract", "search")
LOCK_NAME = "archive"

HELP_TEXT = (
    "<b>Archive mode</b>\n"
    "/zip - Send files, then /kirim to get them back as one ZIP\n"
    "/extract - Send a ZIP/RAR, then /kirim to get its contents\n"
    "/search - Send a ZIP/RAR, then /cari &lt;pattern&gt; to list matching entries\n"
    "/stats - Usage statistics\n"
    "/menu - Back to the main menu"
)

INTENT_PROMPTS = {
    ZIP: "Send the files you want to archive. When you are done, type /kirim to build the ZIP.",
    EXTRACT: "Send the archive (ZIP or RAR) you want to extract, then type /kirim.",
    SEARCH: "Send the archive (ZIP or RAR) you want to search, then use /cari <pattern> (e.g. /cari *.jpg).",
}


def _archive_dir(req: Request) -> Path:
    return req.dirs.ensure_feature_dir(req.user_id, ARCHIVE_DIR_NAME)


def format_search_results(pattern: str, lines: list[str], cap: int = SEARCH_RESULT_LINE_CAP) -> str:
    if not lines:
        return f"No entries match the pattern: {pattern}"
    shown = "\n".join(lines[:cap])
    text = f"Found {len(lines)} entries matching '{pattern}':\n\n{shown}"
    if len(lines) > cap:
        text += f"\n... and {len(lines) - cap} more"
    return text


# --- HANDLERS ---
async def enter_archive_mode(req: Request) -> None:
    req.store.enter_mode(req.user_id, Mode.ARCHIVE)
    req.dirs.ensure_user_root(req.user_id)
    await req.reply.send_text(
        "You are now in Archive mode.\n\n" + HELP_TEXT, html=True
    )


async def choose_intent(req: Request, intent: str) -> None:
    """Entering a sub-mode always purges previously uploaded files."""
    async with req.store.locks.hold(req.user_id, LOCK_NAME):
        removed = clear_directory(_archive_dir(req))
        if removed:
            logger.info(f"Purged {removed} archive entries for user {req.user_id}")

        def _reset(payload: ArchivePayload):
            payload.intent = intent
            payload.files = []
            payload.search_pattern = None

        req.store.mutate_payload(req.user_id, Mode.ARCHIVE, _reset)
    await req.reply.send_text(INTENT_PROMPTS[intent])


async def zip_command(req: Request) -> None:
    await choose_intent(req, ZIP)


async def extract_command(req: Request) -> None:
    await choose_intent(req, EXTRACT)


async def search_command(req: Request) -> None:
    await choose_intent(req, SEARCH)


async def handle_upload(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.ARCHIVE)
    if payload.intent is None:
        await req.reply.send_text("Choose /zip, /extract or /search first to start.")
        return

    document = req.message.document
    original_name = document.file_name or "file"
    extension = Path(original_name).suffix.lower()
    if payload.intent in (EXTRACT, SEARCH) and extension not in ARCHIVE_EXTENSIONS:
        await req.reply.send_text("Only ZIP and RAR files can be extracted or searched. Please send a file in one of those formats.")
        return

    async with req.store.locks.hold(req.user_id, LOCK_NAME):
        file_name = f"{int(time.time() * 1000)}_{safe_file_name(original_name)}"
        try:
            destination = req.dirs.resolve_within_user(req.user_id, Path(ARCHIVE_DIR_NAME) / file_name)
        except OutsideRootError:
            await req.reply.send_text("That file name is not allowed.")
            return
        destination.parent.mkdir(parents=True, exist_ok=True)

        try:
            await req.reply.download(document.file_id, destination)
        except (TelegramError, OSError) as e:
            logger.error(f"Failed to download archive upload for user {req.user_id}: {e}", exc_info=True)
            await req.reply.send_text(GENERIC_ERROR_TEXT)
            return

        def _append(p: ArchivePayload):
            if p.intent in (EXTRACT, SEARCH):
                # Only one archive is worked on at a time; the latest upload wins.
                for old in p.files:
                    Path(old).unlink(missing_ok=True)
                p.files = []
            p.files.append(str(destination))
            return len(p.files)

        count = req.store.mutate_payload(req.user_id, Mode.ARCHIVE, _append)
        req.store.bump_stats(req.user_id, files_received=1)

    logger.info(f"User {req.user_id} uploaded '{original_name}' for {payload.intent}")
    if payload.intent == ZIP:
        await req.reply.send_text(f'Received "{original_name}". Total files: {count}. Type /kirim to build the archive.')
    elif payload.intent == EXTRACT:
        await req.reply.send_text(f'Received "{original_name}". Type /kirim to extract it.')
    else:
        await req.reply.send_text(
            f'Received "{original_name}". Type /cari <pattern> to search inside it, e.g. /cari *.jpg'
        )


async def commit_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.ARCHIVE)
    if payload.intent not in (ZIP, EXTRACT):
        await req.reply.send_text("Use /zip or /extract first to start.")
        return
    if not payload.files:
        await req.reply.send_text("You have not sent any files yet. Send some files first.")
        return

    archive_dir = _archive_dir(req)
    tool = req.services.archive
    async with req.store.locks.hold(req.user_id, LOCK_NAME):
        files = list(payload.files)
        try:
            if payload.intent == ZIP:
                await req.reply.send_text("Building the ZIP file...")
                zip_path = archive_dir / f"archive_{int(time.time() * 1000)}.zip"
                await tool.create_archive(files, zip_path)
                await req.reply.send_document(zip_path, caption=f"ZIP created with {len(files)} file(s).")
                req.store.bump_stats(req.user_id, zip_count=1, files_sent=1)
            else:
                await req.reply.send_text("Extracting the archive...")
                extract_dir = archive_dir / f"extracted_{int(time.time() * 1000)}"
                extracted = await tool.extract_archive(Path(files[0]), extract_dir)
                if not extracted:
                    await req.reply.send_text("The archive did not contain any files.")
                    return
                await req.reply.send_text(f"{len(extracted)} file(s) extracted from the archive.")
                for path in extracted:
                    await req.reply.send_document(path)
                req.store.bump_stats(req.user_id, extract_count=1, files_sent=len(extracted))
        except (ServiceError, TelegramError, OSError) as e:
            logger.error(f"Archive {payload.intent} failed for user {req.user_id}: {e}", exc_info=True)
            await req.reply.send_text(GENERIC_ERROR_TEXT)
            return

        clear_directory(archive_dir)

        def _reset(p: ArchivePayload):
            p.intent = None
            p.files = []

        req.store.mutate_payload(req.user_id, Mode.ARCHIVE, _reset)


async def find_command(req: Request) -> None:
    payload = req.store.get_or_init_payload(req.user_id, Mode.ARCHIVE)
    if payload.intent != SEARCH or not payload.files:
        await req.reply.send_text("Send an archive after /search first.")
        return
    pattern = req.args
    if not pattern:
        await req.reply.send_text("Invalid search. Usage: /cari <pattern>")
        return
    archive = Path(payload.files[-1])
    if archive.suffix.lower() not in ARCHIVE_EXTENSIONS:
        await req.reply.send_text("Unsupported file type. Only ZIP and RAR archives can be searched.")
        return

    await req.reply.send_text(f"Searching for: {pattern}")
    try:
        lines = await req.services.archive.list_matching(archive, pattern)
    except ServiceError as e:
        logger.error(f"Archive search failed for user {req.user_id}: {e}", exc_info=True)
        await req.reply.send_text(
            "Something went wrong while searching the archive. Make sure the archive tools are installed on the server."
        )
        return

    req.store.mutate_payload(req.user_id, Mode.ARCHIVE, lambda p: setattr(p, "search_pattern", pattern))
    req.store.bump_stats(req.user_id, search_count=1)
    await req.reply.send_text(format_search_results(pattern, lines))


async def stats_command(req: Request) -> None:
    stats = req.store.stats(req.user_id)
    last_used = datetime.fromtimestamp(stats.last_used).strftime("%Y-%m-%d %H:%M:%S")
    await req.reply.send_text(
        "<b>Archive usage</b>\n\n"
        f"ZIPs created: {stats.zip_count}\n"
        f"Extractions: {stats.extract_count}\n"
        f"Searches: {stats.search_count}\n"
        f"Files sent to the bot: {stats.files_received}\n"
        f"Files received from the bot: {stats.files_sent}\n"
        f"Last used: {last_used}",
        html=True,
    )


def rules() -> list[Rule]:
    def cmd(name, handler):
        return Rule(name, TEXT, handler, command(name), CAP_ARCHIVE, Mode.ARCHIVE)

    return [
        Rule("rar", TEXT, enter_archive_mode, command("rar"), CAP_ARCHIVE),
        cmd("zip", zip_command),
        cmd("extract", extract_command),
        cmd("search", search_command),
        cmd("cari", find_command),
        cmd("kirim", commit_command),
        cmd("stats", stats_command),
        Rule("archive_upload", DOCUMENT, handle_upload, None, CAP_ARCHIVE, Mode.ARCHIVE, passive=True),
    ]
