# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import time
from pathlib import Path

# Telegram
from telegram.error import TelegramError

# Local Imports
from ..constants import CAP_OCR, GENERIC_ERROR_TEXT, OCR_DIR_NAME
from ..errors import ServiceError
from ..router import DOCUMENT, PHOTO, TEXT, Request, Rule, command
from ..session import Mode
from ..storage import clear_directory

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

LOCK_NAME = "ocr"

HELP_TEXT = (
    "<b>OCR mode</b>\n"
    "Send a photo or an image file and the bot replies with the text it finds.\n"
    "/ocr_clear - Delete the stored OCR images\n"
    "/menu - Back to the main menu"
)


# --- HANDLERS ---
async def enter_ocr_mode(req: Request) -> None:
    req.store.enter_mode(req.user_id, Mode.OCR)
    req.dirs.ensure_feature_dir(req.user_id, OCR_DIR_NAME)
    await req.reply.send_text("You are now in OCR mode.\n\n" + HELP_TEXT, html=True)


async def clear_command(req: Request) -> None:
    removed = clear_directory(req.dirs.ensure_feature_dir(req.user_id, OCR_DIR_NAME))
    logger.info(f"Cleared {removed} OCR files for user {req.user_id}")
    await req.reply.send_text("All OCR files have been deleted.")


async def process_image(req: Request, file_id: str, extension: str = ".jpg") -> None:
    """
    Downloads one image and runs it through OCR. A second image arriving while
    one is in flight for the same user is rejected, not queued.
    """
    payload = req.store.get_or_init_payload(req.user_id, Mode.OCR)
    if req.store.locks.is_busy(req.user_id, LOCK_NAME) or payload.processing_image:
        await req.reply.send_text("Still processing the previous image, please wait...")
        return

    async with req.store.locks.hold(req.user_id, LOCK_NAME):
        req.store.mutate_payload(req.user_id, Mode.OCR, lambda p: setattr(p, "processing_image", True))
        try:
            await req.reply.send_text("Processing the image, please wait...")
            ocr_dir = req.dirs.ensure_feature_dir(req.user_id, OCR_DIR_NAME)
            image_path = ocr_dir / f"ocr_{int(time.time() * 1000)}{extension}"
            await req.reply.download(file_id, image_path)

            text = await req.services.ocr.extract_text(image_path)

            payload.images_processed += 1
            payload.last_image_path = str(image_path)
            req.store.touch(req.user_id)
            if text:
                await req.reply.send_text(f"Extracted text:\n\n{text}")
            else:
                await req.reply.send_text("No text was detected in the image.")
        except (ServiceError, TelegramError, OSError) as e:
            logger.error(f"OCR failed for user {req.user_id}: {e}", exc_info=True)
            await req.reply.send_text(GENERIC_ERROR_TEXT)
        finally:
            # The user may have left OCR mode meanwhile, so the payload is written directly.
            payload.processing_image = False


async def handle_photo(req: Request) -> None:
    await process_image(req, req.message.photo_file_id)


async def handle_document(req: Request) -> None:
    document = req.message.document
    if not (document.mime_type or "").startswith("image/"):
        await req.reply.send_text("Only image files can be processed with OCR. Please send an image.")
        return
    extension = Path(document.file_name or "").suffix.lower() or ".jpg"
    await process_image(req, document.file_id, extension)


def rules() -> list[Rule]:
    return [
        Rule("ocr", TEXT, enter_ocr_mode, command("ocr"), CAP_OCR),
        Rule("ocr_clear", TEXT, clear_command, command("ocr_clear"), CAP_OCR, Mode.OCR),
        Rule("ocr_photo", PHOTO, handle_photo, None, CAP_OCR, Mode.OCR, passive=True),
        Rule("ocr_document", DOCUMENT, handle_document, None, CAP_OCR, Mode.OCR, passive=True),
    ]
