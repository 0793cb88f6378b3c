# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
from dataclasses import dataclass
from pathlib import Path

# Telegram
from telegram import Bot, LinkPreviewOptions, Update
from telegram.constants import ParseMode

# Local Imports
from .constants import MESSAGE_CHUNK_SIZE

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)


@dataclass
class IncomingDocument:
    file_id: str
    file_name: str | None = None
    mime_type: str | None = None


@dataclass
class IncomingMessage:
    """The parts of a Telegram message the router and handlers look at."""

    user_id: int | None
    chat_id: int
    message_id: int | None = None
    text: str | None = None
    photo_file_id: str | None = None
    document: IncomingDocument | None = None
    location: tuple | None = None  # (latitude, longitude)
    display_name: str = "User"
    has_other_media: bool = False

    @classmethod
    def from_update(cls, update: Update) -> "IncomingMessage | None":
        message = update.effective_message
        if message is None:
            return None
        user = update.effective_user
        document = None
        if message.document:
            document = IncomingDocument(
                message.document.file_id, message.document.file_name, message.document.mime_type
            )
        return cls(
            user_id=user.id if user else None,
            chat_id=message.chat_id,
            message_id=message.message_id,
            text=message.text,
            # Highest resolution is last
            photo_file_id=message.photo[-1].file_id if message.photo else None,
            document=document,
            location=(message.location.latitude, message.location.longitude) if message.location else None,
            display_name=(user.first_name or user.username or "User") if user else "User",
            has_other_media=bool(
                message.video or message.sticker or message.audio or message.voice
                or message.contact or message.poll
            ),
        )


class ReplySink:
    """Outgoing side of one chat: wraps the Bot calls the handlers need."""

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def send_text(self, text: str, html: bool = False) -> None:
        # Telegram caps a message at 4096 chars.
        chunks = [text[i:i + MESSAGE_CHUNK_SIZE] for i in range(0, len(text), MESSAGE_CHUNK_SIZE)] or [""]
        for chunk in chunks:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=chunk,
                parse_mode=ParseMode.HTML if html else None,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )

    async def send_photo(self, photo: bytes, caption: str | None = None) -> None:
        await self.bot.send_photo(chat_id=self.chat_id, photo=photo, caption=caption)

    async def send_document(self, path: Path, caption: str | None = None) -> None:
        with open(path, "rb") as f:
            await self.bot.send_document(
                chat_id=self.chat_id, document=f, filename=Path(path).name, caption=caption
            )

    async def send_location(self, latitude: float, longitude: float) -> None:
        await self.bot.send_location(chat_id=self.chat_id, latitude=latitude, longitude=longitude)

    async def download(self, file_id: str, destination: Path) -> Path:
        tg_file = await self.bot.get_file(file_id)
        await tg_file.download_to_drive(custom_path=destination)
        logger.info(f"Downloaded {file_id} to {destination}")
        return Path(destination)

    async def download_bytes(self, file_id: str) -> bytes:
        tg_file = await self.bot.get_file(file_id)
        return bytes(await tg_file.download_as_bytearray())
