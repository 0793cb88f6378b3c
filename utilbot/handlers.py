# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging

# Telegram
from telegram import BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes

# Local Imports
from .constants import GENERIC_ERROR_TEXT
from .features import archive, geotags, kml, location, menu, ocr, workbook
from .messaging import IncomingMessage, ReplySink
from .router import CommandRouter, Rule

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

# Dispatch order. Within location, the bare coordinate pair is last.
FEATURE_ORDER = (menu, archive, ocr, workbook, geotags, kml, location)


def default_rules() -> list[Rule]:
    rules = []
    for feature in FEATURE_ORDER:
        rules.extend(feature.rules())
    return rules


# --- TELEGRAM CALLBACKS ---
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Single entry point for every message: hands it to the rule router."""
    message = IncomingMessage.from_update(update)
    if message is None:
        return
    router: CommandRouter = context.bot_data["router"]
    await router.dispatch(message, ReplySink(context.bot, message.chat_id))


async def clear_processed_messages(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Periodic job: forgets the message ids seen so far."""
    router: CommandRouter = context.bot_data["router"]
    router.store.clear_processed()
    logger.debug("Processed-message cache cleared.")


# --- POST INIT FUNCTION ---
async def post_set_commands(application: Application) -> None:
    """Sets the bot's command list in Telegram."""
    commands = [
        BotCommand("start", "Start the bot"),
        BotCommand("menu", "Show the features you can use"),
        BotCommand("help", "Help for the current mode"),
        BotCommand("lokasi", "Location lookups and distance measurement"),
        BotCommand("rar", "Create, extract and search archives"),
        BotCommand("workbook", "Collect photos into an Excel workbook"),
        BotCommand("ocr", "Extract text from images"),
        BotCommand("kml", "Record points and lines as KML"),
        BotCommand("geotags", "Stamp photos with their location"),
    ]
    try:
        await application.bot.set_my_commands(commands)
        logger.info("Bot commands menu updated successfully.")
    except TelegramError as e:
        logger.error(f"Failed to set bot commands: {e}")


# --- GLOBAL ERROR HANDLER ---
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Logs errors caused by Updates and notifies the user."""
    logger.error(f"Exception while handling an update: {context.error}", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(GENERIC_ERROR_TEXT)
        except TelegramError as e:
            logger.error(f"Failed to send error message to user: {e}")
