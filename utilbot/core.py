# -*- coding: utf-8 -*-

# --- IMPORTS ---
import asyncio
import logging

# HTTP
import httpx

# Telegram
from telegram.ext import ApplicationBuilder, MessageHandler, filters

# Local Imports
from .access import AccessControl
from .config import load_settings
from .constants import HTTP_TIMEOUT_SECONDS, PROCESSED_CACHE_CLEAR_INTERVAL_SECONDS
from .errors import ConfigError
from .handlers import clear_processed_messages, default_rules, error_handler, handle_message, post_set_commands
from .persistence import KmlFileStore
from .router import BotContext, CommandRouter
from .services import build_services
from .session import SessionStore
from .storage import UserDirectories

# --- BASIC SETUP ---
# Configure logging to provide detailed output for monitoring and debugging.
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
# Reduce the verbosity of the httpx library which is used by the Telegram API.
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# --- LOAD ENVIRONMENT VARIABLES ---
try:
    settings = load_settings()
except ConfigError as e:
    logger.critical(f"FATAL: {e}")
    exit("Configuration Error: check the .env file for BOT_TOKEN, REGISTERED_USERS and BASE_DATA_PATH.")

WEBHOOK_URL = settings.webhook_url

# --- SHARED STATE ---
directories = UserDirectories(settings.base_data_path)
session_store = SessionStore(kml_files=KmlFileStore(directories))
http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS, follow_redirects=True)
bot_context = BotContext(
    access=AccessControl.from_settings(settings),
    store=session_store,
    dirs=directories,
    services=build_services(http_client, settings),
)

# --- APPLICATION SETUP ---
# Defined globally so it can be imported and used by the Flask web server (app.py).
# Updates are handled concurrently; per-user advisory locks guard the features that need it.
application = (
    ApplicationBuilder()
    .token(settings.bot_token)
    .concurrent_updates(True)
    .build()
)


# --- MAIN BOT SETUP FUNCTION ---
async def main() -> None:
    """
    Registers the router, the error handler and the housekeeping job,
    initializes the application and configures the webhook.
    """
    application.bot_data["router"] = CommandRouter(bot_context, default_rules())

    application.add_error_handler(error_handler)
    # Every message goes through the rule router; edits are ignored.
    application.add_handler(MessageHandler(filters.UpdateType.MESSAGE, handle_message))

    application.job_queue.run_repeating(
        clear_processed_messages,
        interval=PROCESSED_CACHE_CLEAR_INTERVAL_SECONDS,
        first=PROCESSED_CACHE_CLEAR_INTERVAL_SECONDS,
        name="clear_processed_messages",
    )

    logger.info("Initializing application...")
    await application.initialize()
    logger.info("Application initialized.")

    if WEBHOOK_URL.upper() != "POLLING":
        webhook_full_url = f"{WEBHOOK_URL}/webhook"
        logger.info(f"Setting webhook to {webhook_full_url}...")
        await application.bot.set_webhook(url=webhook_full_url)
        logger.info("Webhook set successfully.")
    else:
        logger.info("Deleting any existing webhook for polling...")
        await application.bot.delete_webhook()

    directories.base_path.mkdir(parents=True, exist_ok=True)
    logger.info(f"Bot setup complete. Data directory: {directories.base_path}")

    await post_set_commands(application)


if __name__ == "__main__":
    # Polling mode: python -m utilbot.core
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    loop.run_until_complete(main())

    logger.info("Starting bot in POLLING mode...")
    # application.run_polling() is blocking and reuses the current loop
    application.run_polling()
