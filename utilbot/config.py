# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging
import os
from dataclasses import dataclass, field

# File / Environment
from dotenv import load_dotenv

# Local Imports
from .constants import CAPABILITY_ENV_VARS
from .errors import ConfigError

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

REQUIRED_VARIABLES = ("BOT_TOKEN", "REGISTERED_USERS", "BASE_DATA_PATH")


@dataclass(frozen=True)
class Settings:
    bot_token: str
    registered_users: frozenset
    base_data_path: str
    capability_users: dict = field(default_factory=dict)
    ocr_api_key: str = ""
    ors_api_key: str = ""
    mapbox_api_key: str = ""
    webhook_url: str = "POLLING"


def parse_id_list(raw: str | None, variable: str = "") -> frozenset:
    """Parses a comma-separated list of integer user ids, ignoring blanks."""
    ids = set()
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError:
            raise ConfigError(f"{variable or 'id list'} contains a non-numeric id: '{chunk}'")
    return frozenset(ids)


def load_settings(environ: dict | None = None) -> Settings:
    """
    Loads the bot settings from the environment (after reading .env).
    Raises ConfigError if a required variable is absent.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    missing = [name for name in REQUIRED_VARIABLES if not environ.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    capability_users = {
        capability: parse_id_list(environ.get(variable), variable)
        for capability, variable in CAPABILITY_ENV_VARS.items()
    }

    webhook_url = environ.get("WEBHOOK_URL") or ""
    if not webhook_url:
        logger.warning("WEBHOOK_URL not set. Defaulting to POLLING mode.")
        webhook_url = "POLLING"

    settings = Settings(
        bot_token=environ["BOT_TOKEN"],
        registered_users=parse_id_list(environ["REGISTERED_USERS"], "REGISTERED_USERS"),
        base_data_path=environ["BASE_DATA_PATH"],
        capability_users=capability_users,
        ocr_api_key=environ.get("OCR_API_KEY", ""),
        ors_api_key=environ.get("ORS_API_KEY", ""),
        mapbox_api_key=environ.get("MAPBOX_API_KEY", ""),
        webhook_url=webhook_url,
    )
    logger.info(f"Settings loaded: {len(settings.registered_users)} registered users, data at {settings.base_data_path}")
    return settings
