# -*- coding: utf-8 -*-

# --- IMPORTS ---
import json
import logging
import os
from datetime import datetime

# Local Imports
from .constants import KML_DATA_FILE_NAME
from .session import KmlPayload
from .storage import UserDirectories

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)


class KmlFileStore:
    """JSON mirror of each user's KML payload at <base>/<user_id>/kml_data.json."""

    def __init__(self, directories: UserDirectories):
        self.directories = directories

    def path_for(self, user_id: int):
        return self.directories.resolve_within_user(user_id, KML_DATA_FILE_NAME)

    def load(self, user_id: int) -> KmlPayload:
        """
        Loads the payload from disk. A missing file yields the default payload;
        an unreadable or malformed file is renamed aside and replaced by the default.
        """
        path = self.path_for(user_id)
        if not path.exists():
            return KmlPayload()
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = KmlPayload.from_dict(json.load(f))
            logger.info(f"Loaded KML data for user {user_id}: {len(payload.placemarks)} points, {len(payload.lines)} lines")
            return payload
        except (OSError, json.JSONDecodeError, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Unreadable KML data for user {user_id}: {e}")

        payload = KmlPayload()
        try:
            backup = self._quarantine(path)
            logger.error(f"Moved the KML data of user {user_id} aside to {backup}")
            self.save(user_id, payload)
        except OSError as e:
            logger.error(f"Could not reset the KML data of user {user_id}: {e}")
        return payload

    def save(self, user_id: int, payload: KmlPayload) -> None:
        path = self.path_for(user_id)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)

    @staticmethod
    def _quarantine(path):
        stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backup = path.with_name(f"{path.stem}_backup_{stamp}{path.suffix}")
        os.replace(path, backup)
        return backup
