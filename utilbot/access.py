# -*- coding: utf-8 -*-

# --- IMPORTS ---
import logging

# Local Imports
from .config import Settings

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)


class AccessControl:
    """Static allow-lists, fixed at process start."""

    def __init__(self, registered_users, capability_users: dict):
        self.registered_users = frozenset(registered_users)
        self.capability_users = {name: frozenset(ids) for name, ids in capability_users.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessControl":
        return cls(settings.registered_users, settings.capability_users)

    def is_registered(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.registered_users

    def is_member(self, user_id: int | None, capability: str) -> bool:
        return user_id is not None and user_id in self.capability_users.get(capability, frozenset())

    def capabilities_of(self, user_id: int) -> list[str]:
        return [name for name, ids in self.capability_users.items() if user_id in ids]
