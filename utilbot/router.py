# -*- coding: utf-8 -*-
"""
Ordered rule dispatch.

Every inbound message is matched against one explicit, ordered list of rules
(menu, archive, ocr, workbook, geotags, kml, location). The first rule that
matches AND applies decides what happens:

* non-passive rules (slash commands) always apply once matched; a missing
  capability or the wrong mode produces a reply instead of running the handler.
* passive rules (photo / document / location listeners, bare text) only apply
  when the user has the capability and is in the rule's mode; otherwise the
  next rule is tried.
"""

# --- IMPORTS ---
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

# Local Imports
from .access import AccessControl
from .constants import NO_ACCESS_TEXT, NOT_REGISTERED_TEXT
from .messaging import IncomingMessage, ReplySink
from .session import ENTRY_COMMANDS, MODE_LABELS, Mode, SessionStore
from .storage import UserDirectories

# --- BASIC SETUP ---
logger = logging.getLogger(__name__)

TEXT, PHOTO, DOCUMENT, LOCATION, MEDIA = ("text", "photo", "document", "location", "media")


def command(name: str) -> re.Pattern:
    """Pattern for `/name`, `/name@BotName` and `/name <args>`; args land in the `args` group."""
    return re.compile(rf"^/{name}(?:@\w+)?(?:\s+(?P<args>.*))?$", re.IGNORECASE | re.DOTALL)


def literal(*words: str) -> re.Pattern:
    """Case-insensitive match for one of `words` as the whole message."""
    return re.compile(rf"^(?:{'|'.join(re.escape(w) for w in words)})$", re.IGNORECASE)


@dataclass
class BotContext:
    """Process-wide collaborators shared by every handler."""

    access: AccessControl
    store: SessionStore
    dirs: UserDirectories
    services: object  # services.Services


@dataclass
class Request:
    message: IncomingMessage
    reply: ReplySink
    ctx: BotContext
    match: re.Match | None = None

    @property
    def user_id(self) -> int:
        return self.message.user_id

    @property
    def chat_id(self) -> int:
        return self.message.chat_id

    @property
    def args(self) -> str:
        if self.match is None:
            return ""
        return (self.match.groupdict().get("args") or "").strip()

    @property
    def store(self) -> SessionStore:
        return self.ctx.store

    @property
    def dirs(self) -> UserDirectories:
        return self.ctx.dirs

    @property
    def services(self):
        return self.ctx.services


Handler = Callable[[Request], Awaitable[None]]


@dataclass
class Rule:
    name: str
    kind: str
    handler: Handler
    pattern: re.Pattern | None = None
    capability: str | None = None
    mode: Mode | None = None  # None: valid in any mode
    passive: bool = False

    def match(self, message: IncomingMessage) -> tuple[bool, re.Match | None]:
        if self.kind == TEXT:
            if not message.text:
                return False, None
            found = self.pattern.match(message.text.strip()) if self.pattern else None
            return found is not None, found
        if self.kind == PHOTO:
            return message.photo_file_id is not None, None
        if self.kind == DOCUMENT:
            return message.document is not None, None
        if self.kind == LOCATION:
            return message.location is not None, None
        if self.kind == MEDIA:
            # Anything that is neither text nor a photo.
            return message.has_other_media or message.document is not None or message.location is not None, None
        return False, None


class CommandRouter:
    def __init__(self, ctx: BotContext, rules: list[Rule]):
        self.ctx = ctx
        self.rules = list(rules)

    @property
    def access(self) -> AccessControl:
        return self.ctx.access

    @property
    def store(self) -> SessionStore:
        return self.ctx.store

    async def dispatch(self, message: IncomingMessage, reply: ReplySink) -> bool:
        """Routes one message. Returns True if a rule handled (or explicitly refused) it."""
        user_id = message.user_id
        if not self.access.is_registered(user_id):
            logger.warning(f"Unregistered user {user_id} ({message.display_name}) tried to use the bot.")
            await reply.send_text(NOT_REGISTERED_TEXT.format(name=message.display_name, user_id=user_id))
            return False

        if not self.store.mark_processed(message.chat_id, message.message_id):
            logger.info(f"Skipping duplicate message {message.message_id} in chat {message.chat_id}")
            return False

        mode = self.store.get_mode(user_id)
        for rule in self.rules:
            matched, found = rule.match(message)
            if not matched:
                continue

            has_capability = rule.capability is None or self.access.is_member(user_id, rule.capability)
            in_mode = rule.mode is None or rule.mode == mode

            if rule.passive:
                if not (has_capability and in_mode):
                    continue
            elif not has_capability:
                logger.info(f"User {user_id} lacks '{rule.capability}' for rule '{rule.name}'")
                await reply.send_text(NO_ACCESS_TEXT.format(feature=rule.capability))
                return True
            elif not in_mode:
                await reply.send_text(
                    f"This command is only available in {MODE_LABELS[rule.mode]} mode. "
                    f"Switch with {ENTRY_COMMANDS[rule.mode]} first."
                )
                return True

            logger.debug(f"User {user_id} -> rule '{rule.name}' (mode {mode.value})")
            await rule.handler(Request(message, reply, self.ctx, found))
            return True

        if message.text and mode not in (Mode.NONE, Mode.MENU):
            await reply.send_text(
                f"Command not valid in {MODE_LABELS[mode]} mode. Use /help to see the available commands."
            )
        return False
