import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

# Ensure the utilbot package is in the user's path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from utilbot.access import AccessControl
from utilbot.constants import ALL_CAPABILITIES
from utilbot.handlers import default_rules
from utilbot.messaging import IncomingDocument, IncomingMessage
from utilbot.persistence import KmlFileStore
from utilbot.router import BotContext, CommandRouter
from utilbot.services import GeocodeResult, RouteResult
from utilbot.session import SessionStore
from utilbot.storage import UserDirectories

FULL_USER = 1001      # registered, every capability
PLAIN_USER = 1002     # registered, no capability
STRANGER = 9999       # not registered
CHAT_ID = 555


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSink:
    """Records everything the handlers send back."""

    def __init__(self, chat_id: int = CHAT_ID):
        self.chat_id = chat_id
        self.texts = []
        self.photos = []
        self.documents = []
        self.locations = []

    async def send_text(self, text, html=False):
        self.texts.append(text)

    async def send_photo(self, photo, caption=None):
        self.photos.append(photo)

    async def send_document(self, path, caption=None):
        self.documents.append(Path(path))

    async def send_location(self, latitude, longitude):
        self.locations.append((latitude, longitude))

    async def download(self, file_id, destination):
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        Path(destination).write_bytes(b"data-" + file_id.encode())
        return Path(destination)

    async def download_bytes(self, file_id):
        return b"photo-" + file_id.encode()

    @property
    def last_text(self):
        return self.texts[-1] if self.texts else None


def make_services():
    async def _create_archive(files, destination):
        Path(destination).write_bytes(b"PK")
        return Path(destination)

    async def _build_workbook(media_dir, output_path):
        Path(output_path).write_bytes(b"x" * 100)
        return Path(output_path)

    return SimpleNamespace(
        geocoder=SimpleNamespace(
            address_for=AsyncMock(return_value="Jl. Merdeka No. 1, Jakarta"),
            coordinates_for=AsyncMock(return_value=GeocodeResult(-6.175, 106.827, "Monas, Jakarta")),
        ),
        routing=SimpleNamespace(route=AsyncMock(return_value=RouteResult(1500.0, 360.0))),
        ocr=SimpleNamespace(extract_text=AsyncMock(return_value="HELLO WORLD")),
        archive=SimpleNamespace(
            create_archive=AsyncMock(side_effect=_create_archive),
            extract_archive=AsyncMock(return_value=[]),
            list_matching=AsyncMock(return_value=[]),
        ),
        geotags=SimpleNamespace(render=AsyncMock(return_value=b"tagged-jpeg")),
        workbook=SimpleNamespace(build_async=AsyncMock(side_effect=_build_workbook)),
    )


class Harness:
    """Router wired to fakes; `send` feeds one message through dispatch."""

    def __init__(self, base_path: Path):
        self.clock = FakeClock()
        self.dirs = UserDirectories(base_path)
        self.store = SessionStore(kml_files=KmlFileStore(self.dirs), clock=self.clock)
        self.access = AccessControl(
            {FULL_USER, PLAIN_USER},
            {capability: {FULL_USER} for capability in ALL_CAPABILITIES},
        )
        self.services = make_services()
        self.ctx = BotContext(self.access, self.store, self.dirs, self.services)
        self.router = CommandRouter(self.ctx, default_rules())
        self.sink = FakeSink()
        self._next_message_id = 1

    async def send(self, text=None, user_id=FULL_USER, photo=None, location=None,
                   document=None, message_id=None, other_media=False, chat_id=CHAT_ID):
        if message_id is None:
            message_id = self._next_message_id
            self._next_message_id += 1
        if isinstance(document, str):
            document = IncomingDocument(file_id=f"doc-{message_id}", file_name=document)
        message = IncomingMessage(
            user_id=user_id,
            chat_id=chat_id,
            message_id=message_id,
            text=text,
            photo_file_id=photo,
            document=document,
            location=location,
            display_name="Tester",
            has_other_media=other_media,
        )
        return await self.router.dispatch(message, self.sink)


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path / "data")
