"""
Pytest configuration and shared fixtures.
"""
import asyncio
import os
import sys
import time
from typing import Any, Dict, List, Optional

import pytest
from jose import jwt

# Settings are read once at import; pin test values before anything imports them
os.environ["SENTRY_DSN"] = ""  # Disable Sentry in tests
os.environ["ENVIRONMENT"] = "test"
os.environ["NOTIFICATION_PROFILE"] = "user"

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.error_models import AuthenticationError
from realtime.event_bus import EventBus
from realtime.models import NotificationRecord
from realtime.notification_poller import NotificationPoller
from realtime.presenter import NotificationPresenter, SoundPlaybackError
from realtime.session_gate import SessionGate, TokenStore

TEST_TOKEN = "test-token"
TEST_USER_ID = "7"
TEST_SECRET = "test-secret-key-for-testing-only"


def make_jwt(expires_in: float = 3600, **claims) -> str:
    """Sign a JWT whose exp is expires_in seconds from now (negative for expired)."""
    payload = {"sub": TEST_USER_ID, "exp": int(time.time() + expires_in), **claims}
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


class FakeNotificationApi:
    """
    In-memory stand-in for NotificationApiClient.

    Every call yields to the event loop once, so concurrent poll cycles
    interleave the way they would against a real backend.
    """

    def __init__(self):
        self.records: Dict[int, Dict[str, Any]] = {}
        self.unread_override: Optional[int] = None
        self.auth_error_status: Optional[int] = None
        self.fail_with: Optional[Exception] = None
        self.before_list = None
        self.calls: List[tuple] = []
        self.categories: List[Dict[str, Any]] = [{"id": 1, "name": "Rings"}]
        self.products: Dict[Any, List[Dict[str, Any]]] = {}
        self.sliders: List[Dict[str, Any]] = []
        self.orders: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, notification_id: int, type: str = "general", is_read: bool = False, **data) -> Dict[str, Any]:
        record = {
            "id": notification_id,
            "type": type,
            "title": f"Notification {notification_id}",
            "body": f"Body {notification_id}",
            "data": data,
            "is_read": 1 if is_read else 0,
        }
        self.records[notification_id] = record
        return record

    def mark_read(self, notification_id: int):
        self.records[notification_id]["is_read"] = 1

    async def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        await asyncio.sleep(0)
        if self.auth_error_status is not None:
            raise AuthenticationError("Unauthorized", status_code=self.auth_error_status)
        if self.fail_with is not None:
            raise self.fail_with

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def get_unread_count(self, user_id: str, token: str) -> int:
        await self._call("unread", user_id)
        if self.unread_override is not None:
            return self.unread_override
        return sum(1 for r in self.records.values() if not r["is_read"])

    async def get_user_notifications(self, user_id: str, token: str, page: int = 1, limit: int = 20):
        await self._call("list", user_id, limit)
        if self.before_list is not None:
            await self.before_list()
        newest_first = sorted(self.records.values(), key=lambda r: r["id"], reverse=True)
        start = (page - 1) * limit
        return [NotificationRecord.model_validate(r) for r in newest_first[start:start + limit]]

    async def mark_notification_as_read(self, notification_id: int, token: str):
        await self._call("mark_read", notification_id)
        if notification_id in self.records:
            self.mark_read(notification_id)
        return {"success": True}

    async def mark_all_notifications_as_read(self, user_id: str, token: str):
        await self._call("mark_all_read", user_id)
        for notification_id in self.records:
            self.mark_read(notification_id)
        return {"success": True}

    async def get_categories(self):
        await self._call("categories")
        return list(self.categories)

    async def get_products_by_category(self, category_id):
        await self._call("products", category_id)
        return list(self.products.get(category_id, []))

    async def get_sliders(self):
        await self._call("sliders")
        return list(self.sliders)

    async def get_user_orders(self, user_id: str, token: str):
        await self._call("orders", user_id)
        return list(self.orders)

    async def close(self):
        self.closed = True


class RecordingSoundPlayer:
    """Sound player that records what it was asked to play."""

    def __init__(self, missing_assets: bool = False, broken: bool = False):
        self.missing_assets = missing_assets
        self.broken = broken
        self.files: List[tuple] = []
        self.tones: List[tuple] = []

    def play_file(self, path: str, volume: float) -> None:
        if self.broken or self.missing_assets:
            raise SoundPlaybackError(f"Cannot play {path}")
        self.files.append((path, volume))

    def play_wav(self, data: bytes, volume: float) -> None:
        if self.broken:
            raise SoundPlaybackError("Audio device unavailable")
        self.tones.append((data, volume))


class EventRecorder:
    """Collects payloads published on a bus, per event type."""

    def __init__(self, bus: EventBus, *event_types):
        self.events: Dict[str, List[Any]] = {}
        for event_type in event_types:
            key = event_type.value if hasattr(event_type, "value") else str(event_type)
            self.events[key] = []
            bus.subscribe(event_type, self.events[key].append)

    def __getitem__(self, event_type) -> List[Any]:
        key = event_type.value if hasattr(event_type, "value") else str(event_type)
        return self.events[key]


@pytest.fixture
def api() -> FakeNotificationApi:
    return FakeNotificationApi()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def token_store() -> TokenStore:
    return TokenStore()


@pytest.fixture
def gate(token_store: TokenStore, bus: EventBus) -> SessionGate:
    return SessionGate(token_store, bus)


@pytest.fixture
def sound_player() -> RecordingSoundPlayer:
    return RecordingSoundPlayer()


@pytest.fixture
def presenter(bus: EventBus, sound_player: RecordingSoundPlayer) -> NotificationPresenter:
    return NotificationPresenter(
        bus,
        sound_player=sound_player,
        toast_duration=8.0,
        sound_enabled=True,
        volume=0.5,
        asset_dir="sounds",
    )


@pytest.fixture
async def poller(api, gate, bus, presenter):
    """User-profile poller whose timer never fires during a test; cycles are driven by hand."""
    poller = NotificationPoller(api, gate, bus, presenter, interval=3600, profile="user", processed_limit=100)
    gate.bind_poller(poller)
    yield poller
    await poller.stop()


@pytest.fixture
def jwt_factory():
    return make_jwt
