"""
Notification Service
Owns the bus, session gate, poller, presenter and data poller for one process.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from shared.error_models import AuthenticationError
from .api_client import NotificationApiClient
from .event_bus import EventBus
from .models import EventType, NotificationRecord, NotificationUpdatedEvent
from .notification_poller import NotificationPoller
from .presenter import NotificationPresenter, SoundPlayer
from .realtime_data_service import RealtimeDataService
from .session_gate import SessionGate, TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotificationService:
    """
    Composition root for the notification relay.

    Nothing here is a module-level singleton; the app builds one instance in
    its lifespan and tears it down with shutdown().
    """

    def __init__(
        self,
        api_client: Optional[NotificationApiClient] = None,
        bus: Optional[EventBus] = None,
        token_store: Optional[TokenStore] = None,
        sound_player: Optional[SoundPlayer] = None,
        profile: Optional[str] = None,
        poll_interval: Optional[float] = None,
        data_poll_interval: Optional[float] = None,
        max_per_cycle: Optional[int] = None,
    ):
        self._owns_client = api_client is None
        self.api_client = api_client or NotificationApiClient()
        self.bus = bus or EventBus()
        self.token_store = token_store or TokenStore()

        self.gate = SessionGate(self.token_store, self.bus)
        self.presenter = NotificationPresenter(self.bus, sound_player=sound_player, mark_read=self.mark_as_read)
        self.poller = NotificationPoller(
            self.api_client,
            self.gate,
            self.bus,
            self.presenter,
            interval=poll_interval,
            profile=profile,
            max_per_cycle=max_per_cycle,
        )
        self.gate.bind_poller(self.poller)

        self.data_service = RealtimeDataService(self.bus, interval=data_poll_interval)
        self._register_default_fetchers()
        self._initialized = False

    def _register_default_fetchers(self):
        self.data_service.register_fetcher(EventType.CATEGORIES, self._fetch_categories)
        self.data_service.register_fetcher(EventType.PRODUCTS, self._fetch_products, per_category=True)
        self.data_service.register_fetcher(EventType.SLIDERS, self._fetch_sliders)
        self.data_service.register_fetcher(EventType.ORDERS, self._fetch_orders)

    async def _fetch_categories(self, options: Dict[str, Any]) -> Any:
        return await self.api_client.get_categories()

    async def _fetch_products(self, options: Dict[str, Any]) -> Any:
        return await self.api_client.get_products_by_category(options["category_id"])

    async def _fetch_sliders(self, options: Dict[str, Any]) -> Any:
        return await self.api_client.get_sliders()

    async def _fetch_orders(self, options: Dict[str, Any]) -> Any:
        # Orders are per user; nothing to fetch without a session
        if not self.gate.is_authenticated():
            return None
        return await self._authorized(lambda token, user_id: self.api_client.get_user_orders(user_id, token))

    async def initialize(self):
        """Resume polling if the token store already holds a usable session."""
        if self._initialized:
            return
        self._initialized = True

        if self.gate.is_authenticated():
            logger.info("Stored session found, starting notification polling")
            await self.poller.start()
        elif self.token_store.has_credentials():
            await self.gate.invalidate()
        logger.info(f"✅ Notification service initialized ({self.poller.filter.profile} profile)")

    async def shutdown(self):
        await self.poller.stop()
        await self.data_service.shutdown()
        if self._owns_client:
            await self.api_client.close()
        self._initialized = False
        logger.info("Notification service shut down")

    # Session

    async def login(self, token: str, user_id: str):
        await self.gate.on_login(token, user_id)

    async def logout(self):
        await self.gate.on_logout()

    async def _authorized(self, call: Callable[[str, str], Awaitable[T]]) -> T:
        """Run an API call with the session credential; a rejected credential ends the session."""
        token, user_id = self.gate.credentials()
        try:
            return await call(token, user_id)
        except AuthenticationError as e:
            await self.gate.invalidate(status_code=e.status_code)
            raise

    # Notifications

    async def get_notifications(self, page: int = 1, limit: int = 20) -> List[NotificationRecord]:
        return await self._authorized(
            lambda token, user_id: self.api_client.get_user_notifications(user_id, token, page=page, limit=limit)
        )

    async def get_unread_count(self) -> int:
        count = await self._authorized(lambda token, user_id: self.api_client.get_unread_count(user_id, token))
        self.poller.state.last_unread_count = count
        return count

    async def mark_as_read(self, notification_id: int) -> Dict:
        result = await self._authorized(
            lambda token, user_id: self.api_client.mark_notification_as_read(notification_id, token)
        )
        if self.poller.state.last_unread_count > 0:
            self.poller.state.last_unread_count -= 1
        self.bus.publish(EventType.NOTIFICATION_UPDATED, NotificationUpdatedEvent())
        return result

    async def mark_all_as_read(self) -> Dict:
        result = await self._authorized(
            lambda token, user_id: self.api_client.mark_all_notifications_as_read(user_id, token)
        )
        self.poller.state.last_unread_count = 0
        self.bus.publish(EventType.NOTIFICATION_UPDATED, NotificationUpdatedEvent())
        logger.info("All notifications marked as read")
        return result

    async def handle_notification_tap(self, record: NotificationRecord) -> Optional[str]:
        return await self.presenter.handle_tap(record)

    def status(self) -> Dict[str, Any]:
        return {
            "poller": self.poller.status().model_dump(mode="json"),
            "data_polling": self.data_service.get_status(),
        }
