"""
Notification Polling Service
Polls the backend for unread notifications and emits each new one exactly once.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional

from shared.config import settings
from shared.error_models import AuthenticationError, NotAuthenticatedError, NotificationAPIError
from .api_client import NotificationApiClient
from .event_bus import EventBus
from .models import (
    EventType,
    LoginRequestEvent,
    NotificationRecord,
    NotificationType,
    NotificationUpdatedEvent,
    PollerStatus,
)
from .presenter import NotificationPresenter
from .session_gate import SessionGate

logger = logging.getLogger(__name__)

# Types only the mobile app cares about
MOBILE_ONLY_TYPES = frozenset({
    NotificationType.LOGIN_APPROVED.value,
    NotificationType.LOGIN_REJECTED.value,
    NotificationType.NEW_ORDER.value,
    NotificationType.ORDER_STATUS_UPDATED.value,
    NotificationType.CART_UPDATED.value,
    NotificationType.PRODUCT_ADDED_TO_CART.value,
})
MOBILE_ACTIONS = frozenset({"redirect_to_home", "force_logout", "view_order", "view_cart"})
ADMIN_RELEVANT_TYPES = frozenset({
    NotificationType.LOGIN_REQUEST.value,
    NotificationType.ADMIN_NOTIFICATION.value,
    NotificationType.SYSTEM_ALERT.value,
    NotificationType.USER_REGISTERED.value,
    NotificationType.USER_REGISTRATION.value,
})

MAX_PAGE_SIZE = 100


class NotificationFilter:
    """Decides which notifications a profile surfaces ("user" = mobile app, "admin" = dashboard)."""

    def __init__(self, profile: str = "user"):
        if profile not in ("user", "admin"):
            raise ValueError(f"Unknown notification profile: {profile}")
        self.profile = profile

    def allows(self, record: NotificationRecord) -> bool:
        if self.profile == "user":
            return True
        if record.type in MOBILE_ONLY_TYPES:
            return False
        if record.action in MOBILE_ACTIONS:
            return False
        return record.notification_type in ADMIN_RELEVANT_TYPES


class PollerState:
    """
    Last-seen counters plus a bounded set of processed notification ids.

    last_notification_id only moves forward until clear().
    """

    def __init__(self, processed_limit: int = 100):
        self.processed_limit = processed_limit
        self.last_unread_count = 0
        self.last_notification_id = 0
        self.last_notification_count = 0
        self._processed: "OrderedDict[int, None]" = OrderedDict()

    def is_processed(self, notification_id: int) -> bool:
        return notification_id in self._processed

    def mark_processed(self, notification_id: int):
        self._processed[notification_id] = None
        while len(self._processed) > self.processed_limit:
            self._processed.popitem(last=False)
        if notification_id > self.last_notification_id:
            self.last_notification_id = notification_id

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    def clear(self):
        self._processed.clear()
        self.last_unread_count = 0
        self.last_notification_id = 0
        self.last_notification_count = 0


class NotificationPoller:
    """
    Periodically fetches unread count and notifications and emits new ones.

    A cycle never awaits between checking an id against the processed set and
    marking it, so overlapping cycles cannot both emit the same notification.
    """

    def __init__(
        self,
        api_client: NotificationApiClient,
        gate: SessionGate,
        bus: EventBus,
        presenter: Optional[NotificationPresenter] = None,
        interval: Optional[float] = None,
        profile: Optional[str] = None,
        processed_limit: Optional[int] = None,
        max_per_cycle: Optional[int] = None,
        page_size: int = 20,
    ):
        self.api_client = api_client
        self.gate = gate
        self.bus = bus
        self.presenter = presenter
        self.filter = NotificationFilter(profile or settings.NOTIFICATION_PROFILE)
        self.interval = interval if interval is not None else settings.poll_interval_for(self.filter.profile)
        if self.interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.max_per_cycle = max_per_cycle
        self.page_size = page_size
        self.state = PollerState(processed_limit or settings.PROCESSED_ID_LIMIT)

        self.is_running = False
        self._poll_task: Optional[asyncio.Task] = None
        # Bumped on every start/stop; a cycle whose generation is stale discards its results
        self._run_generation = 0

        self.last_poll_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.consecutive_errors = 0

    async def start(self):
        """Start polling. No-op if already running."""
        if self.is_running:
            logger.debug("Notification polling already running")
            return
        if not self.gate.is_authenticated():
            raise NotAuthenticatedError("Cannot start notification polling: not authenticated")

        self.is_running = True
        self._run_generation += 1
        generation = self._run_generation
        logger.info(f"Starting notification polling every {self.interval}s ({self.filter.profile} profile)")

        await self.check_once()
        # The first cycle may have hit a 401 and stopped us
        if not self._is_current(generation):
            return
        self._poll_task = asyncio.create_task(self._poll_loop(generation))

    async def stop(self):
        """Stop polling. Safe to call when not running."""
        was_running = self.is_running
        self.is_running = False
        self._run_generation += 1

        task, self._poll_task = self._poll_task, None
        # stop() may be reached from inside the loop itself (auth failure)
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if was_running:
            logger.info("Notification polling stopped")

    def clear_cache(self):
        """Forget everything seen so far."""
        self.state.clear()
        logger.info("Notification cache cleared")

    async def reset(self):
        """Stop, clear state and start again (reconnect)."""
        await self.stop()
        self.clear_cache()
        await self.start()

    def _is_current(self, generation: int) -> bool:
        return self.is_running and generation == self._run_generation

    async def _poll_loop(self, generation: int):
        while self._is_current(generation):
            await asyncio.sleep(self.interval)
            if not self._is_current(generation):
                break
            try:
                await self.check_once()
            except Exception as e:
                # check_once handles API failures; this guards the loop against bugs
                logger.error(f"Unexpected error in notification polling: {e}", exc_info=True)

    async def check_once(self) -> List[NotificationRecord]:
        """
        Run one fetch-and-compare cycle.

        Returns:
            Records emitted by this cycle, newest first
        """
        generation = self._run_generation
        self.last_poll_at = datetime.utcnow()

        if not self.gate.is_authenticated():
            if self.gate.token_store.has_credentials():
                # Token expired mid-session
                await self.gate.invalidate()
            else:
                logger.info("User not authenticated, stopping notification polling")
                await self.stop()
            return []

        token, user_id = self.gate.credentials()
        try:
            unread_count = await self.api_client.get_unread_count(user_id, token)
            if generation != self._run_generation:
                logger.debug("Discarding unread count from a stopped poll cycle")
                return []

            previous_count = self.state.last_unread_count
            if unread_count > previous_count:
                logger.info(f"New notifications detected: {unread_count - previous_count}")

            if unread_count == 0:
                self.state.last_unread_count = 0
                self._record_success()
                return []

            # A count that did not grow can still hide new items (one read, one arrived)
            limit = min(max(self.page_size, unread_count), MAX_PAGE_SIZE)
            notifications = await self.api_client.get_user_notifications(user_id, token, limit=limit)
            if generation != self._run_generation:
                logger.debug("Discarding notification list from a stopped poll cycle")
                return []
        except AuthenticationError as e:
            if generation == self._run_generation:
                logger.warning(f"Authentication error while polling ({e.status_code}), stopping polling")
                await self.gate.invalidate(status_code=e.status_code)
            return []
        except NotificationAPIError as e:
            self.consecutive_errors += 1
            logger.error(f"Error checking notifications (attempt {self.consecutive_errors}): {e}")
            return []

        return self._process(notifications, unread_count)

    def _process(self, notifications: List[NotificationRecord], unread_count: int) -> List[NotificationRecord]:
        """Pick out unseen unread records and emit them. Must stay free of awaits."""
        self.state.last_notification_count = len(notifications)
        watermark = self.state.last_notification_id

        unread = sorted((n for n in notifications if not n.is_read), key=lambda n: n.id, reverse=True)
        emitted: List[NotificationRecord] = []
        for record in unread:
            if self.state.is_processed(record.id) or record.id <= watermark:
                continue
            self.state.mark_processed(record.id)

            if not self.filter.allows(record):
                logger.debug(f"Skipping {record.type} notification {record.id} for {self.filter.profile} profile")
                continue
            if self.max_per_cycle is not None and len(emitted) >= self.max_per_cycle:
                # Older than what was surfaced; dropped for this session
                logger.debug(f"Presenter limit reached, not surfacing notification {record.id}")
                continue

            self._emit(record)
            emitted.append(record)

        self.state.last_unread_count = unread_count
        self._record_success()

        if emitted:
            self.bus.publish(EventType.NOTIFICATION_UPDATED, NotificationUpdatedEvent())
        return emitted

    def _emit(self, record: NotificationRecord):
        logger.info(f"New notification {record.id} ({record.type}): {record.title}")
        self.bus.publish(EventType.NEW_NOTIFICATION, record)

        if self.presenter is not None:
            try:
                self.presenter.present(record)
            except Exception as e:
                logger.error(f"Error presenting notification {record.id}: {e}", exc_info=True)

        if record.is_type(NotificationType.LOGIN_REQUEST.value):
            self.bus.publish(EventType.LOGIN_REQUEST, LoginRequestEvent.from_record(record))

    def _record_success(self):
        self.consecutive_errors = 0
        self.last_success_at = datetime.utcnow()

    def status(self) -> PollerStatus:
        return PollerStatus(
            is_running=self.is_running,
            authenticated=self.gate.authenticated,
            profile=self.filter.profile,
            interval_seconds=self.interval,
            last_unread_count=self.state.last_unread_count,
            last_notification_id=self.state.last_notification_id,
            processed_count=self.state.processed_count,
            last_poll_at=self.last_poll_at,
            last_success_at=self.last_success_at,
            consecutive_errors=self.consecutive_errors,
        )
