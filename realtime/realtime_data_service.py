"""
Real-time Data Service
Polls catalog data (categories, products, sliders, orders) for bus subscribers
and republishes it only when it changes.
"""
import asyncio
import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.config import settings
from .event_bus import DataType, EventBus, data_type_key
from .models import DataUpdateEvent

logger = logging.getLogger(__name__)

# Fetchers receive the subscription options and return the JSON payload
Fetcher = Callable[[Dict[str, Any]], Awaitable[Any]]


def data_hash(data: Any) -> str:
    """Stable digest of a JSON-able payload, used to detect changes."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _options_key(options: Dict[str, Any]) -> str:
    return json.dumps(options or {}, sort_keys=True, default=str)


class RealtimeDataService:
    """
    One poll loop per data type, shared by all of its subscribers.

    Polling starts when a data type gains its first bus subscriber and stops
    when the last one leaves. Only types with a registered fetcher are polled.
    """

    def __init__(self, bus: EventBus, interval: Optional[float] = None):
        self.bus = bus
        self.interval = interval if interval is not None else settings.DATA_POLL_INTERVAL_SECONDS
        self._fetchers: Dict[str, Fetcher] = {}
        self._per_category: Dict[str, bool] = {}
        self._poll_tasks: Dict[str, asyncio.Task] = {}
        self._last_hashes: Dict[str, str] = {}
        self._last_polled: Dict[str, datetime] = {}

        bus.add_first_subscriber_listener(self.start_polling)
        bus.add_last_unsubscribe_listener(self.stop_polling)

    def register_fetcher(self, data_type: DataType, fetcher: Fetcher, per_category: bool = False):
        """
        Register how to fetch a data type.

        Args:
            data_type: Bus key the payload is published under
            fetcher: Async callable taking the subscription options
            per_category: Fetch once per distinct category_id among subscribers
        """
        key = data_type_key(data_type)
        self._fetchers[key] = fetcher
        self._per_category[key] = per_category
        # Subscribers may already be waiting for this type
        if self.bus.subscriber_count(key) > 0:
            self.start_polling(key)

    def subscribe(self, data_type: DataType, callback, options: Optional[Dict[str, Any]] = None) -> str:
        return self.bus.subscribe(data_type, callback, options)

    def unsubscribe(self, data_type: DataType, subscription_id: str) -> bool:
        return self.bus.unsubscribe(data_type, subscription_id)

    def is_polling(self, data_type: DataType) -> bool:
        task = self._poll_tasks.get(data_type_key(data_type))
        return task is not None and not task.done()

    def start_polling(self, data_type: DataType):
        """Start the poll loop for a data type. No-op if running or unknown."""
        key = data_type_key(data_type)
        if key not in self._fetchers or self.is_polling(key):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"⚠️ Cannot start polling for {key}: no running event loop")
            return

        logger.info(f"Starting polling for {key} every {self.interval}s")
        self._poll_tasks[key] = loop.create_task(self._poll_loop(key))

    def stop_polling(self, data_type: DataType):
        key = data_type_key(data_type)
        task = self._poll_tasks.pop(key, None)
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.info(f"Stopped polling for {key}")

    async def _poll_loop(self, key: str):
        while True:
            await self.poll_data(key)
            await asyncio.sleep(self.interval)

    async def poll_data(self, data_type: DataType) -> int:
        """
        Fetch a data type once and publish what changed.

        Returns:
            Number of changed payloads published
        """
        key = data_type_key(data_type)
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            logger.warning(f"Unknown data type: {key}")
            return 0

        self._last_polled[key] = datetime.utcnow()
        if self._per_category.get(key):
            option_sets = self._category_option_sets(key)
        else:
            option_sets = [{}]

        changed = 0
        for options in option_sets:
            try:
                data = await fetcher(options)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the last published payload; next tick retries
                logger.error(f"Error polling {key} {options or ''}: {e}")
                continue
            if self._check_for_updates(key, data, options):
                changed += 1
        return changed

    def _category_option_sets(self, key: str) -> List[Dict[str, Any]]:
        seen = []
        for options in self.bus.subscription_options(key):
            category_id = options.get("category_id")
            if category_id is not None and category_id not in seen:
                seen.append(category_id)
        return [{"category_id": category_id} for category_id in seen]

    def _check_for_updates(self, key: str, data: Any, options: Dict[str, Any]) -> bool:
        if data is None:
            return False

        digest = data_hash(data)
        cache_key = f"{key}_{_options_key(options)}"
        if self._last_hashes.get(cache_key) == digest:
            return False

        logger.info(f"Data changed for {key} {options or ''}")
        self._last_hashes[cache_key] = digest
        self.bus.publish(key, DataUpdateEvent(data_type=key, data=data, options=options), options)
        return True

    async def refresh(self, data_type: DataType) -> int:
        """Poll a data type now, outside its schedule."""
        logger.info(f"Manually refreshing {data_type_key(data_type)}")
        return await self.poll_data(data_type)

    async def handle_push_update(self, data_type: DataType, update: Optional[Dict[str, Any]] = None) -> int:
        """
        Relay a pushed change notice to subscribers, then refetch.

        The notice itself goes out with source="socket"; the refetch publishes
        the new payload if it differs from the last one.
        """
        key = data_type_key(data_type)
        update = update or {}
        options = {"category_id": update["category_id"]} if update.get("category_id") is not None else {}
        self.bus.publish(
            key,
            DataUpdateEvent(
                data_type=key,
                data=update.get("data"),
                options=options,
                source="socket",
                action=update.get("action"),
            ),
            options,
        )
        if key not in self._fetchers:
            return 0
        return await self.refresh(key)

    def set_polling_interval(self, seconds: float):
        if seconds <= 0:
            raise ValueError("Polling interval must be positive")
        self.interval = seconds
        logger.info(f"Data polling interval set to {seconds}s")

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for key in sorted(set(self._fetchers) | set(self._poll_tasks)):
            last = self._last_polled.get(key)
            status[key] = {
                "isPolling": self.is_polling(key),
                "subscribers": self.bus.subscriber_count(key),
                "lastPolled": last.isoformat() if last else None,
            }
        return status

    def reset_cache(self):
        """Forget published hashes so the next poll republishes everything."""
        self._last_hashes.clear()

    async def shutdown(self):
        """Stop every poll loop and forget cached hashes."""
        tasks = list(self._poll_tasks.values())
        self._poll_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._last_hashes.clear()
        logger.info("Real-time data service shut down")
