"""
Event Bus
In-process publish/subscribe registry keyed by data type.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

DataType = Union[str, Enum]
Callback = Callable[[Any], Any]
RegistryListener = Callable[[str], None]


def data_type_key(data_type: DataType) -> str:
    if isinstance(data_type, Enum):
        return str(data_type.value)
    return str(data_type)


@dataclass
class Subscription:
    subscription_id: str
    callback: Callback
    options: Dict[str, Any] = field(default_factory=dict)


class EventBus:
    """
    Fans events out to subscribers of a data type.

    Delivery is synchronous and in subscription order. A failing callback is
    logged and does not stop delivery to the others. Coroutine callbacks are
    scheduled on the running loop.
    """

    def __init__(self):
        self._subscribers: Dict[str, Dict[str, Subscription]] = {}
        self._first_subscriber_listeners: List[RegistryListener] = []
        self._last_unsubscribe_listeners: List[RegistryListener] = []
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, data_type: DataType, callback: Callback, options: Optional[Dict[str, Any]] = None) -> str:
        """
        Register a callback for a data type.

        Returns:
            Opaque subscription id to pass to unsubscribe()
        """
        key = data_type_key(data_type)
        subscription_id = f"{key}_{uuid.uuid4().hex}"
        registry = self._subscribers.setdefault(key, {})
        is_first = not registry
        registry[subscription_id] = Subscription(subscription_id, callback, dict(options or {}))
        logger.debug(f"Subscribed to {key} with ID: {subscription_id}")

        if is_first:
            self._notify_listeners(self._first_subscriber_listeners, key)
        return subscription_id

    def unsubscribe(self, data_type: DataType, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if it was not registered."""
        key = data_type_key(data_type)
        registry = self._subscribers.get(key)
        if not registry or subscription_id not in registry:
            return False

        del registry[subscription_id]
        logger.debug(f"Unsubscribed from {key} with ID: {subscription_id}")
        if not registry:
            del self._subscribers[key]
            self._notify_listeners(self._last_unsubscribe_listeners, key)
        return True

    def publish(self, data_type: DataType, payload: Any = None, options: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver payload to every current subscriber of data_type.

        Returns:
            Number of callbacks invoked
        """
        key = data_type_key(data_type)
        registry = self._subscribers.get(key)
        if not registry:
            return 0

        options = options or {}
        delivered = 0
        for subscription_id, subscription in list(registry.items()):
            # An earlier callback in this publish may have unsubscribed it
            if not self._is_live(key, subscription):
                continue
            if not self._should_notify(subscription.options, options):
                continue
            try:
                if inspect.iscoroutinefunction(subscription.callback):
                    self._schedule(self._deliver(key, subscription, payload), key, subscription_id)
                else:
                    result = subscription.callback(payload)
                    if inspect.isawaitable(result):
                        self._schedule(result, key, subscription_id)
                delivered += 1
            except Exception as e:
                logger.error(f"Error in subscriber {subscription_id} for {key}: {e}", exc_info=True)
        return delivered

    @staticmethod
    def _should_notify(subscriber_options: Dict[str, Any], publish_options: Dict[str, Any]) -> bool:
        """Category-scoped subscribers only receive matching category updates."""
        wanted = subscriber_options.get("category_id")
        offered = publish_options.get("category_id")
        if wanted is not None and offered is not None:
            return str(wanted) == str(offered)
        return True

    def _is_live(self, key: str, subscription: Subscription) -> bool:
        return self._subscribers.get(key, {}).get(subscription.subscription_id) is subscription

    async def _deliver(self, key: str, subscription: Subscription, payload: Any):
        # Unsubscribe may land between publish and this task starting
        if not self._is_live(key, subscription):
            return
        await subscription.callback(payload)

    def _schedule(self, awaitable: Awaitable, key: str, subscription_id: str):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No running loop to drive it
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.error(f"Async subscriber {subscription_id} for {key} dropped: no running event loop")
            return

        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)

        def _done(fut: asyncio.Future):
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error(f"Error in async subscriber {subscription_id} for {key}: {exc}")

        future.add_done_callback(_done)

    def _notify_listeners(self, listeners: List[RegistryListener], key: str):
        for listener in list(listeners):
            try:
                listener(key)
            except Exception as e:
                logger.error(f"Registry listener failed for {key}: {e}", exc_info=True)

    # Registry hooks and introspection

    def add_first_subscriber_listener(self, listener: RegistryListener):
        """Called with the data type when it gains its first subscriber."""
        self._first_subscriber_listeners.append(listener)

    def add_last_unsubscribe_listener(self, listener: RegistryListener):
        """Called with the data type when its last subscriber leaves."""
        self._last_unsubscribe_listeners.append(listener)

    def subscriber_count(self, data_type: DataType) -> int:
        return len(self._subscribers.get(data_type_key(data_type), {}))

    def subscription_options(self, data_type: DataType) -> List[Dict[str, Any]]:
        return [dict(s.options) for s in self._subscribers.get(data_type_key(data_type), {}).values()]

    def data_types(self) -> List[str]:
        return list(self._subscribers.keys())

    def clear(self):
        """Drop every subscription without firing the unsubscribe listeners."""
        self._subscribers.clear()
