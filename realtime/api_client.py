"""
Notification API Client
Async wrapper around the backend notification and catalog REST endpoints.
"""
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from shared.config import settings
from shared.error_models import AuthenticationError, ErrorCode, NotificationAPIError
from .models import NotificationRecord

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class NotificationApiClient:
    """Client for the jewelry backend REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.BACKEND_API_URL).rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.API_TIMEOUT_SECONDS)
        )

    async def close(self):
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Issue a request and return the decoded JSON body.

        Raises:
            AuthenticationError: on 401/403
            NotificationAPIError: on any other failure
        """
        url = f"{self.base_url}{path}"
        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if method == "GET":
            # Cache-bust GETs so intermediaries never serve a stale unread count
            params = {**(params or {}), "_ts": int(time.time() * 1000)}
            headers.update(NO_CACHE_HEADERS)

        try:
            response = await self.client.request(method, url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            error = NotificationAPIError(f"Timeout calling {method} {path}", detail=str(e))
            error.error_code = ErrorCode.TIMEOUT
            raise error from e
        except httpx.RequestError as e:
            raise NotificationAPIError(f"Request to {method} {path} failed", detail=str(e)) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Backend rejected credentials for {method} {path}",
                status_code=response.status_code,
                detail=self._error_detail(response),
            )
        if response.status_code >= 400:
            raise NotificationAPIError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=self._error_detail(response),
            )

        try:
            return response.json()
        except ValueError as e:
            raise NotificationAPIError(
                f"{method} {path} returned invalid JSON",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, dict):
            detail = body.get("error") or body.get("message")
            return str(detail) if detail else None
        return None

    # Notifications

    async def get_user_notifications(
        self, user_id: str, token: str, page: int = 1, limit: int = 20
    ) -> List[NotificationRecord]:
        """
        Fetch a page of notifications, newest first.

        Records that fail validation are skipped rather than failing the page.
        """
        body = await self._request(
            "GET",
            f"/notifications/user/{user_id}",
            token=token,
            params={"page": page, "limit": limit},
        )
        raw_items = body.get("notifications") if isinstance(body, dict) else None
        if not isinstance(raw_items, list):
            logger.warning(f"Notification list for user {user_id} had no notifications array")
            return []

        records = []
        for item in raw_items:
            try:
                records.append(NotificationRecord.model_validate(item))
            except Exception as e:
                logger.warning(f"Skipping malformed notification {item!r:.80}: {e}")
        return records

    async def get_unread_count(self, user_id: str, token: str) -> int:
        body = await self._request("GET", f"/notifications/user/{user_id}/unread", token=token)
        try:
            return max(int((body or {}).get("unreadCount") or 0), 0)
        except (TypeError, ValueError, AttributeError):
            logger.warning(f"Unread count response was malformed: {body!r:.80}")
            return 0

    async def mark_notification_as_read(self, notification_id: int, token: str) -> Dict:
        return await self._request("PATCH", f"/notifications/{notification_id}/read", token=token)

    async def mark_all_notifications_as_read(self, user_id: str, token: str) -> Dict:
        return await self._request("PATCH", f"/notifications/user/{user_id}/read-all", token=token)

    # Catalog data used by the data-type poller

    @staticmethod
    def _unwrap(body: Any) -> Any:
        """Catalog endpoints answer either a bare array or {data: [...]}."""
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_categories(self) -> Any:
        return self._unwrap(await self._request("GET", "/categories"))

    async def get_products_by_category(self, category_id: Any) -> Any:
        return self._unwrap(await self._request("GET", f"/products/category/{category_id}"))

    async def get_sliders(self) -> Any:
        return self._unwrap(await self._request("GET", "/slider"))

    async def get_user_orders(self, user_id: str, token: str) -> Any:
        return self._unwrap(await self._request("GET", f"/orders/user/{user_id}", token=token))
