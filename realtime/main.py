"""
Notification Relay FastAPI Application
"""
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging
import json
from typing import Any, Callable, Dict, Optional, Set
from shared.config import settings
from shared.error_models import (
    AuthenticationError,
    ErrorCode,
    NotAuthenticatedError,
    NotificationAPIError,
    create_error_response,
)
from shared.logging_config import setup_logging
from shared.sentry_init import init_sentry
from .event_bus import EventBus
from .models import (
    EventType,
    LoginRequest,
    NotificationListResponse,
    SESSION_EXPIRED_MESSAGE,
    UnreadCountResponse,
)
from .notification_service import NotificationService

# Initialize logging and Sentry
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)

# Bus events every connected client receives
FORWARDED_EVENTS = (
    EventType.NEW_NOTIFICATION,
    EventType.SHOW_TOAST,
    EventType.NOTIFICATION_UPDATED,
    EventType.LOGIN_REQUEST,
    EventType.SESSION_EXPIRED,
)
RECEIVE_TIMEOUT_SECONDS = 60.0


def _is_connection_error(e: Exception) -> bool:
    message = str(e).lower()
    return "connection" in message or "closed" in message


# WebSocket connection manager
class ConnectionManager:
    def __init__(self, bus: EventBus, max_connections: Optional[int] = None):
        self.bus = bus
        self.max_connections = max_connections or settings.MAX_WS_CONNECTIONS
        self.active_connections: Set[WebSocket] = set()
        self.subscriptions: Dict[WebSocket, Dict[str, str]] = {}  # websocket -> data type -> subscription id
        self._bus_subscriptions: Dict[str, str] = {}

    def attach(self):
        """Start forwarding process-wide events to connected clients."""
        for event_type in FORWARDED_EVENTS:
            self._bus_subscriptions[event_type.value] = self.bus.subscribe(
                event_type, self._forwarder(event_type.value)
            )

    def detach(self):
        for event_type, subscription_id in self._bus_subscriptions.items():
            self.bus.unsubscribe(event_type, subscription_id)
        self._bus_subscriptions.clear()

    def _forwarder(self, event_type: str) -> Callable[[Any], Any]:
        async def forward(payload: Any):
            await self.broadcast({"type": event_type, "data": jsonable_encoder(payload)})
        return forward

    @property
    def at_capacity(self) -> bool:
        return len(self.active_connections) >= self.max_connections

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)
        self.subscriptions[websocket] = {}
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket not in self.active_connections and websocket not in self.subscriptions:
            return
        self.active_connections.discard(websocket)
        for data_type, subscription_id in self.subscriptions.pop(websocket, {}).items():
            self.bus.unsubscribe(data_type, subscription_id)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        try:
            await websocket.send_json(message)
        except Exception as e:
            if not _is_connection_error(e):
                logger.error(f"Error sending message to WebSocket: {e}")
            self.disconnect(websocket)

    async def broadcast(self, message: dict):
        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                if not _is_connection_error(e):
                    logger.error(f"Error broadcasting to WebSocket: {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    def subscribe(self, websocket: WebSocket, data_type: str, options: Optional[Dict[str, Any]] = None):
        """Relay one polled data type to this client. Re-subscribing replaces the options."""
        current = self.subscriptions.setdefault(websocket, {})
        if data_type in current:
            self.bus.unsubscribe(data_type, current.pop(data_type))

        async def send(payload: Any):
            await self.send_personal_message({"type": data_type, "data": jsonable_encoder(payload)}, websocket)

        current[data_type] = self.bus.subscribe(data_type, send, options)
        logger.info(f"WebSocket subscribed to {data_type}. Total subscriptions: {len(current)}")

    def unsubscribe(self, websocket: WebSocket, data_type: str) -> bool:
        subscription_id = self.subscriptions.get(websocket, {}).pop(data_type, None)
        if subscription_id is None:
            return False
        self.bus.unsubscribe(data_type, subscription_id)
        logger.info(f"WebSocket unsubscribed from {data_type}")
        return True


def _error_json(error_code: ErrorCode, message: str, detail: Optional[str], status_code: int) -> JSONResponse:
    error, status = create_error_response(error_code, message, detail=detail, status_code=status_code)
    return JSONResponse(status_code=status, content=error.model_dump(mode="json"))


def create_app(service_factory: Optional[Callable[[], NotificationService]] = None) -> FastAPI:
    """
    Build the relay app.

    Args:
        service_factory: Builds the NotificationService at startup
            (defaults to one configured from settings)
    """
    factory = service_factory or NotificationService

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        # Startup
        logger.info("Starting notification relay...")
        service = factory()
        manager = ConnectionManager(service.bus)
        manager.attach()
        app.state.service = service
        app.state.manager = manager
        await service.initialize()

        yield
        # Shutdown
        logger.info("Shutting down notification relay...")
        manager.detach()
        await service.shutdown()

    app = FastAPI(
        title=f"{settings.APP_NAME} Notification Relay",
        version=settings.APP_VERSION,
        description="Deduplicated notification polling with toast/sound fan-out",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotAuthenticatedError)
    async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
        return _error_json(exc.error_code, exc.message, exc.detail, 401)

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError):
        return _error_json(exc.error_code, SESSION_EXPIRED_MESSAGE, exc.detail or exc.message, 401)

    @app.exception_handler(NotificationAPIError)
    async def upstream_handler(request: Request, exc: NotificationAPIError):
        logger.error(f"Backend call failed: {exc.message}")
        return _error_json(exc.error_code, exc.message, exc.detail, 502)

    def get_service(request: Request) -> NotificationService:
        return request.app.state.service

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "service": "notification_relay",
            "version": settings.APP_VERSION,
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/health/data")
    async def health_data(request: Request):
        """Poller state and per-data-type polling status."""
        service = get_service(request)
        return {
            "status": "healthy",
            **service.status(),
            "websocket": {"connections": len(request.app.state.manager.active_connections)},
        }

    @app.post("/session/login")
    async def login(body: LoginRequest, request: Request):
        service = get_service(request)
        await service.login(body.token, body.user_id)
        return {"status": "ok", "poller": service.poller.status().model_dump(mode="json")}

    @app.post("/session/logout")
    async def logout(request: Request):
        await get_service(request).logout()
        return {"status": "ok"}

    @app.get("/notifications", response_model=NotificationListResponse)
    async def list_notifications(
        request: Request,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        notifications = await get_service(request).get_notifications(page=page, limit=limit)
        return NotificationListResponse(notifications=notifications, total=len(notifications))

    @app.get("/notifications/unread-count", response_model=UnreadCountResponse)
    async def unread_count(request: Request):
        return UnreadCountResponse(unreadCount=await get_service(request).get_unread_count())

    @app.post("/notifications/read-all")
    async def mark_all_read(request: Request):
        await get_service(request).mark_all_as_read()
        return {"status": "ok"}

    @app.post("/notifications/{notification_id}/read")
    async def mark_read(notification_id: int, request: Request):
        await get_service(request).mark_as_read(notification_id)
        return {"status": "ok"}

    @app.post("/data/{data_type}/updates")
    async def push_data_update(data_type: str, update: Dict[str, Any], request: Request):
        """Backend change notice (category/product/order/slider edits); triggers a refetch."""
        changed = await get_service(request).data_service.handle_push_update(data_type, update)
        return {"status": "ok", "changed": changed}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for notification events and polled data.

        Client can send messages:
        - {"action": "subscribe", "dataType": "products", "categoryId": 3}
        - {"action": "unsubscribe", "dataType": "products"}
        - {"action": "ping"} - Keep-alive ping

        Server sends:
        - {"type": "show-toast" | "new-notification" | ..., "data": {...}}
        - {"type": "<dataType>", "data": {...}} - Polled data update
        - {"type": "pong"} - Response to ping
        """
        manager: ConnectionManager = websocket.app.state.manager
        if manager.at_capacity:
            logger.warning(f"WebSocket connection limit reached ({manager.max_connections}). Rejecting new connection.")
            await websocket.close(code=1008, reason="Server at capacity")
            return

        await manager.connect(websocket)
        try:
            while True:
                try:
                    data = await asyncio.wait_for(websocket.receive_text(), timeout=RECEIVE_TIMEOUT_SECONDS)
                except asyncio.TimeoutError:
                    # Send ping to keep connection alive
                    await websocket.send_json({"type": "ping"})
                    continue

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await manager.send_personal_message({"type": "error", "message": "Invalid JSON"}, websocket)
                    continue
                if not isinstance(message, dict):
                    await manager.send_personal_message({"type": "error", "message": "Expected an object"}, websocket)
                    continue

                action = message.get("action")
                data_type = message.get("dataType")
                if action == "subscribe" and data_type:
                    category_id = message.get("categoryId")
                    options = {"category_id": category_id} if category_id is not None else None
                    manager.subscribe(websocket, str(data_type), options)
                    await manager.send_personal_message({"type": "subscribed", "dataType": data_type}, websocket)
                elif action == "unsubscribe" and data_type:
                    manager.unsubscribe(websocket, str(data_type))
                    await manager.send_personal_message({"type": "unsubscribed", "dataType": data_type}, websocket)
                elif action == "ping":
                    await manager.send_personal_message({"type": "pong"}, websocket)
                else:
                    await manager.send_personal_message(
                        {"type": "error", "message": f"Unknown action: {action}"}, websocket
                    )
        except WebSocketDisconnect:
            manager.disconnect(websocket)
            logger.info("WebSocket client disconnected")
        except Exception as e:
            if not _is_connection_error(e):
                logger.error(f"WebSocket error: {e}")
            manager.disconnect(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.REALTIME_HOST, port=settings.REALTIME_PORT)
