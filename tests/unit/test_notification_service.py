"""
Unit tests for the notification service composition root.
"""
import pytest

from shared.error_models import AuthenticationError, NotAuthenticatedError
from realtime.models import EventType, NotificationRecord
from realtime.notification_service import NotificationService
from realtime.session_gate import TokenStore
from tests.conftest import TEST_TOKEN, TEST_USER_ID, EventRecorder, RecordingSoundPlayer


@pytest.fixture
async def service(api):
    service = NotificationService(
        api_client=api,
        sound_player=RecordingSoundPlayer(),
        profile="user",
        poll_interval=3600,
        data_poll_interval=3600,
    )
    yield service
    await service.shutdown()


@pytest.mark.unit
class TestNotificationService:
    """Test wiring, session flow and read-state operations."""

    async def test_wiring(self, service):
        assert service.gate.poller is service.poller
        assert service.poller.presenter is service.presenter
        assert service.presenter.bus is service.bus
        assert set(service.data_service.get_status()) == {"categories", "products", "sliders", "orders"}

    async def test_initialize_without_session_stays_idle(self, service):
        await service.initialize()
        assert not service.poller.is_running

    async def test_initialize_resumes_stored_session(self, api):
        api.add(1)
        store = TokenStore(TEST_TOKEN, TEST_USER_ID)
        service = NotificationService(api_client=api, token_store=store, poll_interval=3600, sound_player=RecordingSoundPlayer())
        try:
            await service.initialize()
            assert service.poller.is_running
            assert service.poller.state.is_processed(1)
        finally:
            await service.shutdown()

    async def test_initialize_with_expired_token_expires_session(self, api, jwt_factory):
        store = TokenStore(jwt_factory(expires_in=-10), TEST_USER_ID)
        service = NotificationService(api_client=api, token_store=store, poll_interval=3600, sound_player=RecordingSoundPlayer())
        recorder = EventRecorder(service.bus, EventType.SESSION_EXPIRED)
        try:
            await service.initialize()
            assert not service.poller.is_running
            assert len(recorder[EventType.SESSION_EXPIRED]) == 1
        finally:
            await service.shutdown()

    async def test_login_and_logout(self, api, service):
        api.add(1)
        recorder = EventRecorder(service.bus, EventType.NEW_NOTIFICATION)

        await service.login(TEST_TOKEN, TEST_USER_ID)
        assert service.poller.is_running
        assert [r.id for r in recorder[EventType.NEW_NOTIFICATION]] == [1]

        await service.logout()
        assert not service.poller.is_running
        assert service.poller.state.last_unread_count == 0

    async def test_requires_session(self, service):
        with pytest.raises(NotAuthenticatedError):
            await service.get_notifications()

    async def test_list_and_count(self, api, service):
        api.add(1)
        api.add(2, is_read=True)
        await service.login(TEST_TOKEN, TEST_USER_ID)

        records = await service.get_notifications(limit=10)
        assert [r.id for r in records] == [2, 1]
        assert await service.get_unread_count() == 1

    async def test_mark_all_as_read_resets_cached_count(self, api, service):
        api.add(1)
        api.add(2)
        await service.login(TEST_TOKEN, TEST_USER_ID)
        assert service.poller.state.last_unread_count == 2
        recorder = EventRecorder(service.bus, EventType.NOTIFICATION_UPDATED)

        await service.mark_all_as_read()

        assert service.poller.state.last_unread_count == 0
        assert len(recorder[EventType.NOTIFICATION_UPDATED]) == 1
        assert await api.get_unread_count(TEST_USER_ID, TEST_TOKEN) == 0

    async def test_mark_as_read_decrements_cached_count(self, api, service):
        api.add(1)
        api.add(2)
        await service.login(TEST_TOKEN, TEST_USER_ID)

        await service.mark_as_read(1)

        assert service.poller.state.last_unread_count == 1
        assert api.records[1]["is_read"] == 1

    async def test_rejected_credential_invalidates_session(self, api, service):
        await service.login(TEST_TOKEN, TEST_USER_ID)
        recorder = EventRecorder(service.bus, EventType.SESSION_EXPIRED)
        api.auth_error_status = 401

        with pytest.raises(AuthenticationError):
            await service.get_unread_count()

        assert not service.gate.is_authenticated()
        assert not service.poller.is_running
        assert len(recorder[EventType.SESSION_EXPIRED]) == 1

    async def test_notification_tap_marks_read_and_navigates(self, api, service):
        api.add(5, type="new_order")
        await service.login(TEST_TOKEN, TEST_USER_ID)

        target = await service.handle_notification_tap(NotificationRecord(id=5, type="new_order"))

        assert target == "/dashboard/orders"
        assert ("mark_read", 5) in api.calls

    async def test_orders_fetcher_needs_session(self, api, service):
        api.orders = [{"id": 900}]
        assert await service._fetch_orders({}) is None

        await service.login(TEST_TOKEN, TEST_USER_ID)
        assert await service._fetch_orders({}) == [{"id": 900}]

    async def test_products_fetcher_uses_category(self, api, service):
        api.products = {3: [{"id": 30}]}
        assert await service._fetch_products({"category_id": 3}) == [{"id": 30}]

    async def test_shutdown_leaves_injected_client_open(self, api, service):
        await service.shutdown()
        assert api.closed is False

    async def test_status(self, service):
        status = service.status()
        assert status["poller"]["is_running"] is False
        assert status["poller"]["profile"] == "user"
        assert "categories" in status["data_polling"]
