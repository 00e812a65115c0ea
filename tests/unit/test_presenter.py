"""
Unit tests for the toast/sound presenter.
"""
import io
import os
import wave

import pytest

from shared.error_models import NotificationAPIError
from realtime.models import EventType, NotificationRecord, ToastCategory
from realtime.presenter import (
    LoggingSoundPlayer,
    NotificationPresenter,
    SoundPlaybackError,
    navigation_target_for,
    synthesize_tone,
    toast_category_for,
)
from tests.conftest import EventRecorder, RecordingSoundPlayer


@pytest.mark.unit
class TestToastMapping:
    @pytest.mark.parametrize("notification_type,category", [
        ("login_approved", ToastCategory.SUCCESS),
        ("login_rejected", ToastCategory.ERROR),
        ("system_alert", ToastCategory.WARNING),
        ("new_order", ToastCategory.INFO),
        ("something_new", ToastCategory.INFO),
    ])
    def test_category_for_type(self, notification_type, category):
        assert toast_category_for(notification_type) == category


@pytest.mark.unit
class TestTone:
    def test_tone_is_short_mono_wav(self):
        data = synthesize_tone()
        with wave.open(io.BytesIO(data), "rb") as wav:
            assert wav.getnchannels() == 1
            assert wav.getsampwidth() == 2
            duration = wav.getnframes() / wav.getframerate()
        assert duration == pytest.approx(0.3, abs=0.01)

    def test_tone_decays(self):
        data = synthesize_tone(duration=0.1)
        with wave.open(io.BytesIO(data), "rb") as wav:
            frames = wav.readframes(wav.getnframes())
        samples = [int.from_bytes(frames[i:i + 2], "little", signed=True) for i in range(0, len(frames), 2)]
        head = max(abs(s) for s in samples[:200])
        tail = max(abs(s) for s in samples[-200:])
        assert head > tail * 10
        assert head <= int(0.4 * 32767) + 1


@pytest.mark.unit
class TestNotificationPresenter:
    """Test toast publication and sound selection."""

    def test_present_publishes_toast(self, bus, presenter):
        recorder = EventRecorder(bus, EventType.SHOW_TOAST)
        record = NotificationRecord(id=4, type="login_rejected", title="Login rejected", body="Contact admin")

        toast = presenter.present(record)

        assert toast.category == ToastCategory.ERROR
        assert toast.title == "Login rejected"
        assert toast.message == "Contact admin"
        assert toast.duration_seconds == 8.0
        event = recorder[EventType.SHOW_TOAST][0]
        assert event.toast == toast
        assert event.notification.id == 4

    @pytest.mark.parametrize("duration", [0, -1.5])
    def test_non_positive_toast_duration_is_rejected(self, bus, duration):
        with pytest.raises(ValueError):
            NotificationPresenter(bus, sound_player=RecordingSoundPlayer(), toast_duration=duration)

    @pytest.mark.parametrize("notification_type,asset", [
        ("user_registration", "registration.mp3"),
        ("new_order", "order.mp3"),
        ("login_request", "notification.mp3"),
    ])
    def test_sound_asset_by_type(self, presenter, sound_player, notification_type, asset):
        presenter.present(NotificationRecord(id=1, type=notification_type))
        assert sound_player.files == [(os.path.join("sounds", asset), 0.5)]

    def test_falls_back_to_tone(self, bus):
        player = RecordingSoundPlayer(missing_assets=True)
        presenter = NotificationPresenter(bus, sound_player=player, sound_enabled=True, volume=1.0)

        assert presenter.play_sound("new_order") == "tone"
        assert len(player.tones) == 1
        assert player.tones[0][0][:4] == b"RIFF"

    def test_sound_failure_never_blocks_toast(self, bus):
        recorder = EventRecorder(bus, EventType.SHOW_TOAST)
        presenter = NotificationPresenter(bus, sound_player=RecordingSoundPlayer(broken=True), sound_enabled=True)

        presenter.present(NotificationRecord(id=1))

        assert len(recorder[EventType.SHOW_TOAST]) == 1
        assert presenter.play_sound() is None

    def test_disabled_sound(self, bus, sound_player):
        presenter = NotificationPresenter(bus, sound_player=sound_player, sound_enabled=False)
        assert presenter.play_sound("new_order") is None
        assert sound_player.files == []

    def test_volume_is_clamped(self, presenter):
        presenter.set_volume(3)
        assert presenter.volume == 1.0
        presenter.set_volume(-1)
        assert presenter.volume == 0.0

    def test_logging_player_rejects_missing_asset(self, tmp_path):
        player = LoggingSoundPlayer()
        with pytest.raises(SoundPlaybackError):
            player.play_file(str(tmp_path / "missing.mp3"), 0.5)

        asset = tmp_path / "notification.mp3"
        asset.write_bytes(b"ID3")
        player.play_file(str(asset), 0.5)


@pytest.mark.unit
class TestNotificationTap:
    def test_navigation_targets(self):
        assert navigation_target_for(NotificationRecord(id=1, data={"action": "redirect_to_home"})) == "home"
        assert navigation_target_for(NotificationRecord(id=2, data={"action": "redirect_to_login"})) == "login"
        assert navigation_target_for(NotificationRecord(id=3, type="new_order")) == "/dashboard/orders"
        assert navigation_target_for(NotificationRecord(id=4, type="user_registration")) == "/dashboard/users"
        assert navigation_target_for(NotificationRecord(id=5)) is None

    async def test_tap_marks_read(self, bus, sound_player):
        marked = []

        async def mark_read(notification_id):
            marked.append(notification_id)

        presenter = NotificationPresenter(bus, sound_player=sound_player, mark_read=mark_read)
        target = await presenter.handle_tap(NotificationRecord(id=9, type="new_order"))

        assert marked == [9]
        assert target == "/dashboard/orders"

    async def test_tap_on_read_notification_skips_mark(self, bus, sound_player):
        marked = []

        async def mark_read(notification_id):
            marked.append(notification_id)

        presenter = NotificationPresenter(bus, sound_player=sound_player, mark_read=mark_read)
        await presenter.handle_tap(NotificationRecord(id=9, is_read=True))
        assert marked == []

    async def test_tap_survives_mark_failure(self, bus, sound_player):
        async def mark_read(notification_id):
            raise NotificationAPIError("backend down")

        presenter = NotificationPresenter(bus, sound_player=sound_player, mark_read=mark_read)
        target = await presenter.handle_tap(NotificationRecord(id=1, data={"action": "redirect_to_home"}))
        assert target == "home"
