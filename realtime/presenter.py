"""
Notification Presenter
Turns a notification record into a toast and an audible cue.
"""
import io
import logging
import math
import os
import struct
import wave
from typing import Awaitable, Callable, Optional, Protocol

from shared.config import settings
from shared.error_models import NotificationError
from .event_bus import EventBus
from .models import EventType, NotificationRecord, NotificationType, ShowToastEvent, Toast, ToastCategory

logger = logging.getLogger(__name__)

TOAST_CATEGORY_BY_TYPE = {
    NotificationType.LOGIN_APPROVED.value: ToastCategory.SUCCESS,
    NotificationType.LOGIN_REJECTED.value: ToastCategory.ERROR,
    NotificationType.SYSTEM_ALERT.value: ToastCategory.WARNING,
}

SOUND_BY_TYPE = {
    NotificationType.USER_REGISTRATION.value: "registration.mp3",
    NotificationType.NEW_ORDER.value: "order.mp3",
}
DEFAULT_SOUND = "notification.mp3"

# Fallback beep
TONE_FREQUENCY_HZ = 800.0
TONE_DURATION_SECONDS = 0.3
TONE_START_GAIN = 0.4
TONE_END_GAIN = 0.01
TONE_SAMPLE_RATE = 22050

NAVIGATION_BY_ACTION = {
    "redirect_to_home": "home",
    "redirect_to_login": "login",
}
NAVIGATION_BY_TYPE = {
    NotificationType.USER_REGISTRATION.value: "/dashboard/users",
    NotificationType.NEW_ORDER.value: "/dashboard/orders",
}


class SoundPlaybackError(NotificationError):
    """The audio backend refused or could not play a cue."""


class SoundPlayer(Protocol):
    def play_file(self, path: str, volume: float) -> None: ...

    def play_wav(self, data: bytes, volume: float) -> None: ...


class LoggingSoundPlayer:
    """Headless player: checks the asset exists and logs what would play."""

    def play_file(self, path: str, volume: float) -> None:
        if not os.path.isfile(path):
            raise SoundPlaybackError(f"Sound asset not found: {path}")
        logger.info(f"Playing notification sound: {path} (volume {volume:.2f})")

    def play_wav(self, data: bytes, volume: float) -> None:
        logger.info(f"Playing fallback notification tone ({len(data)} bytes, volume {volume:.2f})")


def toast_category_for(notification_type: str) -> ToastCategory:
    return TOAST_CATEGORY_BY_TYPE.get(notification_type, ToastCategory.INFO)


def synthesize_tone(
    frequency: float = TONE_FREQUENCY_HZ,
    duration: float = TONE_DURATION_SECONDS,
    start_gain: float = TONE_START_GAIN,
    end_gain: float = TONE_END_GAIN,
    sample_rate: int = TONE_SAMPLE_RATE,
) -> bytes:
    """
    Render a sine beep with an exponential gain ramp as 16-bit mono WAV.

    Returns:
        Complete WAV file contents
    """
    n_samples = max(int(sample_rate * duration), 1)
    # Per-sample factor so gain goes start_gain -> end_gain over the tone
    decay = (end_gain / start_gain) ** (1.0 / max(n_samples - 1, 1))

    samples = []
    gain = start_gain
    for i in range(n_samples):
        value = gain * math.sin(2.0 * math.pi * frequency * i / sample_rate)
        samples.append(int(max(-1.0, min(1.0, value)) * 32767))
        gain *= decay

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(struct.pack(f"<{n_samples}h", *samples))
    return buffer.getvalue()


def navigation_target_for(record: NotificationRecord) -> Optional[str]:
    """Where a tap on this notification should take the user, if anywhere."""
    if record.action in NAVIGATION_BY_ACTION:
        return NAVIGATION_BY_ACTION[record.action]
    return NAVIGATION_BY_TYPE.get(record.notification_type)


class NotificationPresenter:
    """Publishes show-toast events and plays the matching sound."""

    def __init__(
        self,
        bus: EventBus,
        sound_player: Optional[SoundPlayer] = None,
        toast_duration: Optional[float] = None,
        sound_enabled: Optional[bool] = None,
        volume: Optional[float] = None,
        asset_dir: Optional[str] = None,
        mark_read: Optional[Callable[[int], Awaitable[object]]] = None,
    ):
        self.bus = bus
        self.sound_player: SoundPlayer = sound_player or LoggingSoundPlayer()
        self.toast_duration = toast_duration if toast_duration is not None else settings.TOAST_DURATION_SECONDS
        if self.toast_duration <= 0:
            raise ValueError("Toast duration must be positive")
        self.enabled = settings.SOUND_ENABLED if sound_enabled is None else sound_enabled
        self.volume = 0.0
        self.set_volume(settings.SOUND_VOLUME if volume is None else volume)
        self.asset_dir = asset_dir or settings.SOUND_ASSET_DIR
        self._mark_read = mark_read
        self._fallback_tone: Optional[bytes] = None

    def set_volume(self, volume: float):
        self.volume = max(0.0, min(1.0, float(volume)))

    def build_toast(self, record: NotificationRecord) -> Toast:
        notification_type = record.notification_type
        return Toast(
            category=toast_category_for(notification_type),
            title=record.title,
            message=record.body,
            duration_seconds=self.toast_duration,
            notification_id=record.id,
            notification_type=notification_type,
        )

    def present(self, record: NotificationRecord) -> Toast:
        """Show a toast for the record, then play its cue. Sound failures never block the toast."""
        toast = self.build_toast(record)
        logger.debug(f"Showing {toast.category.value} toast for notification {record.id}")
        self.bus.publish(EventType.SHOW_TOAST, ShowToastEvent(notification=record, toast=toast))
        self.play_sound(record.notification_type)
        return toast

    def play_sound(self, notification_type: Optional[str] = None) -> Optional[str]:
        """
        Play the cue for a notification type.

        Returns:
            The asset path played, "tone" when the synthesized fallback was
            used, or None when nothing played
        """
        if not self.enabled:
            return None

        path = os.path.join(self.asset_dir, SOUND_BY_TYPE.get(notification_type or "", DEFAULT_SOUND))
        try:
            self.sound_player.play_file(path, self.volume)
            return path
        except Exception as e:
            logger.info(f"Could not play notification sound {path}: {e}")

        try:
            if self._fallback_tone is None:
                self._fallback_tone = synthesize_tone()
            self.sound_player.play_wav(self._fallback_tone, self.volume)
            return "tone"
        except Exception as e:
            logger.warning(f"⚠️ Could not play fallback sound: {e}")
            return None

    async def handle_tap(self, record: NotificationRecord) -> Optional[str]:
        """
        User interacted with a notification: mark it read and resolve navigation.

        Marking read is best effort; the navigation target is returned either way.
        """
        if self._mark_read is not None and not record.is_read:
            try:
                await self._mark_read(record.id)
            except NotificationError as e:
                logger.error(f"Error marking notification {record.id} as read: {e}")
        return navigation_target_for(record)
