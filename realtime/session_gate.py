"""
Session Gate
Single source of truth for whether notification polling is permitted.
"""
import logging
import time
from typing import Optional, Tuple, TYPE_CHECKING

from jose import JWTError, jwt

from shared.error_models import NotAuthenticatedError
from .event_bus import EventBus
from .models import EventType, SessionExpiredEvent, SESSION_EXPIRED_MESSAGE

if TYPE_CHECKING:
    from .notification_poller import NotificationPoller

logger = logging.getLogger(__name__)


def is_token_expired(token: str, now: Optional[float] = None) -> bool:
    """
    Check the exp claim of a JWT without verifying its signature.

    The relay never holds the backend's signing key; the backend remains the
    authority and answers 401 for tokens it rejects. Opaque (non-JWT) tokens
    are never considered expired here.
    """
    if token.count(".") != 2:
        return False
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return True

    exp = claims.get("exp")
    if exp is None:
        return False
    try:
        return float(exp) < (now if now is not None else time.time())
    except (TypeError, ValueError):
        return True


class TokenStore:
    """Holds the backend credential for the current session."""

    def __init__(self, token: Optional[str] = None, user_id: Optional[str] = None):
        self.token = token
        self.user_id = user_id

    def set_credentials(self, token: str, user_id: str):
        self.token = token
        self.user_id = str(user_id)

    def clear(self):
        self.token = None
        self.user_id = None

    def has_credentials(self) -> bool:
        return bool(self.token) and bool(self.user_id)


class SessionGate:
    """
    Decides whether polling may run, and starts/stops the poller on login/logout.

    Authentication is re-derived from the token store on every check because
    the token can expire mid-session.
    """

    def __init__(self, token_store: TokenStore, bus: EventBus):
        self.token_store = token_store
        self.bus = bus
        self.poller: Optional["NotificationPoller"] = None
        self._authenticated = False
        self._generation = 0
        self._expired_generation: Optional[int] = None

    def bind_poller(self, poller: "NotificationPoller"):
        self.poller = poller

    @property
    def generation(self) -> int:
        """Incremented on every login; identifies one continuous session."""
        return self._generation

    @property
    def authenticated(self) -> bool:
        """Last derived flag. Use is_authenticated() to re-validate."""
        return self._authenticated

    def is_authenticated(self) -> bool:
        valid = self.token_store.has_credentials() and not is_token_expired(self.token_store.token)
        if self._authenticated and not valid:
            logger.info("Session is no longer valid")
        self._authenticated = valid
        return valid

    def credentials(self) -> Tuple[str, str]:
        """Return (token, user_id) or raise NotAuthenticatedError."""
        if not self.is_authenticated():
            raise NotAuthenticatedError("No authenticated session")
        return self.token_store.token, self.token_store.user_id

    async def on_login(self, token: str, user_id: str):
        """Record a fresh session and start polling."""
        logger.info(f"User {user_id} logged in, starting notification service...")
        if self.poller and self.poller.is_running:
            await self.poller.stop()

        self.token_store.set_credentials(token, user_id)
        self._generation += 1
        if not self.is_authenticated():
            self.token_store.clear()
            raise NotAuthenticatedError("Login token is missing or already expired")

        if self.poller:
            # A new session must not inherit the previous user's seen state
            self.poller.clear_cache()
            await self.poller.start()

    async def on_logout(self):
        """End the session: stop polling and drop cached unread state."""
        logger.info("User logged out, stopping notification service...")
        self.token_store.clear()
        self._authenticated = False
        if self.poller:
            await self.poller.stop()
            self.poller.clear_cache()

    async def invalidate(self, reason: str = SESSION_EXPIRED_MESSAGE, status_code: Optional[int] = None):
        """
        Handle a rejected credential (401/403 or expired token).

        Publishes session-expired once per session and stops polling until
        the next on_login().
        """
        already_notified = self._expired_generation == self._generation
        self._expired_generation = self._generation

        self.token_store.clear()
        self._authenticated = False
        if self.poller:
            await self.poller.stop()

        if not already_notified:
            logger.warning(f"⚠️ Session invalidated ({status_code or 'expired'}): {reason}")
            self.bus.publish(
                EventType.SESSION_EXPIRED,
                SessionExpiredEvent(reason=reason, status_code=status_code),
            )
