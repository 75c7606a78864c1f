"""Session lifecycle: remember-me preference and the re-authentication state machine.

The controller is the only owner of the current user. Its state moves
between ``unknown``, ``authenticated``, ``unauthenticated`` and
``reauth-required`` through :func:`transition`, a pure function of the current
state and an event; everything else (calling the auth provider, persisting the
session, notifying subscribers) happens around it.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from .auth import AuthError, AuthProvider, AuthSession
from .local_store import LocalStore

logger = logging.getLogger(__name__)

SESSION_PREFERENCE_KEY = "recipe-box-remember-me"
AUTH_SESSION_KEY = "recipe-box-auth-session"

SESSION_CHECK_INTERVAL = 5 * 60
EXPIRING_CHECK_INTERVAL = 60
REFRESH_THRESHOLD = 5 * 60
EXPIRING_THRESHOLD = 10 * 60

SHORT_SESSION_SECONDS = 24 * 60 * 60
LONG_SESSION_SECONDS = 60 * 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionPreference:
    remember_me: bool = False
    duration: str = "short"


def get_session_preference(store: LocalStore) -> SessionPreference:
    try:
        stored = store.get_item(SESSION_PREFERENCE_KEY)
    except (sqlite3.Error, ValueError) as exc:
        logger.error("Error reading session preference: %s", exc)
        stored = None

    if not isinstance(stored, dict):
        return SessionPreference()
    remember_me = bool(stored.get("remember_me"))
    return SessionPreference(remember_me=remember_me, duration="long" if remember_me else "short")


def set_session_preference(store: LocalStore, remember_me: bool) -> SessionPreference:
    preference = SessionPreference(remember_me=remember_me, duration="long" if remember_me else "short")
    try:
        store.set_item(SESSION_PREFERENCE_KEY, dataclasses.asdict(preference))
    except sqlite3.Error as exc:
        logger.error("Error saving session preference: %s", exc)
    return preference


def clear_session_preference(store: LocalStore) -> None:
    try:
        store.remove_item(SESSION_PREFERENCE_KEY)
    except sqlite3.Error as exc:
        logger.error("Error clearing session preference: %s", exc)


def get_session_duration(preference: SessionPreference) -> int:
    """Maximum session lifetime in seconds: 60 days with remember-me, 1 day without."""

    return LONG_SESSION_SECONDS if preference.remember_me else SHORT_SESSION_SECONDS


def should_refresh_session(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the token expires within five minutes (or already has)."""

    if not expires_at:
        return False
    now = now or _utcnow()
    return (expires_at - now).total_seconds() < REFRESH_THRESHOLD


def get_next_check_time(expires_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Seconds until the next foreground check; once a minute when expiry is near."""

    if not expires_at:
        return SESSION_CHECK_INTERVAL
    now = now or _utcnow()
    if (expires_at - now).total_seconds() < EXPIRING_THRESHOLD:
        return EXPIRING_CHECK_INTERVAL
    return SESSION_CHECK_INTERVAL


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    REAUTH_REQUIRED = "reauth-required"


class SessionEvent(str, Enum):
    SESSION_FOUND = "session-found"
    NO_SESSION = "no-session"
    SIGNED_IN = "signed-in"
    SIGNED_OUT = "signed-out"
    TOKEN_REFRESHED = "token-refreshed"
    TOKEN_REFRESH_FAILED = "token-refresh-failed"
    REAUTHENTICATED = "reauthenticated"
    REAUTH_DECLINED = "reauth-declined"


_TRANSITIONS = {
    (SessionState.UNKNOWN, SessionEvent.SESSION_FOUND): SessionState.AUTHENTICATED,
    (SessionState.UNKNOWN, SessionEvent.NO_SESSION): SessionState.UNAUTHENTICATED,
    (SessionState.AUTHENTICATED, SessionEvent.TOKEN_REFRESHED): SessionState.AUTHENTICATED,
    (SessionState.AUTHENTICATED, SessionEvent.TOKEN_REFRESH_FAILED): SessionState.REAUTH_REQUIRED,
    (SessionState.REAUTH_REQUIRED, SessionEvent.REAUTHENTICATED): SessionState.AUTHENTICATED,
    (SessionState.REAUTH_REQUIRED, SessionEvent.REAUTH_DECLINED): SessionState.UNAUTHENTICATED,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    if event is SessionEvent.SIGNED_IN:
        return SessionState.AUTHENTICATED
    if event is SessionEvent.SIGNED_OUT:
        return SessionState.UNAUTHENTICATED
    return _TRANSITIONS.get((state, event), state)


Listener = Callable[[SessionState, Optional[AuthSession]], None]

_UNCHANGED = object()


class SessionController:
    """Owns the current session and drives the re-authentication overlay."""

    def __init__(
        self,
        auth: AuthProvider,
        store: LocalStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._auth = auth
        self._store = store
        self._clock = clock
        self._listeners: List[Listener] = []
        self._last_check: Optional[datetime] = None
        self.state = SessionState.UNKNOWN
        self.session: Optional[AuthSession] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> SessionState:
        """Look up the persisted session once and settle the initial state."""

        try:
            stored = self._store.get_item(AUTH_SESSION_KEY)
            session = AuthSession.from_dict(stored) if stored else None
        except (sqlite3.Error, ValueError, KeyError, TypeError) as exc:
            logger.error("Error reading persisted session: %s", exc)
            session = None

        if session is None or self._lifetime_exceeded(session):
            return self._apply(SessionEvent.NO_SESSION, None)
        return self._apply(SessionEvent.SESSION_FOUND, session)

    def handle_auth_event(self, event: SessionEvent, session: Optional[AuthSession] = None) -> SessionState:
        """Apply an auth-state-change notification from the backend."""

        if event is SessionEvent.TOKEN_REFRESH_FAILED:
            return self._apply(event)
        return self._apply(event, session)

    def sign_in(self, email: str, password: str, *, remember_me: bool = False) -> AuthSession:
        session = self._auth.sign_in_with_password(email, password)
        set_session_preference(self._store, remember_me)
        self._apply(SessionEvent.SIGNED_IN, session)
        return session

    def sign_out(self) -> None:
        if self.session is not None:
            try:
                self._auth.sign_out(self.session)
            except AuthError as exc:
                logger.warning("Sign out failed, discarding session anyway: %s", exc)
        self._apply(SessionEvent.SIGNED_OUT, None)

    def maybe_check(self) -> SessionState:
        """Run :meth:`check_session` when the check interval has elapsed."""

        now = self._clock()
        expires_at = self.session.expires_at if self.session else None
        if self._last_check is not None:
            elapsed = (now - self._last_check).total_seconds()
            if elapsed < get_next_check_time(expires_at, now):
                return self.state
        return self.check_session()

    def check_session(self) -> SessionState:
        """Foreground check: refresh a session that is about to expire."""

        now = self._clock()
        self._last_check = now
        if self.state is not SessionState.AUTHENTICATED:
            return self.state

        session = self.session
        if session is None:
            return self._apply(SessionEvent.TOKEN_REFRESH_FAILED)
        if self._lifetime_exceeded(session):
            logger.info("Session for %s outlived its preferred duration", session.user_id)
            return self._apply(SessionEvent.TOKEN_REFRESH_FAILED)
        if not should_refresh_session(session.expires_at, now):
            return self.state

        try:
            refreshed = self._auth.refresh_session(session)
        except AuthError as exc:
            logger.warning("Silent session refresh failed: %s", exc)
            return self._apply(SessionEvent.TOKEN_REFRESH_FAILED)
        return self._apply(SessionEvent.TOKEN_REFRESHED, refreshed)

    def reauthenticate_with_password(self, password: str) -> AuthSession:
        if self.session is None or not self.session.email:
            raise AuthError("No user email found")

        session = self._auth.sign_in_with_password(self.session.email, password)
        self._apply(SessionEvent.REAUTHENTICATED, session)
        return session

    def reauthenticate_with_biometric(self, biometric) -> bool:
        """Verify locally with the device authenticator, then refresh silently."""

        if self.session is None:
            raise AuthError("No session to restore")
        if not biometric.authenticate():
            return False

        refreshed = self._auth.refresh_session(self.session)
        refreshed = dataclasses.replace(refreshed, signed_in_at=self._clock())
        self._apply(SessionEvent.REAUTHENTICATED, refreshed)
        return True

    def decline_reauth(self) -> SessionState:
        """Give up on re-authentication; only valid while it is required."""

        if self.state is not SessionState.REAUTH_REQUIRED:
            return self.state
        return self._apply(SessionEvent.REAUTH_DECLINED, None)

    def _lifetime_exceeded(self, session: AuthSession) -> bool:
        lifetime = timedelta(seconds=get_session_duration(get_session_preference(self._store)))
        return self._clock() - session.signed_in_at > lifetime

    def _apply(self, event: SessionEvent, session=_UNCHANGED) -> SessionState:
        previous_state, previous_session = self.state, self.session
        self.state = transition(self.state, event)
        # An authenticated state always keeps a session.
        if session is not _UNCHANGED and not (session is None and self.state is SessionState.AUTHENTICATED):
            self.session = session

        if self.session is None:
            self._store.remove_item(AUTH_SESSION_KEY)
        elif self.state is SessionState.AUTHENTICATED and self.session is not previous_session:
            self._store.set_item(AUTH_SESSION_KEY, self.session.to_dict())

        if self.state is not previous_state or self.session is not previous_session:
            logger.debug("Session %s: %s -> %s", event.value, previous_state.value, self.state.value)
            for listener in list(self._listeners):
                listener(self.state, self.session)
        return self.state


__all__ = [
    "AUTH_SESSION_KEY",
    "SESSION_CHECK_INTERVAL",
    "SESSION_PREFERENCE_KEY",
    "SessionController",
    "SessionEvent",
    "SessionPreference",
    "SessionState",
    "clear_session_preference",
    "get_next_check_time",
    "get_session_duration",
    "get_session_preference",
    "set_session_preference",
    "should_refresh_session",
    "transition",
]
