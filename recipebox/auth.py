"""Password sessions and user creation against the Firebase Identity Toolkit.

Only the REST endpoints are used, so the client needs nothing but the web API
key of the project. Tokens are never verified locally; the backend validates
them on every call.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import requests

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
REQUEST_TIMEOUT = 15


class AuthError(Exception):
    """Raised when the auth provider rejects a request."""


@dataclass
class AuthSession:
    user_id: str
    email: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    signed_in_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "signed_in_at": self.signed_in_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        return cls(
            user_id=data["user_id"],
            email=data["email"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            signed_in_at=datetime.fromisoformat(data["signed_in_at"]),
        )


class AuthProvider(Protocol):
    """Protocol describing the auth backend used by the session controller."""

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        """Create a session or raise :class:`AuthError`."""

    def refresh_session(self, session: AuthSession) -> AuthSession:
        """Exchange the refresh token for a fresh session or raise :class:`AuthError`."""

    def sign_out(self, session: AuthSession) -> None:
        """Forget the session."""

    def create_user(self, *, email: str, password: str, display_name: str) -> str:
        """Create a confirmed user and return its id (privileged)."""


class FirebaseAuthProvider(AuthProvider):
    def __init__(
        self,
        *,
        api_key: str,
        http: Optional[requests.Session] = None,
        clock=None,
    ) -> None:
        self._api_key = api_key
        self._http = http or requests.Session()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_env(cls) -> "FirebaseAuthProvider":
        api_key = os.environ.get("FIREBASE_API_KEY")
        if not api_key:
            raise RuntimeError("FIREBASE_API_KEY must be set to sign in against Firebase.")
        return cls(api_key=api_key)

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        data = self._post_json(
            f"{IDENTITY_TOOLKIT_URL}/accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        now = self._clock()
        return AuthSession(
            user_id=data["localId"],
            email=data.get("email", email),
            access_token=data["idToken"],
            refresh_token=data["refreshToken"],
            expires_at=now + timedelta(seconds=int(data.get("expiresIn", 3600))),
            signed_in_at=now,
        )

    def refresh_session(self, session: AuthSession) -> AuthSession:
        try:
            response = self._http.post(
                SECURE_TOKEN_URL,
                params={"key": self._api_key},
                data={"grant_type": "refresh_token", "refresh_token": session.refresh_token},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise AuthError(f"Could not reach the auth service: {exc}") from exc

        data = self._decode(response)
        return AuthSession(
            user_id=data.get("user_id", session.user_id),
            email=session.email,
            access_token=data["id_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._clock() + timedelta(seconds=int(data.get("expires_in", 3600))),
            signed_in_at=session.signed_in_at,
        )

    def sign_out(self, session: AuthSession) -> None:
        # Firebase ID tokens are stateless; discarding them locally is enough.
        logger.info("Signed out user %s", session.user_id)

    def create_user(self, *, email: str, password: str, display_name: str) -> str:
        data = self._post_json(
            f"{IDENTITY_TOOLKIT_URL}/accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        if display_name:
            self._post_json(
                f"{IDENTITY_TOOLKIT_URL}/accounts:update",
                {"idToken": data["idToken"], "displayName": display_name, "returnSecureToken": False},
            )
        return data["localId"]

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._http.post(
                url, params={"key": self._api_key}, json=payload, timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as exc:
            raise AuthError(f"Could not reach the auth service: {exc}") from exc
        return self._decode(response)

    @staticmethod
    def _decode(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = (data.get("error") or {}).get("message") or f"HTTP {response.status_code}"
            raise AuthError(_friendly_message(message))
        return data


_MESSAGES = {
    "EMAIL_EXISTS": "An account with this email already exists.",
    "EMAIL_NOT_FOUND": "Invalid email or password.",
    "INVALID_PASSWORD": "Invalid email or password.",
    "INVALID_LOGIN_CREDENTIALS": "Invalid email or password.",
    "USER_DISABLED": "This account has been disabled.",
    "TOKEN_EXPIRED": "Your session has expired.",
    "INVALID_REFRESH_TOKEN": "Your session has expired.",
}


def _friendly_message(code: str) -> str:
    # Firebase appends details after " : ", e.g. "WEAK_PASSWORD : Password should be ..."
    head, _, detail = code.partition(" : ")
    if head in _MESSAGES:
        return _MESSAGES[head]
    return detail or head


__all__ = ["AuthError", "AuthProvider", "AuthSession", "FirebaseAuthProvider"]
