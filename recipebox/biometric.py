"""Device biometric unlock built on a platform public-key credential API.

The assertion returned by the platform authenticator is trusted as-is: no
server ever checks its signature against the stored public key. This is a
local convenience gate that lets the user skip retyping their password, not
an authentication boundary. Restoring backend access still requires the
auth provider to accept the stored refresh token.
"""

from __future__ import annotations

import base64
import logging
import platform
import secrets
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from .local_store import LocalStore

logger = logging.getLogger(__name__)

CREDENTIAL_STORAGE_KEY = "recipe-box-webauthn-credentials"
RELYING_PARTY_NAME = "Virtual Recipe Box"
CHALLENGE_BYTES = 32
TIMEOUT_MS = 60000
ES256 = -7
RS256 = -257


class BiometricError(Exception):
    """Biometric authentication failed."""


class BiometricCancelledError(BiometricError):
    """The user dismissed the platform prompt."""


class BiometricUnsupportedError(BiometricError):
    """No usable platform authenticator on this device."""


class PlatformNotAllowedError(Exception):
    """Raised by platform authenticators when the user declines the prompt."""


@dataclass
class PlatformCredential:
    id: str
    raw_id: bytes


@dataclass
class BiometricCredential:
    id: str
    public_key: str
    device_name: str
    created_at: str


class PlatformAuthenticator(Protocol):
    """The device's public-key credential API."""

    def is_supported(self) -> bool:
        """Whether public-key credentials can be used at all."""

    def is_user_verifying_platform_authenticator_available(self) -> bool:
        """Whether a built-in fingerprint/face authenticator is present."""

    def create(self, options: Dict[str, Any]) -> Optional[PlatformCredential]:
        """Create a credential; raise :class:`PlatformNotAllowedError` on dismissal."""

    def get(self, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Produce an assertion; raise :class:`PlatformNotAllowedError` on dismissal."""


class UnsupportedPlatformAuthenticator(PlatformAuthenticator):
    """Used when the device offers no platform authenticator."""

    def is_supported(self) -> bool:
        return False

    def is_user_verifying_platform_authenticator_available(self) -> bool:
        return False

    def create(self, options: Dict[str, Any]) -> Optional[PlatformCredential]:
        raise BiometricUnsupportedError("Biometric authentication is not supported on this device")

    def get(self, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise BiometricUnsupportedError("Biometric authentication is not supported on this device")


def device_name() -> str:
    system = platform.system()
    if system == "Darwin":
        return "Mac"
    if system == "Windows":
        return "Windows PC"
    if system == "Linux":
        return "Linux PC"
    return "This Device"


class BiometricAuth:
    def __init__(
        self,
        store: LocalStore,
        authenticator: Optional[PlatformAuthenticator] = None,
        *,
        rp_id: str = "localhost",
    ) -> None:
        self._store = store
        self._authenticator = authenticator or UnsupportedPlatformAuthenticator()
        self._rp_id = rp_id

    def is_supported(self) -> bool:
        return self._authenticator.is_supported()

    def is_platform_authenticator_available(self) -> bool:
        if not self.is_supported():
            return False
        try:
            return self._authenticator.is_user_verifying_platform_authenticator_available()
        except Exception as exc:  # pragma: no cover
            logger.error("Error checking platform authenticator: %s", exc)
            return False

    def register(self, user_id: str, email: str) -> BiometricCredential:
        """Create a device-bound credential and remember its descriptor."""

        if not self.is_supported():
            raise BiometricUnsupportedError("Biometric authentication is not supported on this device")

        options = {
            "challenge": secrets.token_bytes(CHALLENGE_BYTES),
            "rp": {"name": RELYING_PARTY_NAME, "id": self._rp_id},
            "user": {"id": user_id.encode("utf-8"), "name": email, "displayName": email},
            "pubKeyCredParams": [
                {"alg": ES256, "type": "public-key"},
                {"alg": RS256, "type": "public-key"},
            ],
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "userVerification": "required",
                "requireResidentKey": False,
            },
            "timeout": TIMEOUT_MS,
            "attestation": "none",
        }

        try:
            created = self._authenticator.create(options)
        except PlatformNotAllowedError as exc:
            raise BiometricCancelledError("Biometric registration was cancelled") from exc
        except BiometricError:
            raise
        except Exception as exc:
            logger.error("Error registering biometric: %s", exc)
            raise BiometricError("Failed to register biometric authentication") from exc

        if created is None:
            raise BiometricError("Failed to register biometric authentication")

        credential = BiometricCredential(
            id=created.id,
            public_key=base64.b64encode(created.raw_id).decode("ascii"),
            device_name=device_name(),
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._save_credential(credential)
        logger.info("Registered biometric credential on %s", credential.device_name)
        return credential

    def authenticate(self) -> bool:
        if not self.is_supported():
            raise BiometricUnsupportedError("Biometric authentication is not supported on this device")

        credential = self.get_credential()
        if credential is None:
            raise BiometricError(
                "No biometric credential found. Please set up biometric authentication first."
            )

        options = {
            "challenge": secrets.token_bytes(CHALLENGE_BYTES),
            "allowCredentials": [
                {
                    "id": base64.b64decode(credential.public_key),
                    "type": "public-key",
                    "transports": ["internal"],
                }
            ],
            "timeout": TIMEOUT_MS,
            "userVerification": "required",
        }

        try:
            assertion = self._authenticator.get(options)
        except PlatformNotAllowedError as exc:
            raise BiometricCancelledError("Biometric authentication was cancelled") from exc
        except BiometricError:
            raise
        except Exception as exc:
            logger.error("Error authenticating with biometric: %s", exc)
            raise BiometricError("Biometric authentication failed") from exc

        if not assertion:
            raise BiometricError("Biometric authentication failed")
        return True

    def has_credential(self) -> bool:
        return self.get_credential() is not None

    def get_credential(self) -> Optional[BiometricCredential]:
        try:
            stored = self._store.get_item(CREDENTIAL_STORAGE_KEY)
        except (sqlite3.Error, ValueError) as exc:
            logger.error("Error reading biometric credential: %s", exc)
            return None
        if not isinstance(stored, dict):
            return None
        try:
            return BiometricCredential(**stored)
        except TypeError:
            return None

    def remove(self) -> None:
        try:
            self._store.remove_item(CREDENTIAL_STORAGE_KEY)
        except sqlite3.Error as exc:
            logger.error("Error removing biometric credential: %s", exc)

    def _save_credential(self, credential: BiometricCredential) -> None:
        try:
            self._store.set_item(CREDENTIAL_STORAGE_KEY, asdict(credential))
        except sqlite3.Error as exc:
            logger.error("Error saving biometric credential: %s", exc)


__all__ = [
    "BiometricAuth",
    "BiometricCancelledError",
    "BiometricCredential",
    "BiometricError",
    "BiometricUnsupportedError",
    "PlatformAuthenticator",
    "PlatformCredential",
    "PlatformNotAllowedError",
    "UnsupportedPlatformAuthenticator",
]
