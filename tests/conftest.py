from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from recipebox import create_app
from recipebox.auth import AuthError, AuthSession
from recipebox.biometric import PlatformCredential, PlatformNotAllowedError
from recipebox.households import signup
from recipebox.local_store import LocalStore
from recipebox.storage import DataGateway, GatewayError, StoredImage, row_matches


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryGateway(DataGateway):
    """Dictionary backed gateway used for tests."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail = False
        self._tick = 0

    def _check(self) -> None:
        if self.fail:
            raise GatewayError("backend unavailable")

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.tables.setdefault(collection, {})

    def select(self, collection, *, where=(), order_by=None, descending=False, limit=None):
        self._check()
        rows = [dict(row) for row in self._table(collection).values() if row_matches(row, where)]
        if order_by:
            rows.sort(key=lambda row: (row.get(order_by) is not None, row.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def get(self, collection, row_id):
        self._check()
        return dict(self._table(collection)[row_id])

    def insert(self, collection, rows):
        self._check()
        inserted = []
        for row in rows:
            self._tick += 1
            stored = dict(row)
            stored["id"] = stored.get("id") or uuid.uuid4().hex
            stored.setdefault("created_at", datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick))
            self._table(collection)[stored["id"]] = stored
            inserted.append(dict(stored))
        return inserted

    def update(self, collection, values, *, where):
        self._check()
        changed = 0
        for row in self._table(collection).values():
            if row_matches(row, where):
                row.update(values)
                changed += 1
        return changed

    def delete(self, collection, *, where):
        self._check()
        table = self._table(collection)
        doomed = [row_id for row_id, row in table.items() if row_matches(row, where)]
        for row_id in doomed:
            del table[row_id]
        return len(doomed)

    def count(self, collection, *, where=()):
        return len(self.select(collection, where=where))


class InMemoryImages:
    def __init__(self) -> None:
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []

    def upload(self, stream, *, filename, content_type):
        path = f"recipes/{uuid.uuid4().hex}_{filename}"
        self.blobs[path] = stream.read()
        return StoredImage(url=f"https://storage.test/{path}", storage_path=path)

    def delete(self, storage_path):
        self.deleted.append(storage_path)
        self.blobs.pop(storage_path, None)


class FakeAuthProvider:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.users: Dict[str, Dict[str, str]] = {}
        self.refresh_fails = False
        self.refresh_calls = 0

    def add_user(self, email: str, password: str, user_id: Optional[str] = None) -> str:
        user_id = user_id or uuid.uuid4().hex
        self.users[email] = {"password": password, "user_id": user_id}
        return user_id

    def _session(self, user_id: str, email: str, signed_in_at: datetime) -> AuthSession:
        now = self.clock()
        return AuthSession(
            user_id=user_id,
            email=email,
            access_token=uuid.uuid4().hex,
            refresh_token=uuid.uuid4().hex,
            expires_at=now + timedelta(hours=1),
            signed_in_at=signed_in_at,
        )

    def sign_in_with_password(self, email, password):
        user = self.users.get(email)
        if user is None or user["password"] != password:
            raise AuthError("Invalid email or password.")
        return self._session(user["user_id"], email, self.clock())

    def refresh_session(self, session):
        self.refresh_calls += 1
        if self.refresh_fails:
            raise AuthError("Your session has expired.")
        return self._session(session.user_id, session.email, session.signed_in_at)

    def sign_out(self, session):
        pass

    def create_user(self, *, email, password, display_name):
        if email in self.users:
            raise AuthError("An account with this email already exists.")
        return self.add_user(email, password)


class FakePlatformAuthenticator:
    def __init__(self, *, supported: bool = True, cancel: bool = False) -> None:
        self.supported = supported
        self.cancel = cancel
        self.created_options: List[dict] = []
        self.get_options: List[dict] = []

    def is_supported(self):
        return self.supported

    def is_user_verifying_platform_authenticator_available(self):
        return self.supported

    def create(self, options):
        if self.cancel:
            raise PlatformNotAllowedError("dismissed")
        self.created_options.append(options)
        return PlatformCredential(id="credential-1", raw_id=b"raw-credential-id")

    def get(self, options):
        if self.cancel:
            raise PlatformNotAllowedError("dismissed")
        self.get_options.append(options)
        return {"id": "credential-1"}


@dataclass
class AppEnv:
    app: Any
    client: Any
    gateway: InMemoryGateway
    images: InMemoryImages
    auth: FakeAuthProvider
    store: LocalStore
    clock: FakeClock
    authenticator: FakePlatformAuthenticator

    @property
    def controller(self):
        return self.app.config["SESSION_CONTROLLER"]

    def login(self, email: str = "cook@example.com", password: str = "secret123", **extra):
        data = {"email": email, "password": password}
        data.update(extra)
        return self.client.post("/login", data=data)


def register_user(
    gateway: DataGateway,
    auth: FakeAuthProvider,
    *,
    email: str = "cook@example.com",
    password: str = "secret123",
    display_name: str = "Casey",
    invite_code: Optional[str] = None,
):
    return signup(
        gateway,
        auth,
        email=email,
        password=password,
        display_name=display_name,
        invite_code=invite_code,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(tmp_path / "local.db")


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def auth(clock) -> FakeAuthProvider:
    return FakeAuthProvider(clock)


@pytest.fixture
def env(gateway, auth, store, clock) -> AppEnv:
    images = InMemoryImages()
    authenticator = FakePlatformAuthenticator()
    app = create_app(
        gateway,
        images=images,
        auth=auth,
        local_store=store,
        authenticator=authenticator,
        clock=clock,
    )
    app.config.update(TESTING=True)
    return AppEnv(
        app=app,
        client=app.test_client(),
        gateway=gateway,
        images=images,
        auth=auth,
        store=store,
        clock=clock,
        authenticator=authenticator,
    )


@pytest.fixture
def signed_in(env) -> AppEnv:
    register_user(env.gateway, env.auth)
    env.login()
    return env
