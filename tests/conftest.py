"""Test fixtures — a fresh in-memory SQLite database per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own engine on "sqlite+aiosqlite://" (in-memory) and
   Base.metadata.create_all. Nothing leaks between tests.
2. Services commit for real. SQLite's driver is told to stay out of
   transaction management so SAVEPOINTs (used by add_auth_method)
   behave like they do on PostgreSQL.
3. Every outside collaborator is a fake passed in the same way production
   passes the real one: a controllable clock, a mailer that records
   messages, a relying party with canned ceremony results, and an Apple
   verifier with a fixed token table.
"""

import base64
import json
import os
import re
from datetime import datetime, timedelta, timezone

os.environ.setdefault("LATCHKEY_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LATCHKEY_ENVIRONMENT", "testing")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from webauthn.helpers import base64url_to_bytes

from latchkey.api.deps import get_apple_verifier, get_clock, get_mailer, get_relying_party
from latchkey.auth.apple import AppleClaims
from latchkey.auth.jwt import create_session_token
from latchkey.auth.webauthn import RelyingParty, VerifiedCredential
from latchkey.db.engine import get_db
from latchkey.db.models import (
    AuthMethod,
    AuthType,
    Base,
    PasskeyCredential,
    User,
    UserParam,
)
from latchkey.errors import CeremonyVerificationFailed
from latchkey.main import app


# ─── Fakes ───────────────────────────────────────────────

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMailer:
    """Records outgoing mail instead of talking SMTP."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    async def send_email(self, *, to: str, subject: str, html: str):
        if self.fail:
            return None
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"

    def last_code(self) -> str:
        match = re.search(r">(\d{6})<", self.sent[-1]["html"])
        assert match, "no code in last email"
        return match.group(1)


class FakeRelyingParty(RelyingParty):
    """Real option generation, canned verification results.

    Registration trusts the credential id it's given and derives a fake
    public key from it. Authentication returns `next_sign_count`.
    """

    def __init__(self):
        super().__init__(
            rp_id="localhost", rp_name="Latchkey", origin="https://localhost"
        )
        self.reject = False
        self.next_sign_count = 1
        self.seen_counters: list[int] = []

    def verify_registration(self, *, credential, expected_challenge):
        if self.reject:
            raise CeremonyVerificationFailed("Registration verification failed: bad attestation")
        raw_id = base64url_to_bytes(credential["rawId"])
        return VerifiedCredential(
            credential_id=raw_id,
            public_key=b"public-key-" + raw_id,
            sign_count=0,
            device_type="multiDevice",
            backed_up=True,
        )

    def verify_authentication(self, *, credential, expected_challenge, public_key, current_counter):
        if self.reject:
            raise CeremonyVerificationFailed(
                "Authentication verification failed: bad signature", status_code=401
            )
        self.seen_counters.append(current_counter)
        return self.next_sign_count


class FakeAppleVerifier:
    """Maps identity tokens to claims; unknown tokens are invalid."""

    def __init__(self):
        self.tokens: dict[str, AppleClaims] = {}

    def issue(self, token: str, subject: str, email: str) -> str:
        self.tokens[token] = AppleClaims(subject=subject, email=email)
        return token

    async def verify(self, identity_token: str):
        return self.tokens.get(identity_token)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def client_data_for(challenge_b64: str, ceremony: str = "webauthn.create") -> str:
    """clientDataJSON as a browser would send it, base64url-encoded."""
    return b64url(
        json.dumps(
            {"type": ceremony, "challenge": challenge_b64, "origin": "https://localhost"}
        ).encode()
    )


# ─── Database ────────────────────────────────────────────

@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


# ─── Collaborators ───────────────────────────────────────

@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def relying_party():
    return FakeRelyingParty()


@pytest.fixture()
def apple_verifier():
    return FakeAppleVerifier()


@pytest_asyncio.fixture()
async def client(db_session, clock, mailer, relying_party, apple_verifier):
    """HTTP client wired to the test database and fakes."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_relying_party] = lambda: relying_party
    app.dependency_overrides[get_apple_verifier] = lambda: apple_verifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Seed data ───────────────────────────────────────────

class Seed:
    """Shortcuts for putting users and credentials straight into the DB."""

    def __init__(self, db, clock):
        self.db = db
        self.clock = clock

    async def user(self, email: str, external_id: str | None = None) -> User:
        now = self.clock()
        user = User(
            email=email,
            external_id=external_id or f"ext-{email}",
            password="",
            active=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        await self.db.commit()
        return user

    async def passkey(
        self, user: User, credential_id: bytes, *, counter: int = 0, device_name: str = "iPhone"
    ) -> PasskeyCredential:
        now = self.clock()
        method = AuthMethod(
            user_id=user.id,
            auth_type=AuthType.PASSKEY.value,
            external_id=b64url(credential_id),
            metadata_={"device_name": device_name},
            created_at=now,
            updated_at=now,
        )
        self.db.add(method)
        await self.db.flush()
        passkey = PasskeyCredential(
            auth_method_id=method.id,
            credential_id=credential_id,
            public_key=b"public-key-" + credential_id,
            counter=counter,
            device_type="multiDevice",
            backed_up=True,
            transports=["internal"],
            device_name=device_name,
            created_at=now,
            updated_at=now,
        )
        self.db.add(passkey)
        await self.db.commit()
        return passkey

    async def apple(self, user: User, subject: str, *, is_primary: bool = True) -> AuthMethod:
        now = self.clock()
        method = AuthMethod(
            user_id=user.id,
            auth_type=AuthType.APPLE.value,
            external_id=subject,
            is_primary=is_primary,
            created_at=now,
            updated_at=now,
        )
        self.db.add(method)
        await self.db.commit()
        return method

    async def subscription(self, user: User) -> None:
        self.db.add(UserParam(user_id=user.id, param="subscription", value="pro"))
        await self.db.commit()

    def auth_header(self, user: User) -> dict:
        token = create_session_token(
            user_id=user.id, email=user.email, external_id=user.external_id
        )
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def seed(db_session, clock):
    return Seed(db_session, clock)
