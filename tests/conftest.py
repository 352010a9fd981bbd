"""
Test configuration and fixtures.

Provides:
- An in-memory stand-in for the async Supabase client (query builder,
  realtime channels, auth) so the messenger runs without a backend
- Seeded users with profiles
- Messenger sessions bound to the fake backend
"""
import asyncio
import os
import re
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

os.environ["PUBLIC_SUPABASE_URL"] = "http://supabase.test"
os.environ["SECRET_API_KEY"] = "service-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["LOADING_TIMEOUT_SECONDS"] = "3"

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402
from supabase import AuthApiError  # noqa: E402

from howtalk.core.config import settings  # noqa: E402
from howtalk.messenger.schemas import Identity, Profile  # noqa: E402
from howtalk.messenger.sync import Messenger  # noqa: E402


UNIQUE_KEYS = {
    "profiles": ("user_id",),
    "friendships": ("requester_id", "addressee_id"),
    "chat_participants": ("room_id", "user_id"),
}


# =============================================================================
# Query builder
# =============================================================================


def _same(left, right) -> bool:
    return left == right or (left is not None and str(left) == str(right))


def _like_to_regex(pattern: str) -> str:
    parts = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "".join(parts)


def _parse_or(filters: str):
    """Supports the `col.eq.value,col.eq.value` form."""
    clauses = []
    for part in filters.split(","):
        column, operator, value = part.split(".", 2)
        assert operator == "eq", f"unsupported or_ operator {operator}"
        clauses.append((column, value))
    return lambda row: any(_same(row.get(column), value) for column, value in clauses)


class FakeQuery:
    def __init__(self, backend: "FakeSupabase", table: str):
        self.backend = backend
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload = None
        self.filters = []
        self.orders = []
        self.row_limit = None

    def select(self, columns: str = "*", count=None):
        self.op = "select"
        self.columns = columns
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: _same(row.get(column), value))
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: not _same(row.get(column), value))
        return self

    def in_(self, column, values):
        wanted = {str(value) for value in values}
        self.filters.append(lambda row: str(row.get(column)) in wanted)
        return self

    def ilike(self, column, pattern):
        regex = _like_to_regex(pattern)
        self.filters.append(
            lambda row: row.get(column) is not None
            and re.fullmatch(regex, str(row[column]), re.IGNORECASE) is not None
        )
        return self

    def or_(self, filters: str, reference_table=None):
        self.filters.append(_parse_or(filters))
        return self

    def order(self, column, desc: bool = False, **_kwargs):
        self.orders.append((column, desc))
        return self

    def limit(self, size: int, **_kwargs):
        self.row_limit = size
        return self

    def matches(self, row) -> bool:
        return all(check(row) for check in self.filters)

    async def execute(self):
        gate = self.backend.take_gate(self.table, self.op)
        if gate is not None:
            gate.reached.set()
            await gate.release.wait()
        return self.backend.run(self)


# =============================================================================
# Realtime
# =============================================================================


class FakeChannel:
    def __init__(self, topic: str):
        self.topic = topic
        self.bindings = []
        self.subscribed = False

    def on_postgres_changes(self, event, callback, table="*", schema="public", filter=None):
        self.bindings.append((event, table, callback))
        return self

    async def subscribe(self, callback=None):
        self.subscribed = True
        if callback is not None:
            callback("SUBSCRIBED", None)
        return self


# =============================================================================
# Auth
# =============================================================================


class FakeAuth:
    def __init__(self, backend: "FakeSupabase"):
        self.backend = backend
        self.users = {}
        self.refresh_tokens = {}
        self.refresh_by_access = {}
        self.admin = FakeAuthAdmin(self)

    def _mint(self, user):
        now = datetime.now(timezone.utc)
        return jwt.encode(
            {
                "sub": user.id,
                "email": user.email,
                "iss": settings.jwt_issuer,
                "aud": "authenticated",
                "exp": now + timedelta(hours=1),
                "session_id": str(uuid.uuid4()),
            },
            settings.jwt_secret,
            algorithm="HS256",
        )

    def _session_for(self, user):
        refresh_token = uuid.uuid4().hex
        access_token = self._mint(user)
        self.refresh_tokens[refresh_token] = user
        self.refresh_by_access[access_token] = refresh_token
        return SimpleNamespace(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=3600,
        )

    def add_user(self, email, password, metadata=None):
        user = SimpleNamespace(
            id=str(uuid.uuid4()), email=email, user_metadata=metadata or {}
        )
        self.users[email] = (user, password)
        return user

    async def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.users:
            raise AuthApiError("User already registered", 422, None)
        metadata = credentials.get("options", {}).get("data", {})
        user = self.add_user(email, credentials["password"], metadata)
        return SimpleNamespace(user=user, session=None)

    async def sign_in_with_password(self, credentials):
        entry = self.users.get(credentials["email"])
        if entry is None or entry[1] != credentials["password"]:
            raise AuthApiError("Invalid login credentials", 400, None)
        user = entry[0]
        return SimpleNamespace(user=user, session=self._session_for(user))

    async def refresh_session(self, refresh_token):
        user = self.refresh_tokens.pop(refresh_token, None)
        if user is None:
            raise AuthApiError("Invalid Refresh Token", 400, None)
        return SimpleNamespace(user=user, session=self._session_for(user))

    def token_for(self, email):
        return self._mint(self.users[email][0])


class FakeAuthAdmin:
    """Service-key admin API: revokes the session behind one access token."""

    def __init__(self, auth: FakeAuth):
        self.auth = auth
        self.revoked = []

    async def sign_out(self, jwt, scope="global"):
        self.revoked.append((jwt, scope))
        refresh_token = self.auth.refresh_by_access.pop(jwt, None)
        self.auth.refresh_tokens.pop(refresh_token, None)


# =============================================================================
# Client
# =============================================================================


class Gate:
    def __init__(self):
        self.reached = asyncio.Event()
        self.release = asyncio.Event()


class FakeSupabase:
    """In-memory tables with just enough PostgREST behaviour for the messenger."""

    def __init__(self):
        self.tables = {
            "profiles": [],
            "friendships": [],
            "chat_rooms": [],
            "chat_participants": [],
            "messages": [],
        }
        self.channels = []
        self.auth = FakeAuth(self)
        self.failures = []
        self.gates = {}
        self.observers = []
        self.queries = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # -- test controls --------------------------------------------------

    def fail(self, table, op, message="service unavailable", code="503", times=1):
        self.failures.append([table, op, {"message": message, "code": code}, times])

    def hold(self, table, op) -> Gate:
        gate = Gate()
        self.gates[(table, op)] = gate
        return gate

    def take_gate(self, table, op):
        return self.gates.pop((table, op), None)

    def observe(self, table, op, callback):
        self.observers.append((table, op, callback))

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def rows(self, table, **where):
        return [
            row
            for row in self.tables[table]
            if all(_same(row.get(key), value) for key, value in where.items())
        ]

    def emit_insert(self, table, record):
        payload = {
            "data": {
                "record": dict(record),
                "type": "INSERT",
                "table": table,
                "schema": "public",
            },
            "ids": [],
        }
        for channel in list(self.channels):
            if not channel.subscribed:
                continue
            for event, bound_table, callback in channel.bindings:
                if event in ("INSERT", "*") and bound_table in (table, "*"):
                    callback(payload)

    # -- client surface -------------------------------------------------

    def table(self, name):
        return FakeQuery(self, name)

    def channel(self, topic):
        channel = FakeChannel(topic)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel):
        channel.subscribed = False
        if channel in self.channels:
            self.channels.remove(channel)

    # -- execution ------------------------------------------------------

    def _raise_if_failing(self, table, op):
        for failure in self.failures:
            if failure[0] == table and failure[1] == op and failure[3] > 0:
                failure[3] -= 1
                raise APIError(dict(failure[2]))

    def _defaults(self, table):
        stamp = self.tick()
        row = {"id": str(uuid.uuid4()), "created_at": stamp}
        if table in ("chat_rooms", "messages", "profiles"):
            row["updated_at"] = stamp
        if table == "chat_participants":
            row["joined_at"] = stamp
        if table == "friendships":
            row["status"] = "pending"
        if table == "messages":
            row["message_type"] = "text"
            row["ai_persona"] = None
        return row

    def _check_unique(self, table, row):
        keys = UNIQUE_KEYS.get(table)
        if not keys:
            return
        for existing in self.tables[table]:
            if all(_same(existing.get(key), row.get(key)) for key in keys):
                raise APIError(
                    {
                        "message": f'duplicate key value violates unique constraint "{table}_key"',
                        "code": "23505",
                    }
                )

    def _project(self, query, row):
        if query.columns.strip() == "*":
            return dict(row)
        columns = [column.strip() for column in query.columns.split(",") if column.strip()]
        return {column: row.get(column) for column in columns}

    def run(self, query):
        self.queries.append((query.table, query.op))
        for table, op, callback in self.observers:
            if table == query.table and op == query.op:
                callback(query)

        self._raise_if_failing(query.table, query.op)
        rows = self.tables[query.table]

        if query.op == "select":
            found = [row for row in rows if query.matches(row)]
            for column, desc in reversed(query.orders):
                found.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if query.row_limit is not None:
                found = found[: query.row_limit]
            return SimpleNamespace(data=[self._project(query, row) for row in found], count=None)

        if query.op == "insert":
            payload = query.payload if isinstance(query.payload, list) else [query.payload]
            created = []
            for item in payload:
                row = {**self._defaults(query.table), **item}
                self._check_unique(query.table, row)
                self._check_unique_batch(query.table, row, created)
                created.append(row)
            rows.extend(created)
            if query.table == "messages":
                for row in created:
                    self.emit_insert("messages", row)
            return SimpleNamespace(data=[dict(row) for row in created], count=None)

        if query.op == "update":
            updated = []
            for row in rows:
                if query.matches(row):
                    row.update(query.payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated, count=None)

        if query.op == "delete":
            deleted = [row for row in rows if query.matches(row)]
            self.tables[query.table] = [row for row in rows if not query.matches(row)]
            return SimpleNamespace(data=[dict(row) for row in deleted], count=None)

        raise AssertionError(f"unknown op {query.op}")

    def _check_unique_batch(self, table, row, created):
        keys = UNIQUE_KEYS.get(table)
        if not keys:
            return
        for other in created:
            if all(_same(other.get(key), row.get(key)) for key in keys):
                raise APIError(
                    {
                        "message": f'duplicate key value violates unique constraint "{table}_key"',
                        "code": "23505",
                    }
                )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture()
def backend() -> FakeSupabase:
    return FakeSupabase()


def seed_user(backend: FakeSupabase, email: str, display_name=None, password="Secret#123"):
    user = backend.auth.add_user(email, password)
    profile_row = {
        "id": str(uuid.uuid4()),
        "user_id": user.id,
        "email": email.lower(),
        "display_name": display_name,
        "avatar_url": None,
        "status": "online",
        "created_at": backend.tick(),
    }
    backend.tables["profiles"].append(profile_row)
    return Identity(id=user.id, email=email), Profile.model_validate(profile_row)


def befriend(backend: FakeSupabase, first: Identity, second: Identity):
    pair = {first.id, second.id}
    for row in backend.tables["friendships"]:
        if {row["requester_id"], row["addressee_id"]} == pair and row["status"] == "accepted":
            return
    backend.tables["friendships"].append(
        {
            "id": str(uuid.uuid4()),
            "requester_id": first.id,
            "addressee_id": second.id,
            "status": "accepted",
            "created_at": backend.tick(),
        }
    )


@pytest.fixture()
def alice(backend):
    return seed_user(backend, "alice@example.com", "Alice")


@pytest.fixture()
def bob(backend):
    return seed_user(backend, "bob@example.com", "Bob")


@pytest.fixture()
def carol(backend):
    # No display name: rooms fall back to the email local part
    return seed_user(backend, "carol@example.com", None)


@pytest_asyncio.fixture()
async def connect(backend):
    """Factory: a loaded messenger for a seeded user."""
    opened = []

    async def _connect(user):
        identity, profile = user
        messenger = Messenger(backend, loading_timeout=0)
        await messenger.set_identity(identity, profile)
        opened.append(messenger)
        return messenger

    yield _connect

    for messenger in opened:
        await messenger.close()
