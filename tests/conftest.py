"""Shared fixtures: SQLite-backed stores, a settable clock and a fake provider."""

import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["API_KEY"] = "test-api-key"
os.environ["TRACING_ENABLED"] = "false"
os.environ["NOTIFICATION_ENV"] = "dev"

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from totlpush.catalog.catalog import NotificationCatalog, get_catalog
from totlpush.common.db import Base, make_session_factory
from totlpush.services.dispatcher.idempotency import SendLedger
from totlpush.services.dispatcher.models import PushSubscription
from totlpush.services.dispatcher.onesignal import OneSignalClient
from totlpush.services.dispatcher.policy import PolicyChain
from totlpush.services.dispatcher.service import NotificationDispatcher
from totlpush.services.dispatcher.targeting import (
    LeagueMuteRepository,
    PreferenceRepository,
    SubscriptionRepository,
    TargetResolver,
)


START = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
API_URL = "https://onesignal.test/api/v1"
# Generous: concurrent SQLite writers queue on the file lock.
STORE_TIMEOUT = 30.0


class FixedClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeOneSignal:
    """MockTransport handler recording sends and player lookups."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.player_lookups: list[str] = []
        self.send_overrides: dict[str, tuple[int, dict]] = {}
        self.players: dict[str, tuple[int, dict]] = {}
        self.lookup_error: Exception | None = None
        self._ids = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path.endswith("/notifications"):
            payload = json.loads(request.content)
            self.sent.append(payload)
            targets = payload.get("include_external_user_ids") or payload.get("include_player_ids") or []
            for target in targets:
                if target in self.send_overrides:
                    status, body = self.send_overrides[target]
                    return httpx.Response(status, json=body)
            self._ids += 1
            return httpx.Response(200, json={"id": f"notif-{self._ids}", "recipients": max(1, len(targets))})
        if request.method == "GET" and "/players/" in request.url.path:
            player_id = request.url.path.rsplit("/", 1)[-1]
            self.player_lookups.append(player_id)
            if self.lookup_error is not None:
                raise self.lookup_error
            status, body = self.players.get(
                player_id,
                (200, {"id": player_id, "identifier": f"apns-{player_id}", "notification_types": 1}),
            )
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"errors": ["not found"]})


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def session_factory(tmp_path):
    factory = make_session_factory(
        f"sqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    engine = factory.kw["bind"]
    Base.metadata.create_all(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def ledger(session_factory, clock) -> SendLedger:
    return SendLedger(session_factory, "dev", clock=clock)


@pytest.fixture
def fake_onesignal() -> FakeOneSignal:
    return FakeOneSignal()


@pytest.fixture
def provider(fake_onesignal) -> OneSignalClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_onesignal))
    return OneSignalClient(http, app_id="app-123", rest_api_key="rest-key", api_url=API_URL, batch_size=2000)


@pytest.fixture
def catalog() -> NotificationCatalog:
    return get_catalog()


def catalog_with(base: NotificationCatalog, key: str, **updates) -> NotificationCatalog:
    """Copy of `base` with nested sections of one entry replaced."""

    entries = dict(base.entries())
    entry = entries[key]
    changed = {name: getattr(entry, name).model_copy(update=value) for name, value in updates.items()}
    entries[key] = entry.model_copy(update=changed)
    return NotificationCatalog(entries)


def add_subscription(
    session_factory,
    user_id: str,
    player_id: str | None = None,
    external_id: str | None = None,
    updated_at: datetime = START,
    **fields,
) -> None:
    with session_factory() as db:
        db.add(
            PushSubscription(
                user_id=user_id,
                player_id=f"player-{user_id}" if player_id is None else player_id,
                external_id=external_id,
                platform=fields.pop("platform", "ios"),
                created_at=updated_at,
                updated_at=updated_at,
                **fields,
            )
        )
        db.commit()


def build_env(session_factory, clock, provider, catalog, ledger=None, resolver=None, **dispatcher_kwargs):
    ledger = ledger or SendLedger(session_factory, "dev", clock=clock)
    resolver = resolver or TargetResolver(
        SubscriptionRepository(session_factory), provider, clock=clock, verify_enabled=True, store_timeout=STORE_TIMEOUT
    )
    policy = PolicyChain(ledger, LeagueMuteRepository(session_factory), clock=clock, store_timeout=STORE_TIMEOUT)
    dispatcher = NotificationDispatcher(
        catalog=catalog,
        ledger=ledger,
        preferences=PreferenceRepository(session_factory),
        policy=policy,
        resolver=resolver,
        provider=provider,
        concurrency=dispatcher_kwargs.pop("concurrency", 10),
        store_timeout=STORE_TIMEOUT,
        broadcast_segment="Subscribed Users",
        **dispatcher_kwargs,
    )
    return SimpleNamespace(ledger=ledger, resolver=resolver, policy=policy, dispatcher=dispatcher)


@pytest.fixture
def env(session_factory, clock, provider, catalog):
    return build_env(session_factory, clock, provider, catalog)
