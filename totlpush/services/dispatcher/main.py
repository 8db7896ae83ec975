"""Dispatcher API + intent consumer lifecycle.

Exposes the internal dispatch RPCs used by webhooks and jobs, read-only ops
views over the send log, and runs the Kafka intent consumer alongside.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from time import perf_counter

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request

from totlpush.catalog.catalog import get_catalog
from totlpush.common.config import settings
from totlpush.common.db import SessionLocal
from totlpush.common.logging import configure_logging, log_context, logger
from totlpush.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from totlpush.common.startup import log_startup_config
from totlpush.common.tracing import instrument_app, setup_tracing
from totlpush.services.dispatcher.errors import ProviderNotConfiguredError, UnknownNotificationError
from totlpush.services.dispatcher.idempotency import SendLedger, utc_now
from totlpush.services.dispatcher.onesignal import OneSignalClient
from totlpush.services.dispatcher.policy import PolicyChain
from totlpush.services.dispatcher.schemas import BatchDispatchResult, NotificationIntent, PendingRow, SendLogStatsRow
from totlpush.services.dispatcher.service import NotificationDispatcher
from totlpush.services.dispatcher.targeting import (
    LeagueMuteRepository,
    PreferenceRepository,
    SubscriptionRepository,
    TargetResolver,
)

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    [
        "notification_env",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "onesignal_app_id",
        "onesignal_rest_api_key",
        "dispatch_concurrency",
        "verify_subscriptions",
        "catalog_path",
    ]
)


def build_dispatcher(session_factory, http: httpx.AsyncClient) -> NotificationDispatcher:
    """Wire the dispatcher from process settings."""

    ledger = SendLedger(session_factory, settings.notification_env, clock=utc_now)
    provider = OneSignalClient.from_settings(http)
    return NotificationDispatcher(
        catalog=get_catalog(),
        ledger=ledger,
        preferences=PreferenceRepository(session_factory),
        policy=PolicyChain(ledger, LeagueMuteRepository(session_factory), clock=utc_now),
        resolver=TargetResolver(SubscriptionRepository(session_factory), provider, clock=utc_now),
        provider=provider,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the provider connection pool and the intent consumer task."""

    http = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    app.state.dispatcher = build_dispatcher(SessionLocal, http)
    consumer_task = asyncio.create_task(app.state.dispatcher.start_consumers())
    yield
    consumer_task.cancel()
    with suppress(asyncio.CancelledError):
        await consumer_task
    await http.aclose()


app = FastAPI(title="TOTL Notification Dispatcher", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_ledger(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> SendLedger:
    return dispatcher.ledger


async def _run(coro, intent: NotificationIntent, x_trace_id: str | None) -> BatchDispatchResult:
    with log_context(trace_id=x_trace_id or "", notification_key=intent.notification_key, event_id=intent.event_id):
        try:
            return await coro
        except UnknownNotificationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ProviderNotConfiguredError as exc:
            logger.error("dispatch rejected: %s", exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.post("/internal/dispatch", response_model=BatchDispatchResult, dependencies=[Depends(enforce_api_key)])
async def dispatch(
    intent: NotificationIntent,
    x_trace_id: str | None = Header(default=None),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Dispatch one intent to its listed users and return per-user outcomes."""

    return await _run(dispatcher.dispatch(intent), intent, x_trace_id)


@app.post("/internal/broadcast", response_model=BatchDispatchResult, dependencies=[Depends(enforce_api_key)])
async def broadcast(
    intent: NotificationIntent,
    x_trace_id: str | None = Header(default=None),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Segment-wide send under a single global claim (or per-user with user_ids)."""

    return await _run(dispatcher.dispatch_broadcast(intent), intent, x_trace_id)


@app.get("/ops/send-log/stats", response_model=list[SendLogStatsRow], dependencies=[Depends(enforce_api_key)])
def send_log_stats(hours: int = Query(default=24, ge=1, le=24 * 30), ledger: SendLedger = Depends(get_ledger)):
    """Counts by notification and result for the last `hours` hours."""

    return ledger.stats_since(ledger.clock() - timedelta(hours=hours))


@app.get("/ops/send-log/pending", response_model=list[PendingRow], dependencies=[Depends(enforce_api_key)])
def send_log_pending(
    older_than_seconds: int = Query(default=300, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    ledger: SendLedger = Depends(get_ledger),
):
    """Rows stuck in `pending`, oldest first. Read-only: nothing is reclaimed."""

    rows = ledger.list_stale_pending(ledger.clock() - timedelta(seconds=older_than_seconds), limit=limit)
    return [
        PendingRow(
            id=row.id,
            notification_key=row.notification_key,
            event_id=row.event_id,
            user_id=row.user_id,
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
