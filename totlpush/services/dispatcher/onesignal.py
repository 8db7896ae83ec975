"""OneSignal REST client: payload building, sends, batching, player lookup."""

import time
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx
from pydantic import BaseModel

from totlpush.catalog.catalog import CatalogEntry, format_template
from totlpush.common.config import settings
from totlpush.common.logging import logger
from totlpush.common.metrics import provider_latency_seconds, provider_requests_total


UNSUBSCRIBED_ERROR = "All included players are not subscribed"
INVALID_TARGET_KEYS = ("invalid_player_ids", "invalid_external_user_ids")
BODY_PREVIEW_CHARS = 100


class OneSignalPayload(BaseModel):
    app_id: str
    headings: dict[str, str]
    contents: dict[str, str]
    include_external_user_ids: list[str] | None = None
    include_player_ids: list[str] | None = None
    included_segments: list[str] | None = None
    collapse_id: str | None = None
    thread_id: str | None = None
    android_group: str | None = None
    data: dict[str, Any] | None = None
    url: str | None = None
    ios_badgeType: str | None = None
    ios_badgeCount: int | None = None

    @property
    def target_type(self) -> str:
        if self.include_external_user_ids:
            return "external_user_ids"
        if self.include_player_ids:
            return "player_ids"
        if self.included_segments:
            return "segment"
        return "filters"


@dataclass
class SendResult:
    success: bool
    notification_id: str | None = None
    recipients: int = 0
    error: dict[str, Any] | None = None

    @property
    def is_unsubscribed(self) -> bool:
        """True when the provider rejected the send because no target is subscribed."""

        if not self.error:
            return False
        errors = self.error.get("errors")
        if errors is None and isinstance(self.error.get("body"), dict):
            errors = self.error["body"].get("errors")
        if isinstance(errors, list):
            return any(UNSUBSCRIBED_ERROR in str(item) for item in errors)
        if isinstance(errors, dict):
            return any(errors.get(key) for key in INVALID_TARGET_KEYS)
        return False


@dataclass
class BatchSendResult:
    success: bool = True
    total_recipients: int = 0
    notification_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class PlayerLookup:
    status_code: int
    player: dict[str, Any] | None


def create_payload_summary(payload: OneSignalPayload) -> dict[str, Any]:
    """Audit view of a payload; never includes device tokens or user ids."""

    return {
        "title": payload.headings.get("en"),
        "body": (payload.contents.get("en") or "")[:BODY_PREVIEW_CHARS],
        "external_user_ids_count": len(payload.include_external_user_ids or []),
        "player_ids_count": len(payload.include_player_ids or []),
        "segments": list(payload.included_segments or []),
        "target_type": payload.target_type,
        "has_data": bool(payload.data),
        "has_url": bool(payload.url),
        "collapse_id": payload.collapse_id,
        "thread_id": payload.thread_id,
        "android_group": payload.android_group,
    }


def _format_optional(template: str | None, params: Mapping[str, Any]) -> str | None:
    if not template:
        return None
    return format_template(template, params)


class OneSignalClient:
    """Thin async wrapper around the OneSignal v1 REST API.

    The `httpx.AsyncClient` is owned by the caller so tests can mount a
    `MockTransport` and the app can share one connection pool.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        app_id: str | None = None,
        rest_api_key: str | None = None,
        api_url: str | None = None,
        batch_size: int | None = None,
        service_name: str | None = None,
    ) -> None:
        self.http = http
        self.app_id = app_id
        self.rest_api_key = rest_api_key
        self.api_url = (api_url or settings.onesignal_api_url).rstrip("/")
        self.batch_size = batch_size or settings.provider_batch_size
        self.service_name = service_name or settings.service_name

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient) -> "OneSignalClient":
        return cls(
            http,
            app_id=settings.onesignal_app_id,
            rest_api_key=settings.onesignal_rest_api_key,
            api_url=settings.onesignal_api_url,
            batch_size=settings.provider_batch_size,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.rest_api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self.rest_api_key}",
        }

    async def _request(self, method: str, endpoint: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one provider call and record outcome/latency metrics."""

        start = time.perf_counter()
        try:
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError:
            provider_requests_total.labels(
                service=self.service_name, endpoint=endpoint, outcome="transport_error"
            ).inc()
            raise
        finally:
            provider_latency_seconds.labels(service=self.service_name, endpoint=endpoint).observe(
                time.perf_counter() - start
            )
        provider_requests_total.labels(
            service=self.service_name,
            endpoint=endpoint,
            outcome=f"{response.status_code // 100}xx",
        ).inc()
        return response

    def build_payload(
        self,
        entry: CatalogEntry,
        title: str,
        body: str,
        external_user_ids: list[str] | None = None,
        player_ids: list[str] | None = None,
        segments: list[str] | None = None,
        data: dict[str, Any] | None = None,
        url: str | None = None,
        grouping_params: Mapping[str, Any] | None = None,
        badge_count: int | None = None,
    ) -> OneSignalPayload:
        """Build one send request; external ids win over player ids."""

        if not self.app_id:
            raise ValueError("OneSignal app id is not configured")
        params = grouping_params or {}
        payload = OneSignalPayload(
            app_id=self.app_id,
            headings={"en": title},
            contents={"en": body},
            collapse_id=_format_optional(entry.onesignal.collapse_id_format, params),
            thread_id=_format_optional(entry.onesignal.thread_id_format, params),
            android_group=_format_optional(entry.onesignal.android_group_format, params),
            data=data or None,
            url=url or None,
        )
        if external_user_ids:
            payload.include_external_user_ids = list(external_user_ids)
        elif player_ids:
            payload.include_player_ids = list(player_ids)
        elif segments:
            payload.included_segments = list(segments)
        if badge_count is not None:
            payload.ios_badgeType = "SetTo"
            payload.ios_badgeCount = badge_count
        return payload

    async def send(self, payload: OneSignalPayload) -> SendResult:
        """POST one notification; never raises for provider or transport errors."""

        if not self.rest_api_key:
            return SendResult(success=False, error={"message": "OneSignal REST API key is not configured"})
        try:
            response = await self._request(
                "POST",
                "notifications",
                f"{self.api_url}/notifications",
                json=payload.model_dump(exclude_none=True),
            )
        except httpx.HTTPError as exc:
            logger.warning("onesignal send transport error error=%r", exc)
            return SendResult(success=False, error={"message": str(exc) or exc.__class__.__name__})

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.is_success:
            return SendResult(success=False, error={"status": response.status_code, "body": body})
        if not isinstance(body, dict):
            return SendResult(success=False, error={"status": response.status_code, "body": body})
        errors = body.get("errors")
        if errors:
            return SendResult(success=False, error={"errors": errors})
        return SendResult(
            success=True,
            notification_id=body.get("id") or None,
            recipients=int(body.get("recipients") or 0),
        )

    async def send_batched(
        self,
        entry: CatalogEntry,
        title: str,
        body: str,
        external_user_ids: list[str] | None = None,
        player_ids: list[str] | None = None,
        **options: Any,
    ) -> BatchSendResult:
        """Split the target list into provider-sized chunks and send each."""

        use_external = bool(external_user_ids)
        target_ids = list(external_user_ids if use_external else (player_ids or []))
        result = BatchSendResult()
        for start in range(0, len(target_ids), self.batch_size):
            chunk = target_ids[start : start + self.batch_size]
            payload = self.build_payload(
                entry,
                title,
                body,
                external_user_ids=chunk if use_external else None,
                player_ids=None if use_external else chunk,
                **options,
            )
            sent = await self.send(payload)
            if sent.success:
                result.total_recipients += sent.recipients
                if sent.notification_id:
                    result.notification_ids.append(sent.notification_id)
            else:
                result.success = False
                result.errors.append(sent.error or {})
        return result

    async def fetch_player(self, player_id: str) -> PlayerLookup:
        """GET one device record. Transport errors propagate as `httpx.HTTPError`."""

        response = await self._request(
            "GET",
            "players",
            f"{self.api_url}/players/{player_id}",
            params={"app_id": self.app_id},
        )
        player = None
        if response.is_success:
            try:
                player = response.json()
            except ValueError:
                player = None
            if not isinstance(player, dict):
                player = None
        return PlayerLookup(status_code=response.status_code, player=player)
