"""Notification dispatcher.

Drives each recipient through claim -> policy -> target -> send -> finalize
with bounded concurrency. Every user gets exactly one `DispatchResult`; no
per-user failure aborts the batch.
"""

import asyncio
import json
import time
from typing import Any

from totlpush.catalog.catalog import CatalogEntry, NotificationCatalog, format_template
from totlpush.common.concurrency import run_blocking
from totlpush.common.config import settings
from totlpush.common.events import EventEnvelope, consume_forever
from totlpush.common.logging import logger
from totlpush.common.metrics import dispatch_duration_seconds, notifications_dispatched_total
from totlpush.common.tracing import tracer
from totlpush.services.dispatcher.errors import (
    DispatchConfigurationError,
    ProviderNotConfiguredError,
    UnknownNotificationError,
)
from totlpush.services.dispatcher.onesignal import OneSignalPayload, SendResult, create_payload_summary
from totlpush.services.dispatcher.policy import PolicyOptions, check_quiet_hours
from totlpush.services.dispatcher.schemas import (
    BatchDispatchResult,
    DispatchResult,
    NotificationIntent,
    NotificationResult,
    TargetType,
)
from totlpush.services.dispatcher.targeting import PushTarget, summarize_target


DEFAULT_BODY = "You have a new notification"


def _error_text(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    return json.dumps(error, default=str, sort_keys=True)


def default_title(notification_key: str) -> str:
    return " ".join(part.capitalize() for part in notification_key.split("-") if part)


def payload_data(intent: NotificationIntent) -> dict[str, Any]:
    # The app routes taps on `type`, so caller data never overrides it.
    return {**intent.data, "type": intent.notification_key}


def build_message(entry: CatalogEntry, intent: NotificationIntent) -> tuple[str, str, str | None]:
    """Resolve title, body and deep link for one intent."""

    params = intent.template_params
    title = intent.title
    if not title and entry.templates.title_format:
        title = format_template(entry.templates.title_format, params)
    body = intent.body
    if not body and entry.templates.body_format:
        body = format_template(entry.templates.body_format, params)

    url = intent.url
    if not url and entry.deep_links.url_format:
        candidate = format_template(entry.deep_links.url_format, {**params, **intent.grouping_params})
        # An unresolved placeholder would ship a broken link.
        if "{" not in candidate:
            url = candidate
    return title or default_title(entry.notification_key), body or DEFAULT_BODY, url


class NotificationDispatcher:
    """Turns intents into at most one push per (notification, event, user)."""

    def __init__(
        self,
        catalog: NotificationCatalog,
        ledger,
        preferences,
        policy,
        resolver,
        provider,
        concurrency: int | None = None,
        store_timeout: float | None = None,
        broadcast_segment: str | None = None,
        service_name: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.preferences = preferences
        self.policy = policy
        self.resolver = resolver
        self.provider = provider
        self.concurrency = max(1, concurrency or settings.dispatch_concurrency)
        self.store_timeout = settings.store_timeout_seconds if store_timeout is None else store_timeout
        self.broadcast_segment = broadcast_segment or settings.broadcast_segment
        self.service_name = service_name or settings.service_name

    async def _store(self, func, *args: Any, **kwargs: Any) -> Any:
        return await run_blocking(func, *args, timeout=self.store_timeout, **kwargs)

    def _entry_for(self, intent: NotificationIntent) -> CatalogEntry:
        entry = self.catalog.lookup(intent.notification_key)
        if entry is None:
            raise UnknownNotificationError(intent.notification_key)
        return entry

    def _disabled_batch(self, intent: NotificationIntent, user_ids: list[str | None]) -> BatchDispatchResult:
        logger.info(
            "notification disabled notification_key=%s event_id=%s users=%s",
            intent.notification_key,
            intent.event_id,
            len(user_ids),
        )
        return BatchDispatchResult.from_user_results(
            intent.notification_key,
            intent.event_id,
            [
                DispatchResult(
                    user_id=user_id,
                    result=NotificationResult.SUPPRESSED_ROLLOUT,
                    reason="notification type disabled",
                )
                for user_id in user_ids
            ],
        )

    def _record(self, batch: BatchDispatchResult, started: float) -> None:
        counts = batch.results.model_dump()
        for result, count in counts.items():
            if count:
                notifications_dispatched_total.labels(
                    service=self.service_name,
                    notification_key=batch.notification_key,
                    result=result,
                ).inc(count)
        dispatch_duration_seconds.labels(
            service=self.service_name,
            notification_key=batch.notification_key,
        ).observe(max(0.0, time.perf_counter() - started))
        summary = " ".join(f"{result}={count}" for result, count in counts.items() if count)
        logger.info(
            "dispatch complete notification_key=%s event_id=%s total=%s %s errors=%s",
            batch.notification_key,
            batch.event_id,
            batch.total_users,
            summary,
            len(batch.errors),
        )

    async def _load_preferences(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        try:
            return await self._store(self.preferences.load, user_ids)
        except Exception as exc:
            logger.error("preference load failed, using catalog defaults users=%s error=%r", len(user_ids), exc)
            return {}

    async def _finalize(
        self,
        log_id: str,
        user_id: str | None,
        result: NotificationResult,
        errors: list[dict[str, Any]],
        reason: str | None = None,
        error: Any = None,
        notification_id: str | None = None,
        **fields: Any,
    ) -> DispatchResult:
        """Write the terminal result; a store failure turns the user into `failed`."""

        if error is not None:
            fields["error"] = error if isinstance(error, dict) else {"message": _error_text(error)}
        if notification_id:
            fields["onesignal_notification_id"] = notification_id
        try:
            await self._store(self.ledger.update, log_id, result, **fields)
        except Exception as exc:
            logger.error("send log update failed log_id=%s result=%s error=%r", log_id, result.value, exc)
            message = f"send log update failed: {_error_text(exc)}"
            errors.append({"user_id": user_id, "error": message})
            return DispatchResult(
                user_id=user_id,
                result=NotificationResult.FAILED,
                onesignal_notification_id=notification_id,
                error=message,
            )
        return DispatchResult(
            user_id=user_id,
            result=result,
            onesignal_notification_id=notification_id,
            error=_error_text(error) if error is not None else None,
            reason=reason,
        )

    async def _finish_send(
        self,
        log_id: str,
        user_id: str | None,
        payload: OneSignalPayload,
        sent: SendResult,
        targeting_summary: dict[str, Any],
        errors: list[dict[str, Any]],
        target: PushTarget | None = None,
    ) -> DispatchResult:
        fields = {
            "target_type": payload.target_type,
            "targeting_summary": targeting_summary,
            "payload_summary": create_payload_summary(payload),
        }
        if target is not None and target.external_id:
            fields["external_id"] = target.external_id

        if sent.success:
            return await self._finalize(
                log_id, user_id, NotificationResult.ACCEPTED, errors, notification_id=sent.notification_id, **fields
            )
        if sent.is_unsubscribed and target is not None:
            await self.resolver.mark_unsubscribed(target, invalid=False, source="send")
            return await self._finalize(
                log_id,
                user_id,
                NotificationResult.SUPPRESSED_UNSUBSCRIBED,
                errors,
                reason="provider reports no subscribed devices",
                error=sent.error,
                **fields,
            )
        errors.append({"user_id": user_id, "error": sent.error})
        return await self._finalize(log_id, user_id, NotificationResult.FAILED, errors, error=sent.error, **fields)

    async def _dispatch_user(
        self,
        entry: CatalogEntry,
        intent: NotificationIntent,
        user_id: str,
        user_prefs: dict[str, Any] | None,
        errors: list[dict[str, Any]],
    ) -> DispatchResult:
        log_id = None
        try:
            try:
                claim = await self._store(self.ledger.claim, intent.notification_key, intent.event_id, user_id)
            except Exception as exc:
                logger.error("send log claim failed user_id=%s error=%r", user_id, exc)
                message = f"claim failed: {_error_text(exc)}"
                errors.append({"user_id": user_id, "error": message})
                return DispatchResult(user_id=user_id, result=NotificationResult.FAILED, error=message)
            if not claim.claimed:
                return DispatchResult(
                    user_id=user_id,
                    result=NotificationResult.SUPPRESSED_DUPLICATE,
                    reason=f"already {claim.existing_result}" if claim.existing_result else "already claimed",
                )
            log_id = claim.log_id

            decision = await self.policy.evaluate(
                user_id,
                entry,
                user_prefs,
                PolicyOptions(
                    skip_preference_check=intent.skip_preference_check,
                    skip_cooldown_check=intent.skip_cooldown_check,
                    league_id=intent.league_id,
                ),
            )
            if not decision.allowed:
                return await self._finalize(log_id, user_id, decision.suppression_reason, errors)

            target = await self._store(self.resolver.resolve, user_id)
            if target is None:
                return await self._finalize(
                    log_id, user_id, NotificationResult.SUPPRESSED_UNSUBSCRIBED, errors, reason="no active subscription"
                )
            if not await self.resolver.verify(target):
                return await self._finalize(
                    log_id,
                    user_id,
                    NotificationResult.SUPPRESSED_UNSUBSCRIBED,
                    errors,
                    reason="device not subscribed at provider",
                    external_id=target.external_id,
                    target_type=target.target_type,
                    targeting_summary=summarize_target(target),
                )

            title, body, url = build_message(entry, intent)
            payload = self.provider.build_payload(
                entry,
                title,
                body,
                data=payload_data(intent),
                url=url,
                grouping_params=intent.grouping_params,
                badge_count=intent.badge_count,
                **target.send_kwargs(),
            )
            sent = await self.provider.send(payload)
            return await self._finish_send(log_id, user_id, payload, sent, summarize_target(target), errors, target)
        except Exception as exc:
            logger.exception("dispatch failed user_id=%s", user_id)
            message = _error_text(exc)
            errors.append({"user_id": user_id, "error": message})
            if log_id is not None:
                try:
                    await self._store(self.ledger.update, log_id, NotificationResult.FAILED, error={"message": message})
                except Exception as update_exc:
                    logger.error("best-effort failed write lost log_id=%s error=%r", log_id, update_exc)
            return DispatchResult(user_id=user_id, result=NotificationResult.FAILED, error=message)

    async def dispatch(self, intent: NotificationIntent) -> BatchDispatchResult:
        """Dispatch one intent to its listed users.

        Raises `DispatchConfigurationError` before any send-log write when the
        key is unknown or provider credentials are missing.
        """

        started = time.perf_counter()
        entry = self._entry_for(intent)
        if not self.catalog.is_enabled(intent.notification_key):
            batch = self._disabled_batch(intent, list(intent.user_ids))
            self._record(batch, started)
            return batch
        if not self.provider.is_configured:
            raise ProviderNotConfiguredError()

        with tracer.start_as_current_span("notification.dispatch") as span:
            span.set_attribute("notification.key", intent.notification_key)
            span.set_attribute("notification.users", len(intent.user_ids))
            prefs = await self._load_preferences(list(intent.user_ids))
            semaphore = asyncio.Semaphore(self.concurrency)
            errors: list[dict[str, Any]] = []

            async def run(user_id: str) -> DispatchResult:
                async with semaphore:
                    return await self._dispatch_user(entry, intent, user_id, prefs.get(user_id), errors)

            user_results = await asyncio.gather(*(run(user_id) for user_id in intent.user_ids))

        batch = BatchDispatchResult.from_user_results(
            intent.notification_key, intent.event_id, list(user_results), errors
        )
        self._record(batch, started)
        return batch

    async def dispatch_broadcast(self, intent: NotificationIntent) -> BatchDispatchResult:
        """Send to the configured segment under one global claim.

        With explicit `user_ids` this is a plain `dispatch`. Per-user policy
        (preference, cooldown, mute, rollout percentage) cannot apply to a
        segment send; only the type switch and quiet hours do.
        """

        if intent.user_ids:
            return await self.dispatch(intent)

        started = time.perf_counter()
        entry = self._entry_for(intent)
        if not self.catalog.is_enabled(intent.notification_key):
            batch = self._disabled_batch(intent, [None])
            self._record(batch, started)
            return batch
        if not self.provider.is_configured:
            raise ProviderNotConfiguredError()

        errors: list[dict[str, Any]] = []
        result = await self._dispatch_segment(entry, intent, errors)
        batch = BatchDispatchResult.from_user_results(intent.notification_key, intent.event_id, [result], errors)
        self._record(batch, started)
        return batch

    async def _dispatch_segment(
        self, entry: CatalogEntry, intent: NotificationIntent, errors: list[dict[str, Any]]
    ) -> DispatchResult:
        log_id = None
        try:
            try:
                claim = await self._store(self.ledger.claim, intent.notification_key, intent.event_id, None)
            except Exception as exc:
                message = f"claim failed: {_error_text(exc)}"
                logger.error("broadcast claim failed error=%r", exc)
                errors.append({"user_id": None, "error": message})
                return DispatchResult(user_id=None, result=NotificationResult.FAILED, error=message)
            if not claim.claimed:
                return DispatchResult(
                    user_id=None, result=NotificationResult.SUPPRESSED_DUPLICATE, reason="broadcast already claimed"
                )
            log_id = claim.log_id

            decision = check_quiet_hours(entry, self.policy.clock())
            if not decision.allowed:
                return await self._finalize(log_id, None, decision.suppression_reason, errors)

            title, body, url = build_message(entry, intent)
            segments = [self.broadcast_segment]
            payload = self.provider.build_payload(
                entry,
                title,
                body,
                segments=segments,
                data=payload_data(intent),
                url=url,
                grouping_params=intent.grouping_params,
                badge_count=intent.badge_count,
            )
            sent = await self.provider.send(payload)
            summary = {"target_type": TargetType.SEGMENT.value, "segments": segments}
            return await self._finish_send(log_id, None, payload, sent, summary, errors)
        except Exception as exc:
            logger.exception("broadcast failed notification_key=%s", intent.notification_key)
            message = _error_text(exc)
            errors.append({"user_id": None, "error": message})
            if log_id is not None:
                try:
                    await self._store(self.ledger.update, log_id, NotificationResult.FAILED, error={"message": message})
                except Exception as update_exc:
                    logger.error("best-effort failed write lost log_id=%s error=%r", log_id, update_exc)
            return DispatchResult(user_id=None, result=NotificationResult.FAILED, error=message)

    async def handle_intent_event(self, event: EventEnvelope) -> BatchDispatchResult | None:
        """Kafka entry point: one envelope carries one intent."""

        intent = NotificationIntent.model_validate(event.payload)
        try:
            if intent.user_ids:
                return await self.dispatch(intent)
            return await self.dispatch_broadcast(intent)
        except DispatchConfigurationError as exc:
            logger.error(
                "intent rejected event_id=%s notification_key=%s error=%s",
                event.event_id,
                intent.notification_key,
                exc,
            )
            return None

    async def start_consumers(self) -> None:
        await consume_forever(settings.intent_topic, settings.intent_consumer_group, self.handle_intent_event)
