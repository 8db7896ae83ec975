"""User -> device resolution and live subscription verification."""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx
from sqlalchemy import select, update

from totlpush.common.concurrency import run_blocking
from totlpush.common.config import settings
from totlpush.common.logging import logger
from totlpush.common.metrics import subscriptions_unsubscribed_total
from totlpush.services.dispatcher.models import (
    LeagueNotificationSetting,
    PushSubscription,
    UserNotificationPreferences,
)


@dataclass(frozen=True)
class PushTarget:
    user_id: str
    player_id: str
    external_id: str | None = None

    @property
    def target_type(self) -> str:
        return "external_user_ids" if self.external_id else "player_ids"

    def send_kwargs(self) -> dict[str, list[str]]:
        if self.external_id:
            return {"external_user_ids": [self.external_id]}
        return {"player_ids": [self.player_id]}


def token_fingerprint(player_id: str) -> str:
    return hashlib.sha256(player_id.encode("utf-8")).hexdigest()[:16]


def summarize_target(target: PushTarget) -> dict[str, Any]:
    """Targeting audit record; the device token is stored only as a hash."""

    return {
        "target_type": target.target_type,
        "target_count": 1,
        "player_id_hash": token_fingerprint(target.player_id),
        "has_external_id": bool(target.external_id),
    }


class SubscriptionRepository:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def list_active_for_user(self, user_id: str) -> list[PushSubscription]:
        """Active, subscribed, non-empty devices; newest first, ties by player_id."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PushSubscription)
                    .where(
                        PushSubscription.user_id == user_id,
                        PushSubscription.is_active.is_(True),
                        PushSubscription.subscribed.is_(True),
                        PushSubscription.player_id != "",
                    )
                    .order_by(PushSubscription.updated_at.desc(), PushSubscription.player_id)
                ).scalars()
            )

    def mark_unsubscribed(self, player_id: str, invalid: bool, checked_at: datetime) -> int:
        with self.session_factory() as db:
            outcome = db.execute(
                update(PushSubscription)
                .where(PushSubscription.player_id == player_id)
                .values(subscribed=False, invalid=invalid, last_checked_at=checked_at)
            )
            changed = outcome.rowcount
            db.commit()
        return changed


class PreferenceRepository:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def load(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Stored preference maps by user; users without a row are absent."""

        if not user_ids:
            return {}
        with self.session_factory() as db:
            rows = db.execute(
                select(UserNotificationPreferences.user_id, UserNotificationPreferences.preferences).where(
                    UserNotificationPreferences.user_id.in_(user_ids)
                )
            ).all()
        return {user_id: dict(prefs or {}) for user_id, prefs in rows}


class LeagueMuteRepository:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def is_muted(self, user_id: str, league_id: str) -> bool:
        with self.session_factory() as db:
            muted = db.execute(
                select(LeagueNotificationSetting.muted).where(
                    LeagueNotificationSetting.user_id == user_id,
                    LeagueNotificationSetting.league_id == league_id,
                )
            ).scalar_one_or_none()
        return bool(muted)


def player_is_subscribed(player: dict[str, Any] | None) -> bool:
    if not player:
        return False
    if not player.get("identifier") or player.get("invalid_identifier"):
        return False
    notification_types = player.get("notification_types")
    # null: the device is still registering; a valid token is enough to send.
    return notification_types is None or notification_types > 0


class TargetResolver:
    """Picks one device per user and confirms it with the provider."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        provider,
        clock: Callable[[], datetime],
        verify_enabled: bool | None = None,
        store_timeout: float | None = None,
        service_name: str | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.provider = provider
        self.clock = clock
        self.verify_enabled = settings.verify_subscriptions if verify_enabled is None else verify_enabled
        self.store_timeout = settings.store_timeout_seconds if store_timeout is None else store_timeout
        self.service_name = service_name or settings.service_name

    def resolve(self, user_id: str) -> PushTarget | None:
        rows = self.subscriptions.list_active_for_user(user_id)
        if not rows:
            return None
        row = rows[0]
        return PushTarget(user_id=user_id, player_id=row.player_id, external_id=row.external_id or None)

    async def mark_unsubscribed(self, target: PushTarget, invalid: bool, source: str) -> None:
        """Corrective write-back; failures are logged and swallowed."""

        try:
            await run_blocking(
                self.subscriptions.mark_unsubscribed,
                target.player_id,
                invalid=invalid,
                checked_at=self.clock(),
                timeout=self.store_timeout,
            )
        except Exception as exc:
            logger.error(
                "subscription write-back failed user_id=%s player_hash=%s error=%r",
                target.user_id,
                token_fingerprint(target.player_id),
                exc,
            )
            return
        subscriptions_unsubscribed_total.labels(service=self.service_name, source=source).inc()

    async def verify(self, target: PushTarget) -> bool:
        """Ask the provider whether the device can still receive pushes.

        Only a definitive answer marks the device unsubscribed. Anything else
        (transport error, 429, 5xx, unreadable body) counts as subscribed.
        """

        if not self.verify_enabled or not getattr(self.provider, "is_configured", False):
            return True
        try:
            lookup = await self.provider.fetch_player(target.player_id)
        except httpx.HTTPError as exc:
            logger.warning("subscription verify failed open user_id=%s error=%r", target.user_id, exc)
            return True

        if lookup.status_code == 429 or lookup.status_code >= 500:
            logger.warning(
                "subscription verify failed open user_id=%s status=%s", target.user_id, lookup.status_code
            )
            return True
        if lookup.status_code in (400, 404):
            await self.mark_unsubscribed(target, invalid=True, source="verify")
            return False
        if lookup.status_code >= 300:
            logger.warning(
                "subscription verify unexpected status user_id=%s status=%s", target.user_id, lookup.status_code
            )
            return True
        if lookup.player is None:
            logger.warning(
                "subscription verify failed open, unreadable player body user_id=%s status=%s",
                target.user_id,
                lookup.status_code,
            )
            return True
        if player_is_subscribed(lookup.player):
            return True
        invalid = bool(lookup.player.get("invalid_identifier"))
        await self.mark_unsubscribed(target, invalid=invalid, source="verify")
        return False
