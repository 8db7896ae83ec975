"""Per-user policy chain.

Checks run in a fixed order and stop at the first suppression:
rollout -> preference -> quiet hours -> cooldown -> league mute.
Cooldown and mute lookups fail open; a broken store must not silence users.
"""

import struct
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Mapping

from totlpush.catalog.catalog import CatalogEntry
from totlpush.common.concurrency import run_blocking
from totlpush.common.config import settings
from totlpush.common.logging import logger
from totlpush.common.metrics import policy_fail_open_total
from totlpush.services.dispatcher.schemas import NotificationResult


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    suppression_reason: NotificationResult | None = None


ALLOW = PolicyDecision(allowed=True)


@dataclass(frozen=True)
class PolicyOptions:
    skip_preference_check: bool = False
    skip_cooldown_check: bool = False
    league_id: str | None = None


def _suppress(reason: NotificationResult) -> PolicyDecision:
    return PolicyDecision(allowed=False, suppression_reason=reason)


def rollout_bucket(user_id: str) -> int:
    """Stable 0..99 bucket: 32-bit signed `h = h * 31 + unit` over UTF-16 units."""

    encoded = user_id.encode("utf-16-le")
    h = 0
    for (unit,) in struct.iter_unpack("<H", encoded):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % 100


def check_rollout(user_id: str, entry: CatalogEntry) -> PolicyDecision:
    if not entry.rollout.enabled:
        return _suppress(NotificationResult.SUPPRESSED_ROLLOUT)
    if entry.rollout.percentage >= 100:
        return ALLOW
    if rollout_bucket(user_id) < entry.rollout.percentage:
        return ALLOW
    return _suppress(NotificationResult.SUPPRESSED_ROLLOUT)


def check_preference(user_prefs: Mapping[str, Any] | None, entry: CatalogEntry) -> PolicyDecision:
    """Explicit False suppresses; a missing key falls back to the catalog default."""

    pref_key = entry.preferences.preference_key
    if not pref_key:
        return ALLOW
    if not user_prefs or pref_key not in user_prefs:
        if entry.preferences.default:
            return ALLOW
        return _suppress(NotificationResult.SUPPRESSED_PREFERENCE)
    if user_prefs[pref_key] is False:
        return _suppress(NotificationResult.SUPPRESSED_PREFERENCE)
    return ALLOW


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_quiet_window(now: time, start: time, end: time) -> bool:
    if start > end:
        return now >= start or now < end
    return start <= now < end


def check_quiet_hours(entry: CatalogEntry, now: datetime) -> PolicyDecision:
    """Quiet hours are evaluated on the UTC clock, not the user's local time."""

    start, end = entry.quiet_hours.start, entry.quiet_hours.end
    if not start or not end:
        return ALLOW
    current = now.astimezone(timezone.utc).time().replace(second=0, microsecond=0)
    if in_quiet_window(current, _parse_hhmm(start), _parse_hhmm(end)):
        return _suppress(NotificationResult.SUPPRESSED_QUIET_HOURS)
    return ALLOW


class PolicyChain:
    """Runs the ordered checks for one user; store lookups are injected."""

    def __init__(
        self,
        ledger,
        mutes,
        clock: Callable[[], datetime],
        store_timeout: float | None = None,
        service_name: str | None = None,
    ) -> None:
        self.ledger = ledger
        self.mutes = mutes
        self.clock = clock
        self.store_timeout = settings.store_timeout_seconds if store_timeout is None else store_timeout
        self.service_name = service_name or settings.service_name

    def _fail_open(self, check: str, user_id: str, exc: BaseException) -> PolicyDecision:
        policy_fail_open_total.labels(service=self.service_name, check=check).inc()
        logger.warning("policy check failed open check=%s user_id=%s error=%r", check, user_id, exc)
        return ALLOW

    async def check_cooldown(self, user_id: str, entry: CatalogEntry) -> PolicyDecision:
        seconds = entry.cooldown.per_user_seconds
        if seconds <= 0:
            return ALLOW
        since = self.clock() - timedelta(seconds=seconds)
        try:
            recent = await run_blocking(
                self.ledger.has_recent_accepted,
                entry.notification_key,
                user_id,
                since,
                timeout=self.store_timeout,
            )
        except Exception as exc:
            return self._fail_open("cooldown", user_id, exc)
        if recent:
            return _suppress(NotificationResult.SUPPRESSED_COOLDOWN)
        return ALLOW

    async def check_league_mute(self, user_id: str, league_id: str | None) -> PolicyDecision:
        if not league_id:
            return ALLOW
        try:
            muted = await run_blocking(self.mutes.is_muted, user_id, league_id, timeout=self.store_timeout)
        except Exception as exc:
            return self._fail_open("league_mute", user_id, exc)
        if muted:
            return _suppress(NotificationResult.SUPPRESSED_MUTED)
        return ALLOW

    async def evaluate(
        self,
        user_id: str,
        entry: CatalogEntry,
        user_prefs: Mapping[str, Any] | None,
        options: PolicyOptions = PolicyOptions(),
    ) -> PolicyDecision:
        decision = check_rollout(user_id, entry)
        if not decision.allowed:
            return decision

        if not options.skip_preference_check:
            decision = check_preference(user_prefs, entry)
            if not decision.allowed:
                return decision

        decision = check_quiet_hours(entry, self.clock())
        if not decision.allowed:
            return decision

        if not options.skip_cooldown_check:
            decision = await self.check_cooldown(user_id, entry)
            if not decision.allowed:
                return decision

        return await self.check_league_mute(user_id, options.league_id)
