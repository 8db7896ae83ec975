"""Policy chain: ordering, rollout hashing, quiet hours and fail-open lookups."""

import asyncio
import time
from datetime import datetime, timezone

import pytest
from prometheus_client import REGISTRY

from totlpush.services.dispatcher.policy import (
    PolicyChain,
    PolicyOptions,
    check_preference,
    check_quiet_hours,
    check_rollout,
    rollout_bucket,
)
from totlpush.services.dispatcher.schemas import NotificationResult

from conftest import START, FixedClock, catalog_with


class StubLedger:
    def __init__(self, recent=False, error=None, delay=0.0):
        self.recent = recent
        self.error = error
        self.delay = delay
        self.calls = []

    def has_recent_accepted(self, notification_key, user_id, since):
        self.calls.append((notification_key, user_id, since))
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.recent


class StubMutes:
    def __init__(self, muted=False, error=None):
        self.muted = muted
        self.error = error
        self.calls = []

    def is_muted(self, user_id, league_id):
        self.calls.append((user_id, league_id))
        if self.error:
            raise self.error
        return self.muted


def _fail_open_count(check: str) -> float:
    value = REGISTRY.get_sample_value(
        "policy_fail_open_total", {"service": "notification-dispatcher", "check": check}
    )
    return value or 0.0


def _at(hour: int, minute: int) -> datetime:
    return datetime(2026, 10, 17, hour, minute, tzinfo=timezone.utc)


def test_rollout_bucket_matches_reference_values():
    assert rollout_bucket("a") == 97
    assert rollout_bucket("ab") == 5
    assert rollout_bucket("user-123") == 72
    # 32-bit overflow to Integer.MIN_VALUE.
    assert rollout_bucket("polygenelubricants") == 48


def test_rollout_is_deterministic_and_converges(catalog):
    partial = catalog_with(catalog, "goal-scored", rollout={"percentage": 30}).lookup("goal-scored")
    users = [f"user-{i}" for i in range(10_000)]

    first = [check_rollout(user, partial).allowed for user in users]
    second = [check_rollout(user, partial).allowed for user in users]

    assert first == second
    assert 0.28 <= sum(first) / len(users) <= 0.32


def test_rollout_edges(catalog):
    full = catalog.lookup("goal-scored")
    zero = catalog_with(catalog, "goal-scored", rollout={"percentage": 0}).lookup("goal-scored")
    off = catalog_with(catalog, "goal-scored", rollout={"enabled": False}).lookup("goal-scored")

    assert check_rollout("anyone", full).allowed
    assert check_rollout("anyone", zero).suppression_reason == NotificationResult.SUPPRESSED_ROLLOUT
    assert check_rollout("anyone", off).suppression_reason == NotificationResult.SUPPRESSED_ROLLOUT


@pytest.mark.parametrize("hour,minute", [(23, 30), (0, 0), (6, 59), (23, 0)])
def test_overnight_quiet_hours_suppress(catalog, hour, minute):
    decision = check_quiet_hours(catalog.lookup("chat-message"), _at(hour, minute))

    assert decision.suppression_reason == NotificationResult.SUPPRESSED_QUIET_HOURS


@pytest.mark.parametrize("hour,minute", [(7, 0), (12, 0), (22, 59)])
def test_overnight_quiet_hours_allow(catalog, hour, minute):
    assert check_quiet_hours(catalog.lookup("chat-message"), _at(hour, minute)).allowed


def test_same_day_quiet_window(catalog):
    entry = catalog_with(catalog, "kickoff", quiet_hours={"start": "09:00", "end": "17:00"}).lookup("kickoff")

    assert not check_quiet_hours(entry, _at(9, 0)).allowed
    assert not check_quiet_hours(entry, _at(16, 59)).allowed
    assert check_quiet_hours(entry, _at(17, 0)).allowed
    assert check_quiet_hours(entry, _at(8, 59)).allowed


def test_no_quiet_hours_always_allows(catalog):
    assert check_quiet_hours(catalog.lookup("goal-scored"), _at(3, 0)).allowed


def test_preference_rules(catalog):
    entry = catalog.lookup("chat-message")

    assert check_preference(None, entry).allowed
    assert check_preference({}, entry).allowed
    assert check_preference({"other": False}, entry).allowed
    assert check_preference({"chat-messages": True}, entry).allowed
    assert check_preference({"chat-messages": "yes"}, entry).allowed
    assert (
        check_preference({"chat-messages": False}, entry).suppression_reason
        == NotificationResult.SUPPRESSED_PREFERENCE
    )


def test_preference_without_key_always_allows(catalog):
    entry = catalog.lookup("half-time")

    assert check_preference({"score-updates": False}, entry).allowed


def test_preference_default_false_suppresses_missing_key(catalog):
    entry = catalog_with(catalog, "new-gameweek", preferences={"default": False}).lookup("new-gameweek")

    assert check_preference(None, entry).suppression_reason == NotificationResult.SUPPRESSED_PREFERENCE
    assert check_preference({"other": True}, entry).suppression_reason == NotificationResult.SUPPRESSED_PREFERENCE
    assert check_preference({"new-gameweek": True}, entry).allowed


def test_chain_order_rollout_before_preference(catalog):
    entry = catalog_with(catalog, "chat-message", rollout={"enabled": False}).lookup("chat-message")
    chain = PolicyChain(StubLedger(), StubMutes(), clock=FixedClock(), store_timeout=1.0)

    decision = asyncio.run(chain.evaluate("u1", entry, {"chat-messages": False}))

    assert decision.suppression_reason == NotificationResult.SUPPRESSED_ROLLOUT


def test_chain_preference_before_quiet_hours(catalog):
    chain = PolicyChain(StubLedger(), StubMutes(), clock=FixedClock(_at(23, 30)), store_timeout=1.0)

    decision = asyncio.run(chain.evaluate("u1", catalog.lookup("chat-message"), {"chat-messages": False}))

    assert decision.suppression_reason == NotificationResult.SUPPRESSED_PREFERENCE


def test_chain_cooldown_uses_window_from_clock(catalog):
    ledger = StubLedger(recent=True)
    chain = PolicyChain(ledger, StubMutes(), clock=FixedClock(), store_timeout=1.0)

    decision = asyncio.run(chain.evaluate("u1", catalog.lookup("chat-message"), None))

    assert decision.suppression_reason == NotificationResult.SUPPRESSED_COOLDOWN
    key, user_id, since = ledger.calls[0]
    assert (key, user_id) == ("chat-message", "u1")
    assert (START - since).total_seconds() == 30


def test_chain_skips_cooldown_when_not_configured_or_skipped(catalog):
    ledger = StubLedger(recent=True)
    chain = PolicyChain(ledger, StubMutes(), clock=FixedClock(), store_timeout=1.0)

    assert asyncio.run(chain.evaluate("u1", catalog.lookup("goal-scored"), None)).allowed
    skipped = asyncio.run(
        chain.evaluate("u1", catalog.lookup("chat-message"), None, PolicyOptions(skip_cooldown_check=True))
    )
    assert skipped.allowed
    assert ledger.calls == []


def test_cooldown_lookup_error_fails_open(catalog):
    before = _fail_open_count("cooldown")
    chain = PolicyChain(StubLedger(error=RuntimeError("db down")), StubMutes(), clock=FixedClock(), store_timeout=1.0)

    decision = asyncio.run(chain.evaluate("u1", catalog.lookup("chat-message"), None))

    assert decision.allowed
    assert _fail_open_count("cooldown") == before + 1


def test_cooldown_lookup_timeout_fails_open(catalog):
    chain = PolicyChain(StubLedger(recent=True, delay=0.3), StubMutes(), clock=FixedClock(), store_timeout=0.05)

    decision = asyncio.run(chain.evaluate("u1", catalog.lookup("chat-message"), None))

    assert decision.allowed


def test_league_mute(catalog):
    mutes = StubMutes(muted=True)
    chain = PolicyChain(StubLedger(), mutes, clock=FixedClock(), store_timeout=1.0)
    entry = catalog.lookup("chat-message")

    muted = asyncio.run(chain.evaluate("u1", entry, None, PolicyOptions(league_id="L1")))
    no_league = asyncio.run(chain.evaluate("u1", entry, None))

    assert muted.suppression_reason == NotificationResult.SUPPRESSED_MUTED
    assert no_league.allowed
    assert mutes.calls == [("u1", "L1")]


def test_league_mute_error_fails_open(catalog):
    before = _fail_open_count("league_mute")
    chain = PolicyChain(StubLedger(), StubMutes(error=RuntimeError("boom")), clock=FixedClock(), store_timeout=1.0)

    decision = asyncio.run(chain.evaluate("u1", catalog.lookup("chat-message"), None, PolicyOptions(league_id="L1")))

    assert decision.allowed
    assert _fail_open_count("league_mute") == before + 1


def test_skip_preference_check(catalog):
    chain = PolicyChain(StubLedger(), StubMutes(), clock=FixedClock(), store_timeout=1.0)

    decision = asyncio.run(
        chain.evaluate(
            "u1",
            catalog.lookup("goal-scored"),
            {"score-updates": False},
            PolicyOptions(skip_preference_check=True),
        )
    )

    assert decision.allowed
