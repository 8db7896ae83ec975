"""Catalog loading, lookups and template formatting."""

import pytest
from pydantic import ValidationError

from totlpush.catalog.catalog import CatalogEntry, NotificationCatalog, format_template

from conftest import catalog_with


SHIPPED_KEYS = {
    "chat-message",
    "member-join",
    "final-submission",
    "final-whistle",
    "gameweek-complete",
    "goal-disallowed",
    "goal-scored",
    "half-time",
    "kickoff",
    "new-gameweek",
}


def test_shipped_catalog_has_all_notification_types(catalog):
    assert set(catalog.keys()) == SHIPPED_KEYS
    for key, entry in catalog.entries().items():
        assert entry.notification_key == key
        assert entry.channels == ("push",)


def test_chat_message_policy_parameters(catalog):
    entry = catalog.lookup("chat-message")

    assert entry.cooldown.per_user_seconds == 30
    assert (entry.quiet_hours.start, entry.quiet_hours.end) == ("23:00", "07:00")
    assert entry.preferences.preference_key == "chat-messages"
    assert entry.onesignal.collapse_id_format == "ml_updates:{league_id}"


def test_lookup_unknown_key_returns_none(catalog):
    assert catalog.lookup("does-not-exist") is None
    assert catalog.is_enabled("does-not-exist") is False
    assert catalog.format_event_id("does-not-exist", {"gw": 1}) is None


def test_is_enabled_requires_active_status_and_rollout(catalog):
    assert catalog.is_enabled("goal-scored") is True

    rolled_back = catalog_with(catalog, "goal-scored", rollout={"enabled": False})
    assert rolled_back.is_enabled("goal-scored") is False

    entries = dict(catalog.entries())
    entries["kickoff"] = entries["kickoff"].model_copy(update={"status": "deprecated"})
    assert NotificationCatalog(entries).is_enabled("kickoff") is False


def test_format_event_id_uses_trigger_template(catalog):
    event_id = catalog.format_event_id(
        "goal-scored", {"api_match_id": 4411, "scorer_normalized": "saka", "minute": 67}
    )

    assert event_id == "goal:4411:saka:67"


def test_format_template_replaces_every_occurrence():
    assert format_template("{a}-{a}-{b}", {"a": 1, "b": "x"}) == "1-1-x"


def test_format_template_leaves_unmatched_placeholders():
    assert format_template("league:{league_id}:{gw}", {"gw": 12}) == "league:{league_id}:12"
    assert format_template("league:{league_id}", None) == "league:{league_id}"
    assert format_template("value:{v}", {"v": None}) == "value:{v}"


def test_entry_validation_rejects_bad_quiet_hours_and_percentage(catalog):
    data = catalog.lookup("chat-message").model_dump(mode="json")

    with pytest.raises(ValidationError):
        CatalogEntry.model_validate({**data, "quiet_hours": {"start": "25:00", "end": "07:00"}})
    with pytest.raises(ValidationError):
        CatalogEntry.model_validate({**data, "rollout": {"enabled": True, "percentage": 150}})
    with pytest.raises(ValidationError):
        CatalogEntry.model_validate({**data, "status": "paused"})


def test_entries_are_immutable(catalog):
    entry = catalog.lookup("kickoff")

    with pytest.raises(ValidationError):
        entry.owner = "someone-else"
    with pytest.raises(TypeError):
        catalog.entries()["kickoff"] = entry


def test_from_dict_rejects_mismatched_keys(catalog):
    data = catalog.lookup("kickoff").model_dump(mode="json")

    with pytest.raises(ValueError):
        NotificationCatalog.from_dict({"half-time": data})
