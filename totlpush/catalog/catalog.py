"""Notification catalog: static per-type policy and template parameters.

The catalog is generated from the markdown sources under
`catalog_src/notifications` (see `totlpush.catalog.build`) and loaded once per
process. Entries are immutable at runtime.
"""

import json
import re
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from totlpush.common.config import settings


DEFAULT_CATALOG_PATH = Path(__file__).with_name("catalog.json")

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class CatalogTrigger(_Frozen):
    name: str
    event_id_format: str


class CatalogDedupe(_Frozen):
    """Informational only; enforcement lives in the send-log unique index."""

    scope: Literal["per_user_per_event", "per_league_per_gw", "global"] = "per_user_per_event"
    ttl_seconds: int = 0


class CatalogCooldown(_Frozen):
    per_user_seconds: int = 0


class CatalogQuietHours(_Frozen):
    start: str | None = Field(default=None, pattern=_HHMM)
    end: str | None = Field(default=None, pattern=_HHMM)


class CatalogPreferences(_Frozen):
    preference_key: str | None = None
    default: bool = True


class CatalogGrouping(_Frozen):
    """OneSignal grouping templates that collapse repeated on-device display."""

    collapse_id_format: str | None = None
    thread_id_format: str | None = None
    android_group_format: str | None = None


class CatalogDeepLinks(_Frozen):
    url_format: str | None = None


class CatalogRollout(_Frozen):
    enabled: bool = True
    percentage: int = Field(default=100, ge=0, le=100)


class CatalogTemplates(_Frozen):
    title_format: str | None = None
    body_format: str | None = None


class CatalogEntry(_Frozen):
    """One notification type."""

    notification_key: str
    owner: str
    status: Literal["active", "deprecated", "disabled"]
    channels: tuple[str, ...] = ("push",)
    audience: str = ""
    source: str | None = None
    trigger: CatalogTrigger
    dedupe: CatalogDedupe = CatalogDedupe()
    cooldown: CatalogCooldown = CatalogCooldown()
    quiet_hours: CatalogQuietHours = CatalogQuietHours()
    preferences: CatalogPreferences = CatalogPreferences()
    onesignal: CatalogGrouping = CatalogGrouping()
    deep_links: CatalogDeepLinks = CatalogDeepLinks()
    rollout: CatalogRollout = CatalogRollout()
    templates: CatalogTemplates = CatalogTemplates()


def format_template(template: str, params: Mapping[str, Any] | None) -> str:
    """Substitute `{name}` tokens from `params`.

    Unmatched placeholders are left untouched; this never raises.
    """

    if not params:
        return template

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in params and params[name] is not None:
            return str(params[name])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


class NotificationCatalog:
    """Read-only lookup over catalog entries keyed by notification_key."""

    def __init__(self, entries: Mapping[str, CatalogEntry]) -> None:
        self._entries = MappingProxyType(dict(entries))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NotificationCatalog":
        entries = {key: CatalogEntry.model_validate(value) for key, value in data.items()}
        for key, entry in entries.items():
            if entry.notification_key != key:
                raise ValueError(f"catalog key mismatch: {key} != {entry.notification_key}")
        return cls(entries)

    @classmethod
    def from_file(cls, path: str | Path) -> "NotificationCatalog":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    def lookup(self, notification_key: str) -> CatalogEntry | None:
        return self._entries.get(notification_key)

    def is_enabled(self, notification_key: str) -> bool:
        """True iff the type is active and its rollout is switched on."""

        entry = self._entries.get(notification_key)
        if entry is None:
            return False
        return entry.status == "active" and entry.rollout.enabled

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def entries(self) -> Mapping[str, CatalogEntry]:
        return self._entries

    def format_event_id(self, notification_key: str, params: Mapping[str, Any]) -> str | None:
        """Build a deterministic event id from the type's trigger template."""

        entry = self._entries.get(notification_key)
        if entry is None:
            return None
        return format_template(entry.trigger.event_id_format, params)


@lru_cache(maxsize=1)
def get_catalog() -> NotificationCatalog:
    """Load the configured catalog file once per process."""

    return NotificationCatalog.from_file(settings.catalog_path or DEFAULT_CATALOG_PATH)
