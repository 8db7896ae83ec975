"""Request/response schemas for dispatcher entry points."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationResult(str, Enum):
    """Per-user outcome kinds; everything except PENDING is terminal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    FAILED = "failed"
    SUPPRESSED_DUPLICATE = "suppressed_duplicate"
    SUPPRESSED_PREFERENCE = "suppressed_preference"
    SUPPRESSED_COOLDOWN = "suppressed_cooldown"
    SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
    SUPPRESSED_MUTED = "suppressed_muted"
    SUPPRESSED_ROLLOUT = "suppressed_rollout"
    SUPPRESSED_UNSUBSCRIBED = "suppressed_unsubscribed"


class TargetType(str, Enum):
    EXTERNAL_USER_IDS = "external_user_ids"
    PLAYER_IDS = "player_ids"
    SEGMENT = "segment"
    FILTERS = "filters"


class NotificationIntent(BaseModel):
    """A caller's request to notify users about one event."""

    notification_key: str
    event_id: str = Field(min_length=1)
    user_ids: list[str] = Field(default_factory=list)
    title: str | None = None
    body: str | None = None
    template_params: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    grouping_params: dict[str, Any] = Field(default_factory=dict)
    skip_preference_check: bool = False
    skip_cooldown_check: bool = False
    league_id: str | None = None
    badge_count: int | None = Field(default=None, ge=0)


class DispatchResult(BaseModel):
    user_id: str | None
    result: NotificationResult
    onesignal_notification_id: str | None = None
    error: str | None = None
    reason: str | None = None


class ResultCounts(BaseModel):
    """Counts for every terminal kind (pending never appears in a batch)."""

    accepted: int = 0
    failed: int = 0
    suppressed_duplicate: int = 0
    suppressed_preference: int = 0
    suppressed_cooldown: int = 0
    suppressed_quiet_hours: int = 0
    suppressed_muted: int = 0
    suppressed_rollout: int = 0
    suppressed_unsubscribed: int = 0

    def add(self, result: NotificationResult) -> None:
        setattr(self, result.value, getattr(self, result.value) + 1)


class BatchDispatchResult(BaseModel):
    notification_key: str
    event_id: str
    total_users: int
    results: ResultCounts = Field(default_factory=ResultCounts)
    user_results: list[DispatchResult] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_user_results(
        cls,
        notification_key: str,
        event_id: str,
        user_results: list[DispatchResult],
        errors: list[dict[str, Any]] | None = None,
    ) -> "BatchDispatchResult":
        counts = ResultCounts()
        for item in user_results:
            counts.add(item.result)
        return cls(
            notification_key=notification_key,
            event_id=event_id,
            total_users=len(user_results),
            results=counts,
            user_results=user_results,
            errors=errors or [],
        )


class SendLogStatsRow(BaseModel):
    notification_key: str
    result: str
    count: int


class PendingRow(BaseModel):
    id: str
    notification_key: str
    event_id: str
    user_id: str | None
    created_at: str
