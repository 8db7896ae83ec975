"""Insert-first claim ledger over `notification_send_log`.

At-most-once rests entirely on the partial unique indexes: whoever inserts the
`pending` row for a key owns that (notification, event, user) forever. The
pre-check select only saves a round trip for the common duplicate case.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from totlpush.common.logging import logger
from totlpush.common.state_machine import validate_transition
from totlpush.services.dispatcher.models import SendLog


UPDATABLE_FIELDS = frozenset(
    {
        "external_id",
        "onesignal_notification_id",
        "target_type",
        "targeting_summary",
        "payload_summary",
        "error",
    }
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    log_id: str | None = None
    existing_result: str | None = None


class SendLedger:
    """Claims and finalizes send-log rows for one environment."""

    def __init__(
        self,
        session_factory,
        environment: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.environment = environment
        self.clock = clock

    def _key_filter(self, notification_key: str, event_id: str, user_id: str | None) -> list:
        user_clause = SendLog.user_id.is_(None) if user_id is None else SendLog.user_id == user_id
        return [
            SendLog.environment == self.environment,
            SendLog.notification_key == notification_key,
            SendLog.event_id == event_id,
            user_clause,
        ]

    def claim(self, notification_key: str, event_id: str, user_id: str | None) -> ClaimResult:
        """Try to become the single sender for this key.

        Returns `claimed=False` when a row already exists or a concurrent
        insert wins the unique index. Other store errors propagate.
        """

        with self.session_factory() as db:
            existing = db.execute(
                select(SendLog.id, SendLog.result).where(*self._key_filter(notification_key, event_id, user_id))
            ).first()
            if existing is not None:
                return ClaimResult(claimed=False, log_id=existing.id, existing_result=existing.result)

            now = self.clock()
            row = SendLog(
                id=str(uuid4()),
                environment=self.environment,
                notification_key=notification_key,
                event_id=event_id,
                user_id=user_id,
                result="pending",
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "claim lost to concurrent insert notification_key=%s event_id=%s user_id=%s",
                    notification_key,
                    event_id,
                    user_id,
                )
                return ClaimResult(claimed=False)
            return ClaimResult(claimed=True, log_id=row.id)

    def update(self, log_id: str, result: Any, **fields: Any) -> bool:
        """Move a pending row to its terminal result exactly once.

        A second update for the same row changes nothing; it is logged and
        reported as `False` rather than raised.
        """

        new_result = getattr(result, "value", result)
        validate_transition("pending", new_result)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown send-log fields: {sorted(unknown)}")

        with self.session_factory() as db:
            outcome = db.execute(
                update(SendLog)
                .where(SendLog.id == log_id, SendLog.result == "pending")
                .values(result=new_result, updated_at=self.clock(), **fields)
            )
            changed = outcome.rowcount
            db.commit()
        if changed != 1:
            logger.error("send log not pending, update ignored log_id=%s result=%s", log_id, new_result)
            return False
        return True

    def has_recent_accepted(self, notification_key: str, user_id: str, since: datetime) -> bool:
        with self.session_factory() as db:
            row = db.execute(
                select(SendLog.id)
                .where(
                    SendLog.environment == self.environment,
                    SendLog.notification_key == notification_key,
                    SendLog.user_id == user_id,
                    SendLog.result == "accepted",
                    SendLog.created_at >= since,
                )
                .limit(1)
            ).first()
        return row is not None

    def stats_since(self, since: datetime) -> list[dict[str, Any]]:
        """Counts by (notification_key, result) for rows created since `since`."""

        with self.session_factory() as db:
            rows = db.execute(
                select(SendLog.notification_key, SendLog.result, func.count(SendLog.id))
                .where(SendLog.environment == self.environment, SendLog.created_at >= since)
                .group_by(SendLog.notification_key, SendLog.result)
                .order_by(SendLog.notification_key, SendLog.result)
            ).all()
        return [{"notification_key": key, "result": result, "count": count} for key, result, count in rows]

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[SendLog]:
        """Rows still `pending` past `older_than`: crashed or timed-out dispatches."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(SendLog)
                    .where(
                        SendLog.environment == self.environment,
                        SendLog.result == "pending",
                        SendLog.created_at < older_than,
                    )
                    .order_by(SendLog.created_at)
                    .limit(limit)
                ).scalars()
            )
