"""send log rows are never deleted; only pending rows may be updated

Revision ID: 0002_send_log_append_only
Revises: 0001_dispatcher
Create Date: 2026-10-17
"""

from alembic import op


revision = "0002_send_log_append_only"
down_revision = "0001_dispatcher"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_send_log_delete()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'notification_send_log is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_send_log_no_delete
        BEFORE DELETE ON notification_send_log
        FOR EACH ROW
        EXECUTE FUNCTION prevent_send_log_delete();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION guard_send_log_update()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.result <> 'pending' THEN
                RAISE EXCEPTION 'send log row % is already %', OLD.id, OLD.result;
            END IF;
            NEW.updated_at = now();
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_send_log_guard_update
        BEFORE UPDATE ON notification_send_log
        FOR EACH ROW
        EXECUTE FUNCTION guard_send_log_update();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE VIEW notification_send_stats AS
        SELECT environment, notification_key, result, date_trunc('hour', created_at) AS hour, count(*) AS sends
        FROM notification_send_log
        GROUP BY environment, notification_key, result, date_trunc('hour', created_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP VIEW IF EXISTS notification_send_stats;")
    op.execute("DROP TRIGGER IF EXISTS trg_send_log_guard_update ON notification_send_log;")
    op.execute("DROP FUNCTION IF EXISTS guard_send_log_update();")
    op.execute("DROP TRIGGER IF EXISTS trg_send_log_no_delete ON notification_send_log;")
    op.execute("DROP FUNCTION IF EXISTS prevent_send_log_delete();")
