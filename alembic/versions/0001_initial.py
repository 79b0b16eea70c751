"""Initial schema: scheduling, Google accounts and the sync queue

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-16

Tables:
- organizations, users: tenant and worker columns scheduling reads
- org_calendar_settings, working_hours: scheduling configuration
- events, event_workers, calendar_holds, time_off: busy truth
- google_calendar_accounts, google_oauth_states: per-worker Google connection
- sync_jobs, sync_job_attempts, sync_runs, sync_health_alerts: sync queue
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _org_fk() -> sa.Column:
    return sa.Column(
        "organization_id",
        UUID(as_uuid=True),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _user_fk(name: str, *, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        name,
        UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete=ondelete),
        nullable=nullable,
    )


def _ts(name: str, *, nullable: bool = False, default_now: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()") if default_now else None,
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "organizations",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "users",
        _id(),
        _org_fk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("calendar_role", sa.String(20), nullable=False, server_default="worker"),
        _ts("created_at"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    # =========================================================================
    # Scheduling configuration
    # =========================================================================
    op.create_table(
        "org_calendar_settings",
        _id(),
        sa.Column(
            "organization_id",
            UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("allow_overlaps", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_slot_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("default_untimed_start_hour", sa.Integer(), nullable=False, server_default="9"),
        sa.Column(
            "calendar_timezone",
            sa.String(64),
            nullable=False,
            server_default="America/Los_Angeles",
        ),
        sa.Column("week_starts_on", sa.Integer(), nullable=False, server_default="0"),
        _user_fk("round_robin_last_worker_id", nullable=True, ondelete="SET NULL"),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "working_hours",
        _id(),
        _org_fk(),
        _user_fk("worker_user_id"),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("is_working", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_minute", sa.Integer(), nullable=False),
        sa.Column("end_minute", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="America/Los_Angeles"),
        sa.UniqueConstraint(
            "organization_id", "worker_user_id", "day_of_week", name="uq_working_hours_day"
        ),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_working_hours_dow"),
        sa.CheckConstraint(
            "start_minute >= 0 AND end_minute <= 1440", name="ck_working_hours_minutes"
        ),
        sa.CheckConstraint(
            "NOT is_working OR end_minute > start_minute", name="ck_working_hours_window"
        ),
    )

    # =========================================================================
    # Events, holds, time off
    # =========================================================================
    op.create_table(
        "events",
        _id(),
        _org_fk(),
        sa.Column("lead_id", UUID(as_uuid=True), nullable=True),
        sa.Column("type", sa.String(30), nullable=False, server_default="job"),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("busy", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("all_day", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("address_line", sa.String(500), nullable=True),
        _ts("start_at", default_now=False),
        _ts("end_at", nullable=True, default_now=False),
        _user_fk("assigned_to_user_id", nullable=True, ondelete="SET NULL"),
        _user_fk("created_by_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column("provider", sa.String(20), nullable=False, server_default="local"),
        sa.Column("google_event_id", sa.String(1024), nullable=True),
        sa.Column("google_calendar_id", sa.String(1024), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="pending"),
        _ts("last_synced_at", nullable=True, default_now=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint(
            "organization_id",
            "google_calendar_id",
            "google_event_id",
            name="uq_events_google_ref",
        ),
    )
    op.create_index("idx_events_org_start", "events", ["organization_id", "start_at"])
    op.create_index("idx_events_assignee_start", "events", ["assigned_to_user_id", "start_at"])

    op.create_table(
        "event_workers",
        _id(),
        _org_fk(),
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("worker_user_id"),
        sa.UniqueConstraint("event_id", "worker_user_id", name="uq_event_worker"),
    )
    op.create_index("idx_event_workers_worker", "event_workers", ["worker_user_id"])

    op.create_table(
        "calendar_holds",
        _id(),
        _org_fk(),
        _user_fk("worker_user_id"),
        sa.Column("lead_id", UUID(as_uuid=True), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("address_line", sa.String(500), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _ts("start_at", default_now=False),
        _ts("end_at", default_now=False),
        _ts("expires_at", default_now=False),
        _user_fk("created_by_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column(
            "confirmed_event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "idx_holds_worker_status", "calendar_holds", ["worker_user_id", "status", "start_at"]
    )
    op.create_index(
        "idx_holds_lead_source",
        "calendar_holds",
        ["organization_id", "lead_id", "source", "status"],
    )

    op.create_table(
        "time_off",
        _id(),
        _org_fk(),
        _user_fk("worker_user_id"),
        _ts("start_at", default_now=False),
        _ts("end_at", default_now=False),
        sa.Column("reason", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint("end_at > start_at", name="ck_time_off_range"),
    )
    op.create_index("idx_time_off_worker_start", "time_off", ["worker_user_id", "start_at"])

    # =========================================================================
    # Google accounts
    # =========================================================================
    op.create_table(
        "google_calendar_accounts",
        _id(),
        _org_fk(),
        _user_fk("user_id"),
        sa.Column("google_email", sa.String(255), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        _ts("token_expires_at", nullable=True, default_now=False),
        sa.Column("scopes", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("write_calendar_id", sa.String(1024), nullable=True),
        sa.Column(
            "read_calendar_ids", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column(
            "block_availability_rules",
            JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("sync_status", sa.String(30), nullable=False, server_default="idle"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        _ts("last_sync_at", nullable=True, default_now=False),
        _ts("connected_at", nullable=True, default_now=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_google_account_org_user"),
    )
    op.create_index(
        "idx_google_accounts_due", "google_calendar_accounts", ["is_enabled", "last_sync_at"]
    )

    op.create_table(
        "google_oauth_states",
        _id(),
        _org_fk(),
        _user_fk("user_id"),
        sa.Column("state", sa.String(128), nullable=False, unique=True),
        sa.Column("redirect_uri", sa.String(1024), nullable=False),
        sa.Column("scopes", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("wants_write", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("expires_at", default_now=False),
        _ts("consumed_at", nullable=True, default_now=False),
        _ts("created_at"),
    )

    # =========================================================================
    # Sync queue
    # =========================================================================
    op.create_table(
        "sync_jobs",
        _id(),
        _org_fk(),
        _user_fk("user_id"),
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("payload", JSONB(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("backoff_ms", sa.Integer(), nullable=False, server_default="0"),
        _ts("run_after"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("idx_sync_jobs_due", "sync_jobs", ["status", "run_after", "created_at"])
    op.create_index("idx_sync_jobs_org", "sync_jobs", ["organization_id", "created_at"])
    op.create_index("idx_sync_jobs_event", "sync_jobs", ["event_id"])

    op.create_table(
        "sync_job_attempts",
        _id(),
        sa.Column(
            "job_id",
            UUID(as_uuid=True),
            sa.ForeignKey("sync_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _org_fk(),
        _user_fk("user_id"),
        sa.Column("event_id", UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("retryable", sa.Boolean(), nullable=True),
        sa.Column("backoff_ms", sa.Integer(), nullable=True),
        _ts("next_run_at", nullable=True, default_now=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("created_at"),
    )
    op.create_index("idx_sync_attempts_job", "sync_job_attempts", ["job_id", "created_at"])
    op.create_index(
        "idx_sync_attempts_status_created", "sync_job_attempts", ["status", "created_at"]
    )

    op.create_table(
        "sync_runs",
        _id(),
        sa.Column("source", sa.String(20), nullable=False, server_default="cron"),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        _user_fk("triggered_by_user_id", nullable=True, ondelete="SET NULL"),
        sa.Column("max_jobs", sa.Integer(), nullable=False),
        sa.Column("max_accounts", sa.Integer(), nullable=False),
        sa.Column("jobs_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accounts_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accounts_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accounts_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("started_at"),
        _ts("finished_at", nullable=True, default_now=False),
    )
    op.create_index("idx_sync_runs_source_started", "sync_runs", ["source", "started_at"])

    op.create_table(
        "sync_health_alerts",
        _id(),
        sa.Column("cron_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("queue_high", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_rate_high", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "metrics_snapshot", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        _ts("created_at"),
    )
    op.create_index("idx_sync_alerts_created", "sync_health_alerts", ["created_at"])


def downgrade() -> None:
    op.drop_table("sync_health_alerts")
    op.drop_table("sync_runs")
    op.drop_table("sync_job_attempts")
    op.drop_table("sync_jobs")
    op.drop_table("google_oauth_states")
    op.drop_table("google_calendar_accounts")
    op.drop_table("time_off")
    op.drop_table("calendar_holds")
    op.drop_table("event_workers")
    op.drop_table("events")
    op.drop_table("working_hours")
    op.drop_table("org_calendar_settings")
    op.drop_table("users")
    op.drop_table("organizations")
