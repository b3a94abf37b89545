"""Initial schema: all 8 Rapport tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("nickname", sa.String, nullable=False),
        sa.Column("gender", sa.String, nullable=False, comment="male / female"),
        sa.Column("birth_year", sa.Integer, nullable=False),
        sa.Column("location", sa.String, nullable=False),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column(
            "is_profile_complete",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "notification_settings",
            postgresql.JSONB,
            nullable=True,
            comment="Per-category push preferences",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # ── 2. scenarios (reference table) ──────────────────────────────
    op.create_table(
        "scenarios",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("category", sa.String, nullable=False),
        sa.Column("display_order", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
    )

    # ── 3. scenario_options ─────────────────────────────────────────
    op.create_table(
        "scenario_options",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "scenario_id",
            sa.Integer,
            sa.ForeignKey("scenarios.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("option_code", sa.String, nullable=False),
        sa.Column("option_text", sa.Text, nullable=False),
        sa.Column("display_order", sa.Integer, nullable=False),
        sa.Column(
            "personality_vector",
            postgresql.JSONB,
            nullable=True,
            comment="trait name -> weight",
        ),
    )

    # ── 4. user_scenario_responses ──────────────────────────────────
    op.create_table(
        "user_scenario_responses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "scenario_id",
            sa.Integer,
            sa.ForeignKey("scenarios.id"),
            nullable=False,
        ),
        sa.Column(
            "selected_option_id",
            sa.Integer,
            sa.ForeignKey("scenario_options.id"),
            nullable=False,
        ),
        sa.Column("response_time_seconds", sa.Integer, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("user_id", "scenario_id", name="uq_user_scenario"),
    )
    op.create_index(
        "ix_user_scenario_responses_user_id",
        "user_scenario_responses",
        ["user_id"],
    )

    # ── 5. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_a_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_b_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("compatibility_score", sa.Integer, nullable=False),
        sa.Column("match_reason", sa.Text, nullable=True),
        sa.Column(
            "user_a_status",
            sa.String,
            server_default="pending",
            nullable=False,
            comment="pending / accepted / rejected",
        ),
        sa.Column(
            "user_b_status",
            sa.String,
            server_default="pending",
            nullable=False,
            comment="pending / accepted / rejected",
        ),
        sa.Column("is_matched", sa.Boolean, server_default="false", nullable=False),
        sa.Column("matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("user_a_id", "user_b_id", name="uq_match_pair"),
        sa.CheckConstraint("user_a_id < user_b_id", name="ck_match_canonical_order"),
        sa.CheckConstraint(
            "compatibility_score >= 0 AND compatibility_score <= 100",
            name="ck_match_score_range",
        ),
    )
    op.create_index("ix_matches_user_a_id", "matches", ["user_a_id"])
    op.create_index("ix_matches_user_b_id", "matches", ["user_b_id"])

    # ── 6. messages ─────────────────────────────────────────────────
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sender_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, server_default="false", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_messages_match_id", "messages", ["match_id"])

    # ── 7. push_tokens ──────────────────────────────────────────────
    op.create_table(
        "push_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token", sa.String, nullable=False),
        sa.Column("device_type", sa.String, nullable=True, comment="ios / android"),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "token", name="uq_push_token_user_token"),
    )
    op.create_index("ix_push_tokens_user_id", "push_tokens", ["user_id"])

    # ── 8. notification_logs ────────────────────────────────────────
    op.create_table(
        "notification_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "type",
            sa.String,
            nullable=False,
            comment="new_match / match_accepted / new_message",
        ),
        sa.Column("title", sa.String, nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=True),
        sa.Column("is_read", sa.Boolean, server_default="false", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_notification_logs_user_id", "notification_logs", ["user_id"])


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_notification_logs_user_id", table_name="notification_logs")
    op.drop_table("notification_logs")

    op.drop_index("ix_push_tokens_user_id", table_name="push_tokens")
    op.drop_table("push_tokens")

    op.drop_index("ix_messages_match_id", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_matches_user_b_id", table_name="matches")
    op.drop_index("ix_matches_user_a_id", table_name="matches")
    op.drop_table("matches")

    op.drop_index(
        "ix_user_scenario_responses_user_id", table_name="user_scenario_responses"
    )
    op.drop_table("user_scenario_responses")
    op.drop_table("scenario_options")
    op.drop_table("scenarios")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
