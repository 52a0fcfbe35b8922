"""create loyalty tables

Revision ID: 4e7b1d9a2c30
Revises:
Create Date: 2026-10-18 10:12:41.203118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4e7b1d9a2c30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("app_users"):
        op.create_table(
            "app_users",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("wallet_pass_id", sa.String(length=100), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("date_of_birth", sa.Date(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint("wallet_pass_id", name="uq_app_users_wallet_pass_id"),
        )

    if not inspector.has_table("loyalty_programs"):
        op.create_table(
            "loyalty_programs",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("business_id", sa.String(length=100), nullable=False),
            sa.Column("business_name", sa.String(length=200), nullable=False),
            sa.Column("city", sa.String(length=50), nullable=False),
            sa.Column("public_id", sa.String(length=20), nullable=False),
            sa.Column("program_name", sa.String(length=200), nullable=True),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="stamps"),
            sa.Column("reward_threshold", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("reward_description", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("stamp_label", sa.String(length=50), nullable=False, server_default="Stamps"),
            sa.Column("earn_mode", sa.String(length=20), nullable=False, server_default="per_visit"),
            sa.Column("points_per_earn", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("stamp_icon", sa.String(length=30), nullable=False, server_default="stamp"),
            sa.Column("earn_instructions", sa.Text(), nullable=True),
            sa.Column("redeem_instructions", sa.Text(), nullable=True),
            sa.Column("terms_and_conditions", sa.Text(), nullable=True),
            sa.Column("primary_color", sa.String(length=20), nullable=True),
            sa.Column("background_color", sa.String(length=20), nullable=True),
            sa.Column("logo_url", sa.String(length=500), nullable=True),
            sa.Column("logo_description", sa.String(length=500), nullable=True),
            sa.Column("strip_image_url", sa.String(length=500), nullable=True),
            sa.Column("strip_image_description", sa.String(length=500), nullable=True),
            sa.Column("timezone", sa.String(length=64), nullable=False, server_default="Europe/London"),
            sa.Column("max_earns_per_day", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("min_gap_minutes", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("walletpush_template_id", sa.String(length=100), nullable=True),
            sa.Column("walletpush_api_key", sa.String(length=255), nullable=True),
            sa.Column("walletpush_pass_type_id", sa.String(length=255), nullable=True),
            sa.Column("counter_qr_token", sa.String(length=64), nullable=False),
            sa.Column("previous_counter_qr_token", sa.String(length=64), nullable=True),
            sa.Column("counter_qr_token_rotated_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint("business_id", name="uq_loyalty_programs_business_id"),
            sa.UniqueConstraint("public_id", name="uq_loyalty_programs_public_id"),
            sa.CheckConstraint("reward_threshold > 0", name="ck_loyalty_programs_reward_threshold_positive"),
            sa.CheckConstraint(
                "max_earns_per_day >= 1 AND max_earns_per_day <= 10",
                name="ck_loyalty_programs_max_earns_per_day_range",
            ),
            sa.CheckConstraint(
                "min_gap_minutes >= 0 AND min_gap_minutes <= 1440",
                name="ck_loyalty_programs_min_gap_minutes_range",
            ),
        )
        op.create_index("ix_loyalty_programs_city_status", "loyalty_programs", ["city", "status"])

    if not inspector.has_table("loyalty_pass_requests"):
        op.create_table(
            "loyalty_pass_requests",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column(
                "program_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_programs.id"),
                nullable=False,
            ),
            sa.Column("business_id", sa.String(length=100), nullable=False),
            sa.Column("city", sa.String(length=50), nullable=False),
            sa.Column("request_type", sa.String(length=20), nullable=False, server_default="new"),
            sa.Column("design_spec_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="submitted"),
            sa.Column("rejection_reason", sa.String(length=500), nullable=True),
            sa.Column("walletpush_template_id", sa.String(length=100), nullable=True),
            sa.Column("walletpush_api_key", sa.String(length=255), nullable=True),
            sa.Column("walletpush_pass_type_id", sa.String(length=255), nullable=True),
            sa.Column("reviewed_by_admin_id", sa.String(length=100), nullable=True),
            sa.Column("reviewed_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )
        op.create_index(
            "ix_loyalty_pass_requests_city_status",
            "loyalty_pass_requests",
            ["city", "status"],
        )

    if not inspector.has_table("loyalty_memberships"):
        op.create_table(
            "loyalty_memberships",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column(
                "program_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_programs.id"),
                nullable=False,
            ),
            sa.Column("user_wallet_pass_id", sa.String(length=100), nullable=False),
            sa.Column("stamps_balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_earned_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("walletpush_serial", sa.String(length=100), nullable=True),
            sa.Column("wallet_sync_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("wallet_synced_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("joined_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.Column("last_active_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint(
                "program_id",
                "user_wallet_pass_id",
                name="uq_loyalty_memberships_program_wallet_pass",
            ),
            sa.CheckConstraint("stamps_balance >= 0", name="ck_loyalty_memberships_balance_non_negative"),
            sa.CheckConstraint("points_balance >= 0", name="ck_loyalty_memberships_points_non_negative"),
        )
        op.create_index(
            "ix_loyalty_memberships_sync_pending",
            "loyalty_memberships",
            ["program_id"],
            postgresql_where=sa.text("wallet_sync_pending"),
        )

    if not inspector.has_table("loyalty_earn_events"):
        op.create_table(
            "loyalty_earn_events",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column(
                "membership_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_memberships.id"),
                nullable=True,
            ),
            sa.Column(
                "program_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_programs.id"),
                nullable=False,
            ),
            sa.Column("business_id", sa.String(length=100), nullable=False),
            sa.Column("user_wallet_pass_id", sa.String(length=100), nullable=False),
            sa.Column("earned_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("method", sa.String(length=20), nullable=False, server_default="counter_qr"),
            sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("token_hash", sa.String(length=64), nullable=True),
            sa.Column("ip_hash", sa.String(length=64), nullable=True),
            sa.Column("valid", sa.Boolean(), nullable=False),
            sa.Column("reason_if_invalid", sa.String(length=50), nullable=True),
        )
        op.create_index(
            "ix_loyalty_earn_events_membership_valid_earned_at",
            "loyalty_earn_events",
            ["membership_id", "valid", "earned_at"],
        )
        op.create_index(
            "ix_loyalty_earn_events_wallet_pass_earned_at",
            "loyalty_earn_events",
            ["user_wallet_pass_id", "earned_at"],
        )
        op.create_index(
            "ix_loyalty_earn_events_ip_hash_earned_at",
            "loyalty_earn_events",
            ["ip_hash", "earned_at"],
        )

    if not inspector.has_table("loyalty_redemptions"):
        op.create_table(
            "loyalty_redemptions",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column(
                "membership_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_memberships.id"),
                nullable=False,
            ),
            sa.Column(
                "program_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("loyalty_programs.id"),
                nullable=False,
            ),
            sa.Column("business_id", sa.String(length=100), nullable=False),
            sa.Column("user_wallet_pass_id", sa.String(length=100), nullable=False),
            sa.Column("reward_description", sa.String(length=255), nullable=False),
            sa.Column("stamps_deducted", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="consumed"),
            sa.Column("consumed_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("display_expires_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("flagged_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("flagged_reason", sa.String(length=500), nullable=True),
            sa.Column("flagged_by", sa.String(length=100), nullable=True),
        )
        op.create_index(
            "ix_loyalty_redemptions_program_consumed_at",
            "loyalty_redemptions",
            ["program_id", "consumed_at"],
        )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("loyalty_redemptions")
    op.drop_table("loyalty_earn_events")
    op.drop_table("loyalty_memberships")
    op.drop_table("loyalty_pass_requests")
    op.drop_table("loyalty_programs")
    op.drop_table("app_users")
