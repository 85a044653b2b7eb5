"""initial_schema

Revision ID: 3f1c9a7d2b64
Revises: 
Create Date: 2026-10-18 09:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b64'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial tables: user, pickuplocation, optin, scheduledoptin, ride, rideparticipant."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("default_role", sa.String(), nullable=False, server_default="RIDER"),
        sa.Column("vehicle_capacity", sa.Integer(), nullable=True),
        sa.Column("home_lat", sa.Float(), nullable=True),
        sa.Column("home_lng", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_email", "user", ["email"])
    op.create_table(
        "pickuplocation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False, server_default=""),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pickuplocation_user_id", "pickuplocation", ["user_id"])
    op.create_table(
        "optin",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="RIDER"),
        sa.Column("commute_date", sa.Date(), nullable=False),
        sa.Column("time_window_start", sa.Time(), nullable=False),
        sa.Column("time_window_end", sa.Time(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING_MATCH"),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_optin_user_id", "optin", ["user_id"])
    op.create_index("ix_optin_commute_date", "optin", ["commute_date"])
    op.create_index("ix_optin_status", "optin", ["status"])
    op.create_index("ix_optin_created_at", "optin", ["created_at"])
    op.create_index(
        "uq_optin_user_date_active", "optin", ["user_id", "commute_date"], unique=True,
        sqlite_where=sa.text("status != 'CANCELLED'"), postgresql_where=sa.text("status != 'CANCELLED'"),
    )
    op.create_table(
        "scheduledoptin",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("day_of_week", sa.String(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduledoptin_user_id", "scheduledoptin", ["user_id"])
    op.create_index("ix_scheduledoptin_day_of_week", "scheduledoptin", ["day_of_week"])
    op.create_table(
        "ride",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("commute_date", sa.Date(), nullable=False),
        sa.Column("driver_user_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PROPOSED"),
        sa.Column("pickup_order", sa.String(), nullable=False, server_default=""),
        sa.Column("estimated_total_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_distance_km", sa.Float(), nullable=False, server_default="0"),
        sa.Column("estimated_cost_per_person", sa.Float(), nullable=False, server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reasoning", sa.String(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["driver_user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ride_commute_date", "ride", ["commute_date"])
    op.create_index("ix_ride_driver_user_id", "ride", ["driver_user_id"])
    op.create_index("ix_ride_status", "ride", ["status"])
    op.create_table(
        "rideparticipant",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("opt_in_id", sa.Integer(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="RIDER"),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING_ACCEPTANCE"),
        sa.Column("confirmation_deadline", sa.DateTime(), nullable=True),
        sa.Column("active_opt_in_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["opt_in_id"], ["optin.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ride_id", "user_id"),
        sa.UniqueConstraint("active_opt_in_id"),
    )
    op.create_index("ix_rideparticipant_ride_id", "rideparticipant", ["ride_id"])
    op.create_index("ix_rideparticipant_user_id", "rideparticipant", ["user_id"])
    op.create_index("ix_rideparticipant_opt_in_id", "rideparticipant", ["opt_in_id"])


def downgrade() -> None:
    """Drop all initial tables."""
    op.drop_index("ix_rideparticipant_opt_in_id", table_name="rideparticipant")
    op.drop_index("ix_rideparticipant_user_id", table_name="rideparticipant")
    op.drop_index("ix_rideparticipant_ride_id", table_name="rideparticipant")
    op.drop_table("rideparticipant")
    op.drop_index("ix_ride_status", table_name="ride")
    op.drop_index("ix_ride_driver_user_id", table_name="ride")
    op.drop_index("ix_ride_commute_date", table_name="ride")
    op.drop_table("ride")
    op.drop_index("ix_scheduledoptin_day_of_week", table_name="scheduledoptin")
    op.drop_index("ix_scheduledoptin_user_id", table_name="scheduledoptin")
    op.drop_table("scheduledoptin")
    op.drop_index("uq_optin_user_date_active", table_name="optin")
    op.drop_index("ix_optin_created_at", table_name="optin")
    op.drop_index("ix_optin_status", table_name="optin")
    op.drop_index("ix_optin_commute_date", table_name="optin")
    op.drop_index("ix_optin_user_id", table_name="optin")
    op.drop_table("optin")
    op.drop_index("ix_pickuplocation_user_id", table_name="pickuplocation")
    op.drop_table("pickuplocation")
    op.drop_index("ix_user_email", table_name="user")
    op.drop_table("user")
