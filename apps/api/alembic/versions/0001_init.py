"""installations, channels, webhook ledger, oauth states

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  op.create_table(
    "slack_installations",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("team_name", sa.String(), nullable=True),
    sa.Column("bot_token_encrypted", sa.Text(), nullable=False),
    sa.Column("bot_user_id", sa.String(), nullable=True),
    sa.Column("app_id", sa.String(), nullable=True),
    sa.Column("enterprise_id", sa.String(), nullable=True),
    sa.Column("enterprise_name", sa.String(), nullable=True),
    sa.Column("installer_user_id", sa.String(), nullable=True),
    sa.Column("scope", sa.Text(), nullable=True),
    sa.Column("token_type", sa.String(), nullable=False, server_default=sa.text("'bot'")),
    sa.Column("stockalert_api_key_encrypted", sa.Text(), nullable=True),
    sa.Column("stockalert_webhook_id", sa.String(), nullable=True),
    sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
  )
  op.create_index("ix_slack_installations_tenant_id", "slack_installations", ["tenant_id"], unique=True)

  op.create_table(
    "slack_channels",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("channel_id", sa.String(), nullable=False),
    sa.Column("channel_name", sa.String(), nullable=True),
    sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.UniqueConstraint("tenant_id", "channel_id", name="ux_slack_channels_tenant_channel"),
  )
  op.create_index("ix_slack_channels_tenant_id", "slack_channels", ["tenant_id"], unique=False)
  op.create_index(
    "ux_slack_channels_one_default",
    "slack_channels",
    ["tenant_id"],
    unique=True,
    postgresql_where=sa.text("is_default"),
  )

  op.create_table(
    "webhook_events",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("event_id", sa.String(), nullable=False),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("payload", sa.dialects.postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.UniqueConstraint("event_id", name="webhook_events_event_id_key"),
  )
  op.create_index("ix_webhook_events_tenant_id", "webhook_events", ["tenant_id"], unique=False)
  op.create_index("ix_webhook_events_created_at", "webhook_events", ["created_at"], unique=False)
  op.create_index("ix_webhook_events_processed_at", "webhook_events", ["processed_at"], unique=False)

  op.create_table(
    "oauth_states",
    sa.Column("id", sa.String(length=36), primary_key=True),
    sa.Column("state", sa.String(), nullable=False),
    sa.Column("metadata", sa.dialects.postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("state", name="oauth_states_state_key"),
  )
  op.create_index("ix_oauth_states_expires_at", "oauth_states", ["expires_at"], unique=False)

  op.alter_column("slack_installations", "token_type", server_default=None)
  op.alter_column("slack_channels", "is_default", server_default=None)


def downgrade() -> None:
  op.drop_index("ix_oauth_states_expires_at", table_name="oauth_states")
  op.drop_table("oauth_states")
  op.drop_index("ix_webhook_events_processed_at", table_name="webhook_events")
  op.drop_index("ix_webhook_events_created_at", table_name="webhook_events")
  op.drop_index("ix_webhook_events_tenant_id", table_name="webhook_events")
  op.drop_table("webhook_events")
  op.drop_index("ux_slack_channels_one_default", table_name="slack_channels")
  op.drop_index("ix_slack_channels_tenant_id", table_name="slack_channels")
  op.drop_table("slack_channels")
  op.drop_index("ix_slack_installations_tenant_id", table_name="slack_installations")
  op.drop_table("slack_installations")
