"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
  return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
  op.create_table(
    "boards",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    _ts("created_at"),
    _ts("updated_at"),
  )

  op.create_table(
    "users",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("password_hash", sa.String(), nullable=False),
    sa.Column("role", sa.String(), nullable=False),
    sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("must_change_password", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("totp_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("totp_secret_encrypted", sa.Text(), nullable=True),
    sa.Column("totp_pending_secret_encrypted", sa.Text(), nullable=True),
    sa.Column("default_board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=True),
    sa.Column("avatar_path", sa.String(), nullable=True),
    sa.Column("avatar_mime", sa.String(), nullable=True),
    _ts("created_at"),
    _ts("updated_at"),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "board_members",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    _ts("created_at"),
    sa.UniqueConstraint("board_id", "user_id", name="ux_board_member_board_user"),
  )
  op.create_index("ix_board_members_board_id", "board_members", ["board_id"])
  op.create_index("ix_board_members_user_id", "board_members", ["user_id"])

  op.create_table(
    "sessions",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("two_factor_passed", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=True),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("user_agent", sa.String(), nullable=True),
    _ts("created_at"),
    _ts("expires_at"),
  )
  op.create_index("ix_sessions_user_id", "sessions", ["user_id"])

  op.create_table(
    "trusted_devices",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("user_agent", sa.String(), nullable=True),
    _ts("created_at"),
    _ts("last_used_at", nullable=True),
    _ts("expires_at"),
  )
  op.create_index("ix_trusted_devices_user_id", "trusted_devices", ["user_id"])
  op.create_index("ix_trusted_devices_token_hash", "trusted_devices", ["token_hash"], unique=True)

  op.create_table(
    "password_reset_tokens",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("token_hash", sa.String(), nullable=False),
    sa.Column("request_ip", sa.String(), nullable=True),
    _ts("used_at", nullable=True),
    _ts("expires_at"),
    _ts("created_at"),
  )
  op.create_index("ix_password_reset_tokens_user_id", "password_reset_tokens", ["user_id"])
  op.create_index("ix_password_reset_tokens_token_hash", "password_reset_tokens", ["token_hash"], unique=True)

  op.create_table(
    "mail_settings",
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("host", sa.String(), nullable=True),
    sa.Column("port", sa.Integer(), nullable=True),
    sa.Column("secure", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("username", sa.String(), nullable=True),
    sa.Column("password_encrypted", sa.Text(), nullable=True),
    sa.Column("from_address", sa.String(), nullable=True),
    _ts("updated_at"),
  )

  op.create_table(
    "cards",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("board_id", sa.String(36), sa.ForeignKey("boards.id"), nullable=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("details", sa.Text(), nullable=True),
    sa.Column("assignee", sa.String(), nullable=True),
    _ts("due_date", nullable=True),
    sa.Column("column", sa.String(), nullable=False),
    sa.Column("position", sa.Integer(), nullable=False),
    sa.Column("importance", sa.String(), nullable=False),
    sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("author_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    _ts("created_at"),
    _ts("updated_at"),
  )
  op.create_index("ix_cards_board_id", "cards", ["board_id"])
  op.create_index("ix_cards_author_id", "cards", ["author_id"])
  op.create_index("ix_cards_board_column_position", "cards", ["board_id", "column", "position"])

  op.create_table(
    "card_participants",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("card_id", sa.String(36), sa.ForeignKey("cards.id"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    _ts("created_at"),
    sa.UniqueConstraint("card_id", "user_id", name="ux_card_participant_card_user"),
  )
  op.create_index("ix_card_participants_card_id", "card_participants", ["card_id"])
  op.create_index("ix_card_participants_user_id", "card_participants", ["user_id"])

  op.create_table(
    "comments",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("card_id", sa.String(36), sa.ForeignKey("cards.id"), nullable=False),
    sa.Column("author_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("body", sa.Text(), nullable=False),
    _ts("created_at"),
    _ts("updated_at"),
  )
  op.create_index("ix_comments_card_id", "comments", ["card_id"])

  op.create_table(
    "attachments",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("card_id", sa.String(36), sa.ForeignKey("cards.id"), nullable=False),
    sa.Column("uploader_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("filename", sa.String(), nullable=False),
    sa.Column("mime", sa.String(), nullable=False),
    sa.Column("size_bytes", sa.Integer(), nullable=False),
    sa.Column("path", sa.String(), nullable=False),
    _ts("created_at"),
  )
  op.create_index("ix_attachments_card_id", "attachments", ["card_id"])


def downgrade() -> None:
  op.drop_table("attachments")
  op.drop_table("comments")
  op.drop_table("card_participants")
  op.drop_table("cards")
  op.drop_table("mail_settings")
  op.drop_table("password_reset_tokens")
  op.drop_table("trusted_devices")
  op.drop_table("sessions")
  op.drop_table("board_members")
  op.drop_table("users")
  op.drop_table("boards")
