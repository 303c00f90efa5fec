from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, TypeDecorator, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ROLE_ADMIN = "ADMIN"
ROLE_MEMBER = "MEMBER"

# Fixed workflow order; titles are what GET /board reports.
COLUMNS_IN_ORDER: tuple[tuple[str, str], ...] = (
  ("BACKLOG", "Backlog"),
  ("HIGH_PRIORITY", "High priority"),
  ("TODO", "ToDo"),
  ("IN_PROGRESS", "In Progress"),
  ("READY_FOR_ACCEPTANCE", "Ready For Acceptance"),
  ("DONE", "Done"),
)
COLUMN_IDS = tuple(c for c, _ in COLUMNS_IN_ORDER)
IMPORTANCE_IDS = ("LOW", "MEDIUM", "HIGH")

DEFAULT_BOARD_ID = "00000000-0000-0000-0000-000000000001"
MAIL_SETTINGS_ID = "mail"


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def _uuid() -> str:
  return str(uuid.uuid4())


class UtcDateTime(TypeDecorator):
  """Timezone-aware datetime that stays aware on backends storing naive values."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_result_value(self, value, dialect):
    if value is not None and value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
  pass


class Board(Base):
  __tablename__ = "boards"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  name: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  # Stored lower-cased; lookups normalize the input the same way.
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  password_hash: Mapped[str] = mapped_column(String, nullable=False)
  role: Mapped[str] = mapped_column(String, nullable=False, default=ROLE_MEMBER)
  is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  must_change_password: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  totp_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  totp_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  totp_pending_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  default_board_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("boards.id"), nullable=True)
  avatar_path: Mapped[str | None] = mapped_column(String, nullable=True)
  avatar_mime: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BoardMember(Base):
  __tablename__ = "board_members"
  __table_args__ = (UniqueConstraint("board_id", "user_id", name="ux_board_member_board_user"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class Session(Base):
  __tablename__ = "sessions"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  two_factor_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  board_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("boards.id"), nullable=True)
  created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class TrustedDevice(Base):
  __tablename__ = "trusted_devices"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  created_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class PasswordResetToken(Base):
  __tablename__ = "password_reset_tokens"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  request_ip: Mapped[str | None] = mapped_column(String, nullable=True)
  used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class MailSettings(Base):
  __tablename__ = "mail_settings"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=MAIL_SETTINGS_ID)
  enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  host: Mapped[str | None] = mapped_column(String, nullable=True)
  port: Mapped[int | None] = mapped_column(Integer, nullable=True)
  secure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  username: Mapped[str | None] = mapped_column(String, nullable=True)
  password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  from_address: Mapped[str | None] = mapped_column(String, nullable=True)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Card(Base):
  __tablename__ = "cards"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  board_id: Mapped[str] = mapped_column(String(36), ForeignKey("boards.id"), nullable=False, index=True)
  description: Mapped[str] = mapped_column(Text, nullable=False)
  details: Mapped[str | None] = mapped_column(Text, nullable=True)
  assignee: Mapped[str | None] = mapped_column(String, nullable=True)
  due_date: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  column: Mapped[str] = mapped_column(String, nullable=False, default="BACKLOG")
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  importance: Mapped[str] = mapped_column(String, nullable=False, default="MEDIUM")
  paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  author_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CardParticipant(Base):
  __tablename__ = "card_participants"
  __table_args__ = (UniqueConstraint("card_id", "user_id", name="ux_card_participant_card_user"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class Comment(Base):
  __tablename__ = "comments"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
  author_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Attachment(Base):
  __tablename__ = "attachments"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
  card_id: Mapped[str] = mapped_column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
  uploader_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
  filename: Mapped[str] = mapped_column(String, nullable=False)
  mime: Mapped[str] = mapped_column(String, nullable=False)
  size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
  path: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
