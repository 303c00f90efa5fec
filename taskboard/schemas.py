from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Role = Literal["ADMIN", "MEMBER"]
ColumnId = Literal["BACKLOG", "HIGH_PRIORITY", "TODO", "IN_PROGRESS", "READY_FOR_ACCEPTANCE", "DONE"]
Importance = Literal["LOW", "MEDIUM", "HIGH"]
AuthState = Literal["ANONYMOUS", "MUST_CHANGE_PASSWORD", "TWO_FACTOR_SETUP_REQUIRED", "TWO_FACTOR_PENDING", "AUTHORIZED"]


def _parse_dt_utc(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
  elif isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
  else:
    return value

  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


class UserOut(BaseModel):
  id: str
  email: str
  name: str
  role: Role
  isSystem: bool
  totpEnabled: bool
  mustChangePassword: bool
  defaultBoardId: str | None = None
  hasAvatar: bool = False
  createdAt: datetime


class SessionStateOut(BaseModel):
  user: UserOut | None = None
  authState: AuthState
  twoFactorPassed: bool = False
  boardId: str | None = None


class LoginIn(BaseModel):
  login: str = Field(min_length=1)
  password: str = Field(min_length=1)
  totp: str | None = None
  rememberDevice: bool = False


class PasswordChangeIn(BaseModel):
  newPassword: str = Field(min_length=8)


class PasswordForgotIn(BaseModel):
  login: str = Field(min_length=1)


class PasswordResetIn(BaseModel):
  token: str = Field(min_length=20)
  newPassword: str = Field(min_length=8)


class PasswordResetByTotpIn(BaseModel):
  login: str = Field(min_length=1)
  code: str = Field(min_length=6, max_length=8)
  newPassword: str = Field(min_length=8)


class TwoFactorSetupOut(BaseModel):
  secret: str
  otpauthUri: str


class TwoFactorEnableIn(BaseModel):
  code: str = Field(min_length=6, max_length=8)


class TwoFactorVerifyIn(BaseModel):
  code: str = Field(min_length=6, max_length=8)
  rememberDevice: bool = False


class ProfileUpdateIn(BaseModel):
  name: str | None = Field(default=None, min_length=1)
  email: str | None = Field(default=None, min_length=3)
  defaultBoardId: str | None = None


class MailSettingsOut(BaseModel):
  enabled: bool
  host: str
  port: int
  secure: bool
  user: str
  fromAddress: str
  passSet: bool


class MailSettingsIn(BaseModel):
  enabled: bool
  host: str | None = None
  port: int | None = Field(default=None, ge=1, le=65535)
  secure: bool | None = None
  user: str | None = None
  password: str | None = Field(default=None, min_length=1)
  fromAddress: str | None = None


class MailSettingsTestIn(BaseModel):
  host: str | None = None
  port: int | None = Field(default=None, ge=1, le=65535)
  secure: bool | None = None
  user: str | None = None
  password: str | None = None
  fromAddress: str | None = None


class MailSettingsTestOut(BaseModel):
  ok: bool
  fromAddress: str | None = None
  error: str | None = None


class AdminUserCreateIn(BaseModel):
  email: str = Field(min_length=3)
  name: str | None = None
  password: str = Field(min_length=8)
  role: Role = "MEMBER"


class AdminUserUpdateIn(BaseModel):
  email: str | None = Field(default=None, min_length=3)
  name: str | None = Field(default=None, min_length=1)
  role: Role | None = None


class AdminPasswordResetIn(BaseModel):
  newPassword: str = Field(min_length=8)


class UserBoardsOut(BaseModel):
  boardIds: list[str]
  defaultBoardId: str | None = None


class UserBoardsIn(BaseModel):
  boardIds: list[str] = Field(min_length=1)
  defaultBoardId: str | None = None

  @model_validator(mode="after")
  def _default_in_boards(self) -> "UserBoardsIn":
    if self.defaultBoardId is not None and self.defaultBoardId not in self.boardIds:
      raise ValueError("defaultBoardId must be one of boardIds")
    return self


class BoardOut(BaseModel):
  id: str
  name: str
  description: str | None = None
  memberIds: list[str] | None = None
  createdAt: datetime


class BoardListOut(BaseModel):
  boards: list[BoardOut]
  currentBoardId: str | None = None


class BoardSelectOut(BaseModel):
  ok: bool = True
  currentBoardId: str


class BoardCreateIn(BaseModel):
  name: str = Field(min_length=1)
  description: str | None = None
  memberIds: list[str] = Field(default_factory=list)


class BoardUpdateIn(BaseModel):
  name: str | None = Field(default=None, min_length=1)
  description: str | None = None
  memberIds: list[str] | None = None


class BoardSelectIn(BaseModel):
  boardId: str = Field(min_length=1)


class MemberOut(BaseModel):
  id: str
  name: str
  email: str
  role: Role
  hasAvatar: bool = False


class CardSummaryOut(BaseModel):
  id: str
  description: str
  assignee: str | None = None
  dueDate: datetime | None = None
  column: ColumnId
  position: int
  importance: Importance
  paused: bool
  createdAt: datetime
  updatedAt: datetime
  commentCount: int = 0
  attachmentCount: int = 0


class ColumnOut(BaseModel):
  id: ColumnId
  title: str
  cards: list[CardSummaryOut]


class BoardViewOut(BaseModel):
  boardId: str
  columns: list[ColumnOut]


class ParticipantOut(BaseModel):
  id: str
  name: str
  email: str


class CommentOut(BaseModel):
  id: str
  cardId: str
  authorId: str | None = None
  authorName: str | None = None
  body: str
  createdAt: datetime
  updatedAt: datetime


class AttachmentOut(BaseModel):
  id: str
  cardId: str
  uploaderId: str | None = None
  filename: str
  mime: str
  sizeBytes: int
  createdAt: datetime
  downloadUrl: str


class CardOut(BaseModel):
  id: str
  boardId: str
  description: str
  details: str | None = None
  assignee: str | None = None
  dueDate: datetime | None = None
  column: ColumnId
  position: int
  importance: Importance
  paused: bool
  authorId: str | None = None
  createdAt: datetime
  updatedAt: datetime
  participants: list[ParticipantOut] = Field(default_factory=list)
  comments: list[CommentOut] = Field(default_factory=list)
  attachments: list[AttachmentOut] = Field(default_factory=list)


class CardCreateIn(BaseModel):
  description: str = Field(min_length=1)
  details: str | None = None
  assignee: str | None = Field(default=None, min_length=1)
  dueDate: datetime | None = None
  column: ColumnId = "BACKLOG"
  importance: Importance = "MEDIUM"
  paused: bool = False

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class CardUpdateIn(BaseModel):
  description: str | None = Field(default=None, min_length=1)
  details: str | None = None
  assignee: str | None = Field(default=None, min_length=1)
  dueDate: datetime | None = None
  importance: Importance | None = None
  paused: bool | None = None

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class CardMoveIn(BaseModel):
  toColumn: ColumnId
  toIndex: int = Field(ge=0)


class ParticipantAddIn(BaseModel):
  userId: str | None = None
  email: str | None = None

  @model_validator(mode="after")
  def _one_of(self) -> "ParticipantAddIn":
    if not self.userId and not self.email:
      raise ValueError("userId or email is required")
    return self


class CommentIn(BaseModel):
  body: str = Field(min_length=1)
