from __future__ import annotations

import logging
import os
import smtplib
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskboard.config import settings
from taskboard.deps import (
  AuthContext,
  auth_state,
  client_ip,
  get_db,
  get_mailer,
  get_notifier,
  optional_auth,
  require_admin,
  require_authorized,
  require_login,
  require_password_settled,
)
from taskboard.errors import (
  AmbiguousLogin,
  Conflict,
  Forbidden,
  InvalidCode,
  InvalidCredentials,
  NotFound,
  TwoFactorRequired,
  TwoFactorSetupRequired,
  ValidationFailed,
)
from taskboard.memberships import board_exists, can_access_board, session_board_for
from taskboard.models import MAIL_SETTINGS_ID, MailSettings, PasswordResetToken, Session as DbSession, User
from taskboard.notifications.events import Notifier
from taskboard.notifications.service import MailConfig, Mailer, MailMessage
from taskboard.rate_limit import limiter
from taskboard.schemas import (
  LoginIn,
  MailSettingsIn,
  MailSettingsOut,
  MailSettingsTestIn,
  MailSettingsTestOut,
  PasswordChangeIn,
  PasswordForgotIn,
  PasswordResetByTotpIn,
  PasswordResetIn,
  ProfileUpdateIn,
  SessionStateOut,
  TwoFactorEnableIn,
  TwoFactorSetupOut,
  TwoFactorVerifyIn,
  UserOut,
)
from taskboard.security import (
  SESSION_COOKIE_NAME,
  TRUSTED_DEVICE_COOKIE_NAME,
  decrypt_secret,
  encrypt_secret,
  hash_password,
  password_reset_token_hash,
  password_reset_token_new,
  totp_new_secret,
  totp_provisioning_uri,
  totp_verify,
  verify_password,
)
from taskboard.sessions import (
  clear_session_cookie,
  create_session,
  destroy_session,
  destroy_user_sessions,
  load_session,
  set_session_cookie,
)
from taskboard.trusted_devices import (
  issue_trusted_device,
  revoke_user_trusted_devices,
  set_trusted_device_cookie,
  verify_trusted_device,
)
from taskboard import uploads

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

ADMIN_LOGIN_ALIAS = "admin"


def user_out(u: User) -> UserOut:
  return UserOut(
    id=u.id,
    email=u.email,
    name=u.name,
    role=u.role,
    isSystem=bool(u.is_system),
    totpEnabled=bool(u.totp_enabled),
    mustChangePassword=bool(u.must_change_password),
    defaultBoardId=u.default_board_id,
    hasAvatar=bool(u.avatar_path),
    createdAt=u.created_at,
  )


def _state_out(u: User | None, s: DbSession | None) -> SessionStateOut:
  return SessionStateOut(
    user=user_out(u) if u is not None else None,
    authState=auth_state(u, s),
    twoFactorPassed=bool(s.two_factor_passed) if s is not None else False,
    boardId=s.board_id if s is not None else None,
  )


async def resolve_login(db: AsyncSession, identifier: str) -> User | None:
  """
  Map a login identifier to a user.

  "admin" is the system admin, anything containing "@" is a case-insensitive
  email, anything else a case-insensitive display name that must match exactly
  one user.
  """
  key = (identifier or "").strip()
  lower = key.lower()
  if not key:
    return None
  if lower == ADMIN_LOGIN_ALIAS:
    res = await db.execute(select(User).where(User.is_system.is_(True)).limit(1))
    u = res.scalar_one_or_none()
    if u is not None:
      return u
  if "@" in key:
    res = await db.execute(select(User).where(func.lower(User.email) == lower))
    return res.scalar_one_or_none()
  res = await db.execute(select(User).where(func.lower(User.name) == lower).limit(2))
  matches = res.scalars().all()
  if len(matches) > 1:
    raise AmbiguousLogin()
  return matches[0] if matches else None


def _require_totp_session(ctx: AuthContext) -> None:
  # Re-enrolling or changing secrets on a TOTP account needs a verified session.
  if ctx.user.totp_enabled and not ctx.session.two_factor_passed:
    raise TwoFactorRequired()


async def _apply_password_reset(db: AsyncSession, u: User, new_password: str) -> None:
  u.password_hash = hash_password(new_password)
  u.must_change_password = False
  await destroy_user_sessions(db, u.id)
  await revoke_user_trusted_devices(db, u.id)


def _public_base_url(request: Request) -> str:
  if settings.public_base_url:
    return settings.public_base_url.rstrip("/")
  return str(request.base_url).rstrip("/")


@router.post("/login", response_model=SessionStateOut)
async def login(payload: LoginIn, request: Request, response: Response, db: AsyncSession = Depends(get_db)) -> SessionStateOut:
  ip = client_ip(request)
  limiter.check(f"auth:login:ip:{ip}", limit=int(settings.rate_limit_login_ip_per_minute))
  limiter.check(f"auth:login:id:{payload.login.strip().lower()}", limit=int(settings.rate_limit_login_identifier_per_minute))

  u = await resolve_login(db, payload.login)
  if u is None or not verify_password(payload.password, u.password_hash):
    raise InvalidCredentials()

  two_factor_passed = False
  remember_raw: str | None = None
  if u.totp_enabled:
    if payload.totp:
      secret = decrypt_secret(u.totp_secret_encrypted) if u.totp_secret_encrypted else ""
      if not secret or not totp_verify(secret, payload.totp):
        raise InvalidCode("Invalid 2FA code", status_code=status.HTTP_401_UNAUTHORIZED)
      if payload.rememberDevice:
        remember_raw = await issue_trusted_device(db, user_id=u.id, request=request)
    elif not await verify_trusted_device(db, user_id=u.id, raw_token=request.cookies.get(TRUSTED_DEVICE_COOKIE_NAME)):
      raise TwoFactorRequired()
    two_factor_passed = True

  previous = await load_session(db, request.cookies.get(SESSION_COOKIE_NAME))
  if previous is not None:
    await destroy_session(db, previous.id)
  s = await create_session(
    db,
    user_id=u.id,
    two_factor_passed=two_factor_passed,
    board_id=await session_board_for(db, u),
    request=request,
  )
  await db.commit()

  set_session_cookie(response, s)
  if remember_raw:
    set_trusted_device_cookie(response, remember_raw)
  return _state_out(u, s)


@router.get("/me", response_model=SessionStateOut)
async def me(ctx: AuthContext | None = Depends(optional_auth)) -> SessionStateOut:
  if ctx is None:
    return _state_out(None, None)
  return _state_out(ctx.user, ctx.session)


@router.post("/logout")
async def logout(
  response: Response,
  ctx: AuthContext | None = Depends(optional_auth),
  db: AsyncSession = Depends(get_db),
) -> dict:
  if ctx is not None:
    await destroy_session(db, ctx.session.id)
    await db.commit()
  clear_session_cookie(response)
  return {"ok": True}


@router.post("/password")
async def change_password(
  payload: PasswordChangeIn,
  ctx: AuthContext = Depends(require_login),
  db: AsyncSession = Depends(get_db),
) -> dict:
  _require_totp_session(ctx)
  ctx.user.password_hash = hash_password(payload.newPassword)
  ctx.user.must_change_password = False
  await destroy_user_sessions(db, ctx.user.id, except_id=ctx.session.id)
  await db.commit()
  return {"ok": True}


@router.post("/password/forgot")
async def password_forgot(
  payload: PasswordForgotIn,
  request: Request,
  db: AsyncSession = Depends(get_db),
  mailer: Mailer = Depends(get_mailer),
  notifier: Notifier = Depends(get_notifier),
) -> dict:
  limiter.check(f"auth:pwreset:forgot:ip:{client_ip(request)}", limit=int(settings.rate_limit_password_reset_ip_per_minute))

  # Always ok, so callers cannot probe which identifiers exist.
  try:
    u = await resolve_login(db, payload.login)
  except AmbiguousLogin:
    u = None
  if u is None or not await mailer.is_configured():
    return {"ok": True}

  token = password_reset_token_new()
  db.add(
    PasswordResetToken(
      user_id=u.id,
      token_hash=password_reset_token_hash(token),
      request_ip=client_ip(request),
      expires_at=datetime.now(timezone.utc) + timedelta(minutes=max(1, int(settings.password_reset_ttl_minutes))),
    )
  )
  await db.commit()

  reset_url = f"{_public_base_url(request)}/reset-password?token={token}"
  notifier.send(
    MailMessage(
      to=[u.email],
      subject="Password reset",
      text=(
        "A password reset was requested for your account.\n\n"
        f"Reset link: {reset_url}\n\n"
        f"The link expires in {int(settings.password_reset_ttl_minutes)} minutes. "
        "If you did not request this, you can ignore this email."
      ),
    )
  )
  return {"ok": True}


@router.post("/password/reset")
async def password_reset(payload: PasswordResetIn, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
  limiter.check(f"auth:pwreset:confirm:ip:{client_ip(request)}", limit=int(settings.rate_limit_password_reset_ip_per_minute))

  res = await db.execute(select(PasswordResetToken).where(PasswordResetToken.token_hash == password_reset_token_hash(payload.token)))
  t = res.scalar_one_or_none()
  if t is None or t.used_at is not None or t.expires_at <= datetime.now(timezone.utc):
    raise ValidationFailed("Invalid or expired token")
  ures = await db.execute(select(User).where(User.id == t.user_id))
  u = ures.scalar_one_or_none()
  if u is None:
    raise ValidationFailed("Invalid or expired token")

  t.used_at = datetime.now(timezone.utc)
  await _apply_password_reset(db, u, payload.newPassword)
  await db.commit()
  return {"ok": True}


@router.post("/password/reset-by-totp")
async def password_reset_by_totp(payload: PasswordResetByTotpIn, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
  limiter.check(f"auth:pwreset:totp:ip:{client_ip(request)}", limit=int(settings.rate_limit_password_reset_ip_per_minute))

  try:
    u = await resolve_login(db, payload.login)
  except AmbiguousLogin:
    u = None
  if u is None or not u.totp_enabled or not u.totp_secret_encrypted:
    raise ValidationFailed("Password reset not available")
  if not totp_verify(decrypt_secret(u.totp_secret_encrypted), payload.code):
    raise InvalidCode()

  await _apply_password_reset(db, u, payload.newPassword)
  await db.commit()
  return {"ok": True}


@router.post("/2fa/setup", response_model=TwoFactorSetupOut)
async def two_factor_setup(
  ctx: AuthContext = Depends(require_password_settled),
  db: AsyncSession = Depends(get_db),
) -> TwoFactorSetupOut:
  _require_totp_session(ctx)
  secret = totp_new_secret()
  ctx.user.totp_pending_secret_encrypted = encrypt_secret(secret)
  await db.commit()
  return TwoFactorSetupOut(secret=secret, otpauthUri=totp_provisioning_uri(secret, ctx.user.email))


@router.post("/2fa/enable", response_model=SessionStateOut)
async def two_factor_enable(
  payload: TwoFactorEnableIn,
  ctx: AuthContext = Depends(require_password_settled),
  db: AsyncSession = Depends(get_db),
) -> SessionStateOut:
  _require_totp_session(ctx)
  u = ctx.user
  if not u.totp_pending_secret_encrypted:
    raise ValidationFailed("2FA setup not started")
  pending = decrypt_secret(u.totp_pending_secret_encrypted)
  if not totp_verify(pending, payload.code):
    raise InvalidCode()

  u.totp_secret_encrypted = u.totp_pending_secret_encrypted
  u.totp_pending_secret_encrypted = None
  u.totp_enabled = True
  # Possession was just proven; no second prompt for this session.
  ctx.session.two_factor_passed = True
  await db.commit()
  return _state_out(u, ctx.session)


@router.post("/2fa/verify", response_model=SessionStateOut)
async def two_factor_verify(
  payload: TwoFactorVerifyIn,
  request: Request,
  response: Response,
  ctx: AuthContext = Depends(require_password_settled),
  db: AsyncSession = Depends(get_db),
) -> SessionStateOut:
  u = ctx.user
  if not u.totp_enabled or not u.totp_secret_encrypted:
    raise TwoFactorSetupRequired()
  if not totp_verify(decrypt_secret(u.totp_secret_encrypted), payload.code):
    raise InvalidCode()

  ctx.session.two_factor_passed = True
  remember_raw = await issue_trusted_device(db, user_id=u.id, request=request) if payload.rememberDevice else None
  await db.commit()
  if remember_raw:
    set_trusted_device_cookie(response, remember_raw)
  return _state_out(u, ctx.session)


@router.get("/profile", response_model=UserOut)
async def get_profile(ctx: AuthContext = Depends(require_authorized)) -> UserOut:
  return user_out(ctx.user)


@router.patch("/profile", response_model=UserOut)
async def update_profile(
  payload: ProfileUpdateIn,
  ctx: AuthContext = Depends(require_authorized),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  u = ctx.user
  fields_set = getattr(payload, "model_fields_set", set())
  if "name" in fields_set and payload.name is not None:
    u.name = payload.name.strip()
  if "email" in fields_set and payload.email is not None:
    email = payload.email.strip().lower()
    if "@" not in email:
      raise ValidationFailed("Invalid email")
    res = await db.execute(select(User.id).where(func.lower(User.email) == email, User.id != u.id))
    if res.scalar_one_or_none() is not None:
      raise Conflict("Email already in use")
    u.email = email
  if "defaultBoardId" in fields_set and payload.defaultBoardId is not None:
    if not await board_exists(db, payload.defaultBoardId):
      raise NotFound("Board not found")
    if not await can_access_board(db, user=u, board_id=payload.defaultBoardId):
      raise Forbidden("No board access")
    u.default_board_id = payload.defaultBoardId
    ctx.session.board_id = payload.defaultBoardId
  await db.commit()
  return user_out(u)


@router.post("/profile/avatar", response_model=UserOut)
async def upload_avatar(
  file: UploadFile = File(...),
  ctx: AuthContext = Depends(require_authorized),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  u = ctx.user
  ext = uploads.avatar_extension(file.content_type)
  data = await uploads.read_limited(file, limit=int(settings.max_avatar_bytes), what="Avatar")
  new_path = uploads.store("avatars", data, ext=ext)
  old_path = u.avatar_path
  u.avatar_path = new_path
  u.avatar_mime = (file.content_type or "").lower()
  try:
    await db.commit()
  except Exception:
    uploads.remove(new_path)
    raise
  uploads.remove(old_path)
  return user_out(u)


@router.delete("/profile/avatar", response_model=UserOut)
async def delete_avatar(ctx: AuthContext = Depends(require_authorized), db: AsyncSession = Depends(get_db)) -> UserOut:
  u = ctx.user
  old_path = u.avatar_path
  u.avatar_path = None
  u.avatar_mime = None
  await db.commit()
  uploads.remove(old_path)
  return user_out(u)


@router.get("/avatar/{user_id}")
async def avatar_file(
  user_id: str,
  _: AuthContext = Depends(require_authorized),
  db: AsyncSession = Depends(get_db),
) -> FileResponse:
  res = await db.execute(select(User).where(User.id == user_id))
  u = res.scalar_one_or_none()
  if u is None or not u.avatar_path or not os.path.isfile(u.avatar_path):
    raise NotFound("Avatar not found")
  return FileResponse(u.avatar_path, media_type=u.avatar_mime or "application/octet-stream")


def _mail_settings_out(rec: MailSettings | None) -> MailSettingsOut:
  if rec is None:
    return MailSettingsOut(enabled=False, host="", port=465, secure=True, user="", fromAddress="", passSet=False)
  return MailSettingsOut(
    enabled=bool(rec.enabled),
    host=rec.host or "",
    port=int(rec.port or 465),
    secure=bool(rec.secure),
    user=rec.username or "",
    fromAddress=rec.from_address or "",
    passSet=bool(rec.password_encrypted),
  )


async def _mail_settings_record(db: AsyncSession) -> MailSettings | None:
  res = await db.execute(select(MailSettings).where(MailSettings.id == MAIL_SETTINGS_ID))
  return res.scalar_one_or_none()


@router.get("/mail-settings", response_model=MailSettingsOut)
async def get_mail_settings(_: AuthContext = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> MailSettingsOut:
  return _mail_settings_out(await _mail_settings_record(db))


@router.put("/mail-settings", response_model=MailSettingsOut)
async def put_mail_settings(
  payload: MailSettingsIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  mailer: Mailer = Depends(get_mailer),
) -> MailSettingsOut:
  rec = await _mail_settings_record(db)
  fields_set = getattr(payload, "model_fields_set", set())
  if payload.enabled:
    host = payload.host if "host" in fields_set else (rec.host if rec else None)
    port = payload.port if "port" in fields_set else (rec.port if rec else None)
    user = payload.user if "user" in fields_set else (rec.username if rec else None)
    has_pass = bool(payload.password) or bool(rec and rec.password_encrypted)
    if not host or not port or not user or not has_pass:
      raise ValidationFailed("SMTP not configured")

  if rec is None:
    rec = MailSettings(id=MAIL_SETTINGS_ID, secure=True)
    db.add(rec)
  rec.enabled = payload.enabled
  if "host" in fields_set:
    rec.host = payload.host
  if "port" in fields_set:
    rec.port = payload.port
  if "secure" in fields_set:
    rec.secure = True if payload.secure is None else payload.secure
  if "user" in fields_set:
    rec.username = payload.user
  if "fromAddress" in fields_set:
    rec.from_address = payload.fromAddress
  if "password" in fields_set:
    rec.password_encrypted = encrypt_secret(payload.password) if payload.password else None
  await db.commit()
  mailer.cache.clear()
  return _mail_settings_out(rec)


@router.post("/mail-settings/test", response_model=MailSettingsTestOut)
async def test_mail_settings(
  payload: MailSettingsTestIn,
  _: AuthContext = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  mailer: Mailer = Depends(get_mailer),
) -> MailSettingsTestOut:
  saved = await _mail_settings_record(db)
  saved_pass = decrypt_secret(saved.password_encrypted) if saved and saved.password_encrypted else None
  host = payload.host or (saved.host if saved else None) or ""
  port = int(payload.port or (saved.port if saved else 0) or 0)
  secure = payload.secure if payload.secure is not None else (bool(saved.secure) if saved else True)
  user = payload.user or (saved.username if saved else None) or ""
  password = payload.password or saved_pass or ""
  from_address = payload.fromAddress or (saved.from_address if saved else None) or user
  if not host or not port or not user or not password:
    return MailSettingsTestOut(ok=False, error="SMTP not configured")

  cfg = MailConfig(host=host, port=port, secure=secure, user=user, password=password, from_address=from_address)
  try:
    await mailer.verify(cfg)
  except (smtplib.SMTPException, OSError) as exc:
    logger.info("mail settings test failed for %s:%s: %s", host, port, exc)
    return MailSettingsTestOut(ok=False, error=f"{type(exc).__name__}: {exc}")
  return MailSettingsTestOut(ok=True, fromAddress=from_address)
