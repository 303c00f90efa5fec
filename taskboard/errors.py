from __future__ import annotations

from typing import Any

from fastapi import status


class AppError(Exception):
  """Domain failure rendered as {"detail": {"code", "message", ...}}."""

  code = "Internal"
  status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
  default_message = "Internal error"

  def __init__(self, message: str | None = None, *, status_code: int | None = None, headers: dict[str, str] | None = None, **extra: Any) -> None:
    self.message = message or self.default_message
    if status_code is not None:
      self.status_code = status_code
    self.headers = headers
    self.extra = extra
    super().__init__(self.message)

  def to_detail(self) -> dict[str, Any]:
    return {"code": self.code, "message": self.message, **self.extra}


class ValidationFailed(AppError):
  code = "ValidationError"
  status_code = status.HTTP_400_BAD_REQUEST
  default_message = "Invalid input"


class Unauthorized(AppError):
  code = "Unauthorized"
  status_code = status.HTTP_401_UNAUTHORIZED
  default_message = "Not authenticated"


class InvalidCredentials(AppError):
  code = "InvalidCredentials"
  status_code = status.HTTP_401_UNAUTHORIZED
  default_message = "Invalid credentials"


class TwoFactorRequired(AppError):
  code = "TwoFactorRequired"
  status_code = status.HTTP_401_UNAUTHORIZED
  default_message = "Two-factor required"


class InvalidCode(AppError):
  code = "InvalidCode"
  status_code = status.HTTP_400_BAD_REQUEST
  default_message = "Invalid code"


class TwoFactorSetupRequired(AppError):
  code = "TwoFactorSetupRequired"
  status_code = status.HTTP_403_FORBIDDEN
  default_message = "2FA setup required"


class PasswordChangeRequired(AppError):
  code = "PasswordChangeRequired"
  status_code = status.HTTP_403_FORBIDDEN
  default_message = "Password change required"


class Forbidden(AppError):
  code = "Forbidden"
  status_code = status.HTTP_403_FORBIDDEN
  default_message = "Forbidden"


class NotFound(AppError):
  code = "NotFound"
  status_code = status.HTTP_404_NOT_FOUND
  default_message = "Not found"


class Conflict(AppError):
  code = "Conflict"
  status_code = status.HTTP_409_CONFLICT
  default_message = "Conflict"


class AmbiguousLogin(Conflict):
  code = "AmbiguousLogin"
  default_message = "Login is ambiguous, use email"


class BoardNotSelected(AppError):
  code = "BoardNotSelected"
  status_code = status.HTTP_400_BAD_REQUEST
  default_message = "Board not selected"


class PayloadTooLarge(AppError):
  code = "PayloadTooLarge"
  status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
  default_message = "Payload too large"


class RateLimited(AppError):
  code = "RateLimited"
  status_code = status.HTTP_429_TOO_MANY_REQUESTS
  default_message = "Too many requests"
