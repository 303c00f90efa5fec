from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://taskboard:taskboard@db:5432/taskboard"
  app_secret: str = "dev-secret-change-me"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "0.1.0"
  log_level: str = "INFO"

  cookie_secure: bool = False
  cookie_domain: str | None = None
  session_ttl_hours: int = 12
  mfa_trusted_device_ttl_days: int = 30
  password_reset_ttl_minutes: int = 60
  public_base_url: str | None = None

  rate_limit_login_ip_per_minute: int = 60
  rate_limit_login_identifier_per_minute: int = 20
  rate_limit_password_reset_ip_per_minute: int = 10

  # Env fallback for outbound mail; admin-saved mail settings take precedence.
  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_secure: bool = False
  smtp_user: str | None = None
  smtp_pass: str | None = None
  smtp_from: str | None = None
  smtp_timeout_seconds: float = 8.0
  mail_transport_ttl_seconds: float = 30.0

  upload_dir: str = "data/uploads"
  max_attachment_bytes: int = 50 * 1024 * 1024
  max_avatar_bytes: int = 2 * 1024 * 1024

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  cors_origin_regex: str = r"^http://(localhost|127\.0\.0\.1):3000$"
  trusted_hosts: str = "localhost,127.0.0.1,api,web"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]

  def is_test_db(self) -> bool:
    return "test" in self.database_url.rsplit("/", 1)[-1]


settings = Settings()
