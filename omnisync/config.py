from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://omnisync:omnisync@db:5432/omnisync"
  app_secret: str = "dev-secret-change-me"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "v2026-10-18"
  build_sha: str = "dev"
  api_docs_enabled: bool = True

  log_level: str = "INFO"
  log_dir: str | None = None

  google_client_id: str | None = None
  google_client_secret: str | None = None
  google_token_url: str = "https://oauth2.googleapis.com/token"
  tasks_api_base_url: str = "https://tasks.googleapis.com/tasks/v1"
  tasks_user_agent: str = "OmniSync/0.1"
  tasks_http_timeout_seconds: float = 30.0

  sync_auto_enabled: bool = False
  sync_auto_interval_seconds: int = 300
  sync_concurrency: int = 4
  sync_timeout_seconds: float = 120.0
  sync_claim_stale_seconds: int = 900

  notify_enabled: bool = False
  notify_sender: str = "notifications@omnitask.local"
  notify_sender_name: str = "OmniTask"
  gmail_api_base_url: str = "https://gmail.googleapis.com/gmail/v1"
  gmail_scope: str = "https://www.googleapis.com/auth/gmail.send"
  service_account_email: str | None = None
  service_account_private_key: str | None = None
  app_base_url: str = "http://localhost:4200"

  membership_loop_interval_seconds: int = 30

  def notify_configured(self) -> bool:
    return bool(self.notify_enabled and self.service_account_email and self.service_account_private_key)


settings = Settings()
