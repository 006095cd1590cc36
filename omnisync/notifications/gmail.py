from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import httpx
import jwt

from omnisync.config import settings

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class GmailSendError(RuntimeError):
  def __init__(self, message: str, *, status_code: int = 0) -> None:
    super().__init__(message)
    self.status_code = status_code


@dataclass(frozen=True)
class EmailContent:
  to: str
  subject: str
  html: str


@dataclass
class _AuthHandle:
  access_token: str
  expires_at: datetime


class TransportAuthCache:
  """Authorization handle for the mail transport, reused until invalidated or expired."""

  def __init__(self) -> None:
    self._handle: _AuthHandle | None = None
    self.acquired = 0

  def get(self) -> str | None:
    h = self._handle
    if h is None:
      return None
    if h.expires_at - timedelta(seconds=60) <= datetime.now(timezone.utc):
      self._handle = None
      return None
    return h.access_token

  def put(self, access_token: str, expires_in: int | None) -> None:
    self.acquired += 1
    self._handle = _AuthHandle(
      access_token=access_token,
      expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in or 3600)),
    )

  def invalidate(self) -> None:
    self._handle = None


def build_raw_message(content: EmailContent, *, sender: str, sender_name: str | None = None) -> str:
  m = EmailMessage()
  m["From"] = formataddr((sender_name, sender)) if sender_name else sender
  m["To"] = content.to
  m["Subject"] = content.subject
  m.set_content(content.html, subtype="html")
  return base64.urlsafe_b64encode(m.as_bytes()).decode("ascii")


class GmailTransport:
  """
  Sends mail through the Gmail API as a service account impersonating `sender`.

  The service account signs an RS256 assertion with `sub=sender`; the token
  endpoint trades it for a bearer token that the `auth_cache` keeps between sends.
  """

  def __init__(
    self,
    *,
    auth_cache: TransportAuthCache,
    sender: str | None = None,
    sender_name: str | None = None,
    service_account_email: str | None = None,
    private_key: str | None = None,
    token_url: str | None = None,
    api_base_url: str | None = None,
    scope: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
  ) -> None:
    self.auth_cache = auth_cache
    self.sender = sender or settings.notify_sender
    self.sender_name = sender_name if sender_name is not None else settings.notify_sender_name
    self.service_account_email = service_account_email or settings.service_account_email or ""
    self.private_key = private_key or settings.service_account_private_key or ""
    self.token_url = token_url or settings.google_token_url
    self.api_base_url = (api_base_url or settings.gmail_api_base_url).rstrip("/")
    self.scope = scope or settings.gmail_scope
    self.transport = transport

  def _assertion(self) -> str:
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
      "iss": self.service_account_email,
      "sub": self.sender,
      "scope": self.scope,
      "aud": self.token_url,
      "iat": int(now.timestamp()),
      "exp": int((now + timedelta(minutes=60)).timestamp()),
    }
    # Keys from env files often carry literal "\n" sequences.
    key = self.private_key.replace("\\n", "\n")
    return jwt.encode(claims, key, algorithm="RS256")

  async def _authorize(self, client: httpx.AsyncClient) -> str:
    cached = self.auth_cache.get()
    if cached:
      return cached
    if not self.service_account_email or not self.private_key:
      raise GmailSendError("Mail service account is not configured")
    r = await client.post(
      self.token_url,
      data={"grant_type": JWT_BEARER_GRANT, "assertion": self._assertion()},
      headers={"Accept": "application/json"},
    )
    try:
      data = r.json()
    except ValueError:
      data = {}
    if r.status_code >= 400 or not isinstance(data, dict) or not data.get("access_token"):
      detail = data.get("error_description") or data.get("error") if isinstance(data, dict) else None
      raise GmailSendError(f"Service account authorization failed: {detail or r.status_code}", status_code=r.status_code)
    expires_in = data.get("expires_in")
    self.auth_cache.put(str(data["access_token"]), int(expires_in) if isinstance(expires_in, (int, float)) else None)
    return str(data["access_token"])

  async def send(self, content: EmailContent) -> dict[str, Any]:
    raw = build_raw_message(content, sender=self.sender, sender_name=self.sender_name)
    try:
      async with httpx.AsyncClient(timeout=20, transport=self.transport) as client:
        token = await self._authorize(client)
        r = await client.post(
          f"{self.api_base_url}/users/{self.sender}/messages/send",
          json={"raw": raw},
          headers={"Authorization": f"Bearer {token}"},
        )
    except httpx.HTTPError as e:
      self.auth_cache.invalidate()
      raise GmailSendError(f"{e.__class__.__name__}: {e}".strip(": ")) from e
    except GmailSendError:
      self.auth_cache.invalidate()
      raise
    if r.status_code >= 400:
      # The handle may be revoked or scoped wrong; acquire a fresh one next time.
      self.auth_cache.invalidate()
      raise GmailSendError(f"Gmail send failed ({r.status_code}): {(r.text or '')[:300]}", status_code=r.status_code)
    data = r.json() if r.content else {}
    logger.debug("Sent mail to %s (id=%s)", content.to, data.get("id") if isinstance(data, dict) else None)
    return data if isinstance(data, dict) else {}
