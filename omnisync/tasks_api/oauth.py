from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import settings
from omnisync.errors import InvalidArgument, NoRefreshCredential, TokenExchangeFailed
from omnisync.models import User
from omnisync.security import IntegrationSecretDecryptError, decrypt_integration_secret

logger = logging.getLogger(__name__)

# Exchanged tokens are reused only while they have at least this much lifetime left.
EXPIRY_SKEW = timedelta(seconds=60)


def resolve_interactive(supplied_access_token: str | None) -> str:
  token = (supplied_access_token or "").strip()
  if not token:
    raise InvalidArgument("Missing accessToken")
  return token


async def exchange_refresh_token(
  refresh_token: str,
  *,
  client_id: str | None = None,
  client_secret: str | None = None,
  token_url: str | None = None,
  transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[str, int | None]:
  """Standard refresh_token grant. Returns (access_token, expires_in)."""
  form = {
    "grant_type": "refresh_token",
    "refresh_token": refresh_token,
    "client_id": client_id if client_id is not None else (settings.google_client_id or ""),
    "client_secret": client_secret if client_secret is not None else (settings.google_client_secret or ""),
  }
  try:
    async with httpx.AsyncClient(timeout=20, transport=transport) as client:
      r = await client.post(token_url or settings.google_token_url, data=form, headers={"Accept": "application/json"})
  except httpx.HTTPError as e:
    raise TokenExchangeFailed(f"Token endpoint unreachable: {e.__class__.__name__}") from e

  try:
    data = r.json()
  except Exception:
    data = {}
  if r.status_code >= 400:
    err = str(data.get("error") or "") if isinstance(data, dict) else ""
    desc = str(data.get("error_description") or "") if isinstance(data, dict) else ""
    detail = ": ".join([x for x in (err, desc) if x]) or (r.text or "")[:200]
    raise TokenExchangeFailed(f"Token exchange failed ({r.status_code}) {detail}".strip())
  token = data.get("access_token") if isinstance(data, dict) else None
  if not isinstance(token, str) or not token:
    raise TokenExchangeFailed("Token endpoint returned no access_token")
  expires_in = data.get("expires_in")
  return token, (int(expires_in) if isinstance(expires_in, (int, float)) else None)


@dataclass
class _CachedToken:
  access_token: str
  expires_at: datetime | None


class CredentialProvider:
  """
  Resolves bearer credentials for the scheduled path.

  One instance per scheduler tick; exchanged tokens are memoized per user so
  several projects of the same owner share one exchange. Nothing is persisted.
  """

  def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._transport = transport
    self._cache: dict[str, _CachedToken] = {}
    self._locks: dict[str, asyncio.Lock] = {}

  def invalidate(self, user_id: str) -> None:
    self._cache.pop(user_id, None)

  async def resolve_scheduled(self, db: AsyncSession, user_id: str) -> str:
    # Concurrent projects of one owner wait for a single exchange.
    async with self._locks.setdefault(user_id, asyncio.Lock()):
      return await self._resolve_locked(db, user_id)

  async def _resolve_locked(self, db: AsyncSession, user_id: str) -> str:
    cached = self._cache.get(user_id)
    now = datetime.now(timezone.utc)
    if cached and (cached.expires_at is None or cached.expires_at - EXPIRY_SKEW > now):
      return cached.access_token

    res = await db.execute(select(User.tasks_refresh_token_encrypted).where(User.id == user_id))
    encrypted = res.scalar_one_or_none()
    if not encrypted:
      raise NoRefreshCredential(f"No refresh credential stored for user {user_id}")
    try:
      refresh_token = decrypt_integration_secret(encrypted)
    except IntegrationSecretDecryptError as e:
      raise TokenExchangeFailed(str(e)) from e

    token, expires_in = await exchange_refresh_token(refresh_token, transport=self._transport)
    expires_at = now + timedelta(seconds=expires_in) if expires_in else None
    self._cache[user_id] = _CachedToken(access_token=token, expires_at=expires_at)
    logger.debug("Exchanged refresh credential for user %s (expires_in=%s)", user_id, expires_in)
    return token


async def resolve_scheduled(db: AsyncSession, user_id: str) -> str:
  return await CredentialProvider().resolve_scheduled(db, user_id)
