from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from omnisync.db import SessionLocal
from omnisync.errors import InvalidArgument, NoRefreshCredential, TokenExchangeFailed
from omnisync.models import User
from omnisync.tasks_api.oauth import CredentialProvider, exchange_refresh_token, resolve_interactive

from conftest import create_user

pytestmark = pytest.mark.anyio


async def test_resolve_interactive_passes_token_through() -> None:
  assert resolve_interactive("abc") == "abc"
  with pytest.raises(InvalidArgument):
    resolve_interactive("   ")
  with pytest.raises(InvalidArgument):
    resolve_interactive(None)


async def test_exchange_posts_refresh_grant() -> None:
  seen: dict = {}

  def handler(request: httpx.Request) -> httpx.Response:
    seen.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
    return httpx.Response(200, json={"access_token": "at-1", "expires_in": 3599})

  token, expires_in = await exchange_refresh_token(
    "rt-1",
    client_id="cid",
    client_secret="secret",
    token_url="https://oauth.test/token",
    transport=httpx.MockTransport(handler),
  )
  assert (token, expires_in) == ("at-1", 3599)
  assert seen == {"grant_type": "refresh_token", "refresh_token": "rt-1", "client_id": "cid", "client_secret": "secret"}


async def test_exchange_failure_carries_provider_error() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been revoked."})

  with pytest.raises(TokenExchangeFailed) as ei:
    await exchange_refresh_token("rt", token_url="https://oauth.test/token", transport=httpx.MockTransport(handler))
  assert "invalid_grant" in ei.value.message
  assert "revoked" in ei.value.message


async def test_exchange_without_access_token_fails() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"token_type": "Bearer"})

  with pytest.raises(TokenExchangeFailed):
    await exchange_refresh_token("rt", token_url="https://oauth.test/token", transport=httpx.MockTransport(handler))


async def test_scheduled_resolution_requires_stored_credential() -> None:
  u = await create_user("nocred@example.com")
  async with SessionLocal() as db:
    with pytest.raises(NoRefreshCredential):
      await CredentialProvider().resolve_scheduled(db, u.id)


async def test_scheduled_resolution_caches_per_user() -> None:
  calls: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    rt = parse_qs(request.content.decode())["refresh_token"][0]
    calls.append(rt)
    return httpx.Response(200, json={"access_token": f"at-for-{rt}", "expires_in": 3600})

  a = await create_user("a@example.com", refresh_token="rt-a")
  b = await create_user("b@example.com", refresh_token="rt-b")
  provider = CredentialProvider(transport=httpx.MockTransport(handler))
  async with SessionLocal() as db:
    assert await provider.resolve_scheduled(db, a.id) == "at-for-rt-a"
    assert await provider.resolve_scheduled(db, a.id) == "at-for-rt-a"
    assert await provider.resolve_scheduled(db, b.id) == "at-for-rt-b"
    provider.invalidate(a.id)
    assert await provider.resolve_scheduled(db, a.id) == "at-for-rt-a"
  assert calls == ["rt-a", "rt-b", "rt-a"]


async def test_undecryptable_credential_is_exchange_failure() -> None:
  u = await create_user("broken@example.com")
  async with SessionLocal() as db:
    row = await db.get(User, u.id)
    row.tasks_refresh_token_encrypted = "not-a-fernet-token"
    await db.commit()
    with pytest.raises(TokenExchangeFailed):
      await CredentialProvider().resolve_scheduled(db, u.id)


async def test_concurrent_resolution_for_one_user_exchanges_once() -> None:
  calls: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    calls.append(parse_qs(request.content.decode())["refresh_token"][0])
    return httpx.Response(200, json={"access_token": "at-shared", "expires_in": 3600})

  owner = await create_user("owner@example.com", refresh_token="rt-owner")
  provider = CredentialProvider(transport=httpx.MockTransport(handler))

  async def resolve() -> str:
    async with SessionLocal() as db:
      return await provider.resolve_scheduled(db, owner.id)

  tokens = await asyncio.gather(resolve(), resolve(), resolve())
  assert tokens == ["at-shared"] * 3
  assert calls == ["rt-owner"]
