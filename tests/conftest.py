from __future__ import annotations

import os
import tempfile
from pathlib import Path

_TEST_DB = Path(tempfile.gettempdir()) / "omnisync_test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")

import pytest
from httpx import ASGITransport, AsyncClient

from omnisync.config import settings
from omnisync.db import SessionLocal, engine
from omnisync.main import app
from omnisync.models import ApiToken, Base, Project, Task, User, utcnow
from omnisync.security import api_token_hash, api_token_new, encrypt_secret, token_hint
from omnisync.store import task_write_dispatcher


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.drop_all)
    await conn.run_sync(Base.metadata.create_all)
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests() -> None:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. omnisync_test)."
    )
  task_write_dispatcher.clear()
  await _reset_db()
  yield
  await task_write_dispatcher.drain()
  task_write_dispatcher.clear()
  await engine.dispose()


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


async def create_user(email: str, name: str | None = None, *, refresh_token: str | None = None) -> User:
  async with SessionLocal() as db:
    u = User(
      email=email,
      name=name or email.split("@", 1)[0],
      tasks_refresh_token_encrypted=encrypt_secret(refresh_token) if refresh_token else None,
    )
    db.add(u)
    await db.commit()
    return u


async def api_headers(user: User) -> dict[str, str]:
  token = api_token_new()
  async with SessionLocal() as db:
    db.add(ApiToken(user_id=user.id, name="test", token_hash=api_token_hash(token), token_hint=token_hint(token)))
    await db.commit()
  return {"Authorization": f"Bearer {token}"}


async def create_project(
  owner: User,
  *,
  name: str = "Launch",
  list_id: str | None = "list-1",
  sync_enabled: bool = True,
  member_ids: list[str] | None = None,
) -> Project:
  async with SessionLocal() as db:
    p = Project(
      name=name,
      owner_id=owner.id,
      member_ids=list(member_ids or []),
      external_list_id=list_id,
      sync_enabled=sync_enabled,
    )
    db.add(p)
    await db.commit()
    return p


async def create_task(project: Project, **fields) -> Task:
  async with SessionLocal() as db:
    now = fields.pop("updated_at", None) or utcnow()
    t = Task(project_id=project.id, title=fields.pop("title", "Local task"), created_at=now, updated_at=now, tags=[], **fields)
    db.add(t)
    await db.commit()
    return t


async def load_task(task_id: str) -> Task | None:
  async with SessionLocal() as db:
    return await db.get(Task, task_id)


async def load_project(project_id: str) -> Project | None:
  async with SessionLocal() as db:
    return await db.get(Project, project_id)
