from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.db import SessionLocal
from omnisync.errors import NotFound, PermissionDenied, Unauthenticated
from omnisync.models import ApiToken, Project, User
from omnisync.security import api_token_hash
from omnisync.store import TaskWriteDispatcher, task_write_dispatcher


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


def get_dispatcher() -> TaskWriteDispatcher:
  return task_write_dispatcher


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
  auth = request.headers.get("authorization")
  if not auth or not auth.lower().startswith("bearer "):
    raise Unauthenticated("User must be authenticated")
  token = auth.split(" ", 1)[1].strip()
  if not token:
    raise Unauthenticated("Invalid token")
  h = api_token_hash(token)
  tres = await db.execute(select(ApiToken).where(ApiToken.token_hash == h, ApiToken.revoked_at.is_(None)))
  t = tres.scalar_one_or_none()
  if not t:
    raise Unauthenticated("Invalid token")
  ures = await db.execute(select(User).where(User.id == t.user_id))
  u = ures.scalar_one_or_none()
  if not u:
    raise Unauthenticated("User not found")
  t.last_used_at = datetime.now(timezone.utc)
  await db.commit()
  return u


def tasks_access_token(x_tasks_access_token: str | None = Header(default=None)) -> str | None:
  token = (x_tasks_access_token or "").strip()
  return token or None


async def require_project_access(project_id: str, user: User, db: AsyncSession) -> Project:
  res = await db.execute(select(Project).where(Project.id == project_id))
  p = res.scalar_one_or_none()
  if not p:
    raise NotFound("Project not found")
  if not p.has_access(user.id):
    raise PermissionDenied("User does not have access to this project")
  return p


async def require_project_owner(project_id: str, user: User, db: AsyncSession) -> Project:
  p = await require_project_access(project_id, user, db)
  if p.owner_id != user.id:
    raise PermissionDenied("Only the project owner can change its task list binding")
  return p
