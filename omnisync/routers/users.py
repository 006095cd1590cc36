from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.audit import write_audit
from omnisync.deps import get_current_user, get_db
from omnisync.models import User
from omnisync.schemas import TasksCredentialIn, UserOut
from omnisync.security import encrypt_secret

router = APIRouter(prefix="/users", tags=["users"])


def _user_out(u: User) -> UserOut:
  return UserOut(id=u.id, email=u.email, name=u.name, tasksLinked=bool(u.tasks_refresh_token_encrypted))


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> UserOut:
  return _user_out(user)


@router.put("/me/tasks-credential", response_model=UserOut)
async def store_tasks_credential(
  payload: TasksCredentialIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  user.tasks_refresh_token_encrypted = encrypt_secret(payload.refreshToken.strip())
  await write_audit(
    db,
    event_type="user.tasks_credential.stored",
    entity_type="User",
    entity_id=user.id,
    actor_id=user.id,
  )
  await db.commit()
  return _user_out(user)


@router.delete("/me/tasks-credential", response_model=UserOut)
async def clear_tasks_credential(
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> UserOut:
  user.tasks_refresh_token_encrypted = None
  await write_audit(
    db,
    event_type="user.tasks_credential.cleared",
    entity_type="User",
    entity_id=user.id,
    actor_id=user.id,
  )
  await db.commit()
  return _user_out(user)
