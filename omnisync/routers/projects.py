from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.audit import write_audit
from omnisync.config import settings
from omnisync.deps import (
  get_current_user,
  get_db,
  get_dispatcher,
  require_project_access,
  require_project_owner,
  tasks_access_token,
)
from omnisync.errors import InvalidArgument, SyncInProgress
from omnisync.models import Project, User
from omnisync.schemas import ExternalTaskListOut, ProjectCreateIn, ProjectOut, ProjectTaskListIn, TaskPatch
from omnisync.store import BatchOp, TaskStore, TaskWriteDispatcher
from omnisync.sync.push import resolve_push_access_token
from omnisync.tasks_api.client import (
  TasksApiError,
  auth_from_settings,
  tasks_create_tasklist,
  tasks_delete_tasklist,
  tasks_list_tasklists,
)
from omnisync.tasks_api.oauth import resolve_interactive

logger = logging.getLogger(__name__)

router = APIRouter(tags=["projects"])


def _project_out(p: Project) -> ProjectOut:
  return ProjectOut(
    id=p.id,
    name=p.name,
    ownerId=p.owner_id,
    memberIds=list(p.member_ids or []),
    externalListId=p.external_list_id,
    syncEnabled=bool(p.sync_enabled),
    syncStatus=p.sync_status,
    syncError=p.sync_error,
    lastSyncAt=p.last_sync_at,
    createdAt=p.created_at,
  )


@router.post("/projects", response_model=ProjectOut)
async def create_project(
  payload: ProjectCreateIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> ProjectOut:
  members = [m for m in dict.fromkeys(payload.memberIds) if m and m != user.id]
  p = Project(name=payload.name.strip(), owner_id=user.id, member_ids=members)
  db.add(p)
  await db.flush()
  await write_audit(
    db,
    event_type="project.created",
    entity_type="Project",
    entity_id=p.id,
    project_id=p.id,
    actor_id=user.id,
    payload={"name": p.name, "memberIds": members},
  )
  await db.commit()
  return _project_out(p)


@router.get("/projects", response_model=list[ProjectOut])
async def list_projects(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> list[ProjectOut]:
  res = await db.execute(select(Project).order_by(Project.created_at.asc()))
  # member_ids is a JSON column; membership is checked per row.
  return [_project_out(p) for p in res.scalars().all() if p.has_access(user.id)]


@router.get("/projects/{project_id}", response_model=ProjectOut)
async def get_project(
  project_id: str,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> ProjectOut:
  p = await require_project_access(project_id, user, db)
  return _project_out(p)


@router.get("/tasklists", response_model=list[ExternalTaskListOut])
async def list_tasklists(
  user: User = Depends(get_current_user),
  supplied_token: str | None = Depends(tasks_access_token),
) -> list[ExternalTaskListOut]:
  access_token = resolve_interactive(supplied_token)
  lists = await tasks_list_tasklists(auth=auth_from_settings(access_token))
  return [ExternalTaskListOut(id=tl.id, title=tl.title, updated=tl.updated) for tl in lists]


@router.post("/projects/{project_id}/tasklist", response_model=ProjectOut)
async def link_tasklist(
  project_id: str,
  payload: ProjectTaskListIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  supplied_token: str | None = Depends(tasks_access_token),
) -> ProjectOut:
  p = await require_project_owner(project_id, user, db)
  if p.external_list_id:
    raise InvalidArgument("Project is already linked to a task list")

  list_id = payload.listId
  created = False
  if not list_id:
    access_token = await resolve_push_access_token(db, project=p, supplied_access_token=supplied_token)
    tl = await tasks_create_tasklist(auth=auth_from_settings(access_token), title=p.name)
    list_id = tl.id
    created = True

  p.external_list_id = list_id
  p.sync_enabled = bool(payload.enableSync)
  p.sync_status = None
  p.sync_error = None
  await write_audit(
    db,
    event_type="project.tasklist.linked",
    entity_type="Project",
    entity_id=p.id,
    project_id=p.id,
    actor_id=user.id,
    payload={"listId": list_id, "created": created, "syncEnabled": p.sync_enabled},
  )
  await db.commit()
  logger.info("Project %s linked to task list %s", p.id, list_id)
  return _project_out(p)


@router.delete("/projects/{project_id}/tasklist", response_model=ProjectOut)
async def unlink_tasklist(
  project_id: str,
  delete_remote: bool = True,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: TaskWriteDispatcher = Depends(get_dispatcher),
  supplied_token: str | None = Depends(tasks_access_token),
) -> ProjectOut:
  p = await require_project_owner(project_id, user, db)
  list_id = p.external_list_id
  if not list_id:
    raise InvalidArgument("Project is not linked to a task list")

  # Holding the sync claim keeps a pull from relinking tasks to the list being removed.
  store = TaskStore(db, dispatcher=dispatcher)
  prev_status, prev_error = p.sync_status, p.sync_error
  if not await store.claim_project_sync(p.id, timedelta(seconds=settings.sync_claim_stale_seconds)):
    raise SyncInProgress("A sync is running for this project; try again when it finishes")

  try:
    if delete_remote:
      access_token = await resolve_push_access_token(db, project=p, supplied_access_token=supplied_token)
      try:
        await tasks_delete_tasklist(auth=auth_from_settings(access_token), list_id=list_id)
      except TasksApiError as e:
        if e.status_code != 404:
          raise

    linked = [t for t in await store.get_tasks_by_project(p.id) if t.external_task_id or t.external_list_id]
    await store.atomic_batch(
      [
        BatchOp(
          kind="update",
          task_id=t.id,
          patch=TaskPatch(external_task_id=None, external_list_id=None, external_origin=False),
        )
        for t in linked
      ]
    )
  except Exception:
    await db.rollback()
    await store.update_project_sync_status(p.id, prev_status, error=prev_error)
    raise

  p = await store.get_project(p.id)
  p.external_list_id = None
  p.sync_enabled = False
  p.sync_status = None
  p.sync_error = None
  p.sync_claimed_at = None
  await write_audit(
    db,
    event_type="project.tasklist.unlinked",
    entity_type="Project",
    entity_id=p.id,
    project_id=p.id,
    actor_id=user.id,
    payload={"listId": list_id, "deletedRemote": delete_remote, "tasksUnlinked": len(linked)},
  )
  await db.commit()
  return _project_out(p)
