from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.audit import write_audit, write_task_audit
from omnisync.deps import get_current_user, get_db, get_dispatcher, require_project_access, tasks_access_token
from omnisync.errors import InvalidArgument, NoRefreshCredential, NotFound, TokenExchangeFailed
from omnisync.models import Project, Task, User
from omnisync.notifications.membership import enqueue_member_enrollment
from omnisync.schemas import TaskCreateIn, TaskOut, TaskPatch, TaskUpdateIn
from omnisync.store import TaskStore, TaskWriteDispatcher, task_snapshot
from omnisync.sync.push import push_create, push_delete, push_update, resolve_push_access_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])

# camelCase API field -> TaskPatch field
_UPDATE_FIELDS = {
  "title": "title",
  "description": "description",
  "status": "status",
  "priority": "priority",
  "orderIndex": "order_index",
  "dueDate": "due_date",
  "assigneeId": "assignee_id",
  "assigneeName": "assignee_name",
  "tags": "tags",
}
_NOT_CLEARABLE = {"title", "status", "priority", "orderIndex"}


def _task_out(t: Task) -> TaskOut:
  return TaskOut(
    id=t.id,
    projectId=t.project_id,
    title=t.title,
    description=t.description or "",
    status=t.status,
    priority=t.priority,
    orderIndex=t.order_index,
    dueDate=t.due_date,
    completedAt=t.completed_at,
    assigneeId=t.assignee_id,
    assigneeName=t.assignee_name,
    tags=list(t.tags or []),
    externalTaskId=t.external_task_id,
    externalListId=t.external_list_id,
    externalOrigin=bool(t.external_origin),
    createdAt=t.created_at,
    updatedAt=t.updated_at,
  )


async def _push_token_or_none(db: AsyncSession, project: Project, supplied: str | None) -> str | None:
  try:
    return await resolve_push_access_token(db, project=project, supplied_access_token=supplied)
  except (NoRefreshCredential, TokenExchangeFailed) as e:
    logger.warning("No push credential for project %s: %s", project.id, e)
    return None


@router.get("/projects/{project_id}/tasks", response_model=list[TaskOut])
async def list_tasks(
  project_id: str,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> list[TaskOut]:
  await require_project_access(project_id, user, db)
  tasks = await TaskStore(db).get_tasks_by_project(project_id)
  return [_task_out(t) for t in tasks]


@router.post("/projects/{project_id}/tasks", response_model=TaskOut)
async def create_task(
  project_id: str,
  payload: TaskCreateIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: TaskWriteDispatcher = Depends(get_dispatcher),
  supplied_token: str | None = Depends(tasks_access_token),
) -> TaskOut:
  project = await require_project_access(project_id, user, db)
  bound = bool(project.external_list_id)
  access_token = await _push_token_or_none(db, project, supplied_token) if bound else None

  patch = TaskPatch(
    title=payload.title.strip(),
    description=payload.description or "",
    status=payload.status,
    priority=payload.priority,
    order_index=payload.orderIndex,
    due_date=payload.dueDate,
    completed_at=datetime.now(timezone.utc) if payload.status == "complete" else None,
    assignee_id=payload.assigneeId,
    assignee_name=payload.assigneeName,
    tags=list(payload.tags or []),
  )
  # The write trigger fires once the task is final, after push linked it.
  store = TaskStore(db, dispatcher=None if bound else dispatcher)
  t = await store.create_task(project.id, patch)
  if bound:
    t = await push_create(store, project=project, task=t, access_token=access_token)
    dispatcher.dispatch(t.id, None, task_snapshot(t))

  await write_task_audit(
    db,
    event_type="task.created",
    task=t,
    actor_id=user.id,
    payload={"title": t.title, "externalTaskId": t.external_task_id},
  )
  await enqueue_member_enrollment(db, project=project, user_id=t.assignee_id, task_id=t.id)
  await db.commit()
  return _task_out(t)


@router.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(
  task_id: str,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
) -> TaskOut:
  t = await TaskStore(db).get_task(task_id)
  if not t:
    raise NotFound("Task not found")
  await require_project_access(t.project_id, user, db)
  return _task_out(t)


@router.patch("/tasks/{task_id}", response_model=TaskOut)
async def update_task(
  task_id: str,
  payload: TaskUpdateIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: TaskWriteDispatcher = Depends(get_dispatcher),
  supplied_token: str | None = Depends(tasks_access_token),
) -> TaskOut:
  store = TaskStore(db, dispatcher=dispatcher)
  t = await store.get_task(task_id)
  if not t:
    raise NotFound("Task not found")
  project = await require_project_access(t.project_id, user, db)

  fields: dict[str, object] = {}
  for api_name in payload.model_fields_set:
    value = getattr(payload, api_name)
    if value is None and api_name in _NOT_CLEARABLE:
      raise InvalidArgument(f"{api_name} cannot be cleared")
    fields[_UPDATE_FIELDS[api_name]] = value
  if "status" in fields and fields["status"] != t.status:
    fields["completed_at"] = datetime.now(timezone.utc) if fields["status"] == "complete" else None
  if not fields:
    return _task_out(t)
  patch = TaskPatch(**fields)

  previous_assignee = t.assignee_id
  access_token = await _push_token_or_none(db, project, supplied_token) if t.is_linked() else None
  t = await store.update_task(t.id, patch)
  await push_update(store, project=project, task=t, patch=patch, access_token=access_token, actor_id=user.id)

  await write_task_audit(
    db,
    event_type="task.updated",
    task=t,
    actor_id=user.id,
    payload={"fields": sorted(payload.model_fields_set)},
  )
  if t.assignee_id and t.assignee_id != previous_assignee:
    await enqueue_member_enrollment(db, project=project, user_id=t.assignee_id, task_id=t.id)
  await db.commit()
  return _task_out(t)


@router.delete("/tasks/{task_id}")
async def delete_task(
  task_id: str,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: TaskWriteDispatcher = Depends(get_dispatcher),
  supplied_token: str | None = Depends(tasks_access_token),
) -> dict:
  store = TaskStore(db, dispatcher=dispatcher)
  t = await store.get_task(task_id)
  if not t:
    raise NotFound("Task not found")
  project = await require_project_access(t.project_id, user, db)
  # External delete must succeed first, so a credential failure aborts here.
  access_token = (
    await resolve_push_access_token(db, project=project, supplied_access_token=supplied_token) if t.is_linked() else None
  )
  external_task_id = t.external_task_id
  await push_delete(store, project=project, task=t, access_token=access_token)
  await write_audit(
    db,
    event_type="task.deleted",
    entity_type="Task",
    entity_id=task_id,
    project_id=project.id,
    task_id=task_id,
    actor_id=user.id,
    payload={"externalTaskId": external_task_id},
  )
  await db.commit()
  return {"ok": True}
