from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.audit import write_task_audit
from omnisync.errors import PushFailed
from omnisync.models import Project, Task
from omnisync.schemas import TaskPatch
from omnisync.store import TaskStore, task_snapshot
from omnisync.sync.transcode import local_to_external
from omnisync.tasks_api.client import (
  TasksApiError,
  TasksAuth,
  auth_from_settings,
  tasks_create_task,
  tasks_delete_task,
  tasks_update_task,
)
from omnisync.tasks_api.oauth import CredentialProvider, resolve_interactive

logger = logging.getLogger(__name__)

# Fields that never leave the local store.
_LOCAL_ONLY = {"project_id", "priority", "order_index", "assignee_id", "assignee_name", "tags"}


def _error_text(exc: Exception) -> str:
  if isinstance(exc, TasksApiError):
    return f"Tasks API {exc.status_code}: {exc.message}"
  message = str(exc).strip()
  return message or exc.__class__.__name__


def _full_patch(task: Task) -> TaskPatch:
  snap = task_snapshot(task)
  return TaskPatch(
    title=snap["title"],
    description=snap["description"],
    status=snap["status"],
    due_date=snap["due_date"],
    completed_at=snap["completed_at"],
  )


async def resolve_push_access_token(
  db: AsyncSession,
  *,
  project: Project,
  supplied_access_token: str | None,
  provider: CredentialProvider | None = None,
) -> str:
  """Caller-supplied access token when present, else the project owner's stored refresh credential."""
  if (supplied_access_token or "").strip():
    return resolve_interactive(supplied_access_token)
  return await (provider or CredentialProvider()).resolve_scheduled(db, project.owner_id)


async def push_create(
  store: TaskStore,
  *,
  project: Project,
  task: Task,
  access_token: str | None,
  auth: TasksAuth | None = None,
) -> Task:
  if not project.external_list_id:
    return task
  list_id = project.external_list_id
  try:
    if auth is None:
      if not access_token:
        raise PushFailed("No access credential available for push")
      auth = auth_from_settings(access_token)
    created = await tasks_create_task(auth=auth, list_id=list_id, task=local_to_external(_full_patch(task)))
    if not created.id:
      raise PushFailed("External task created without id")
  except Exception as e:
    # A bound project never keeps a task that has no external counterpart.
    logger.warning("Push create failed for task %s; removing local copy: %s", task.id, _error_text(e))
    await store.db.rollback()
    await store.delete_task(task.id)
    if isinstance(e, PushFailed):
      raise
    raise PushFailed(f"Failed to create external task: {_error_text(e)}") from e

  return await store.update_task(
    task.id,
    TaskPatch(external_task_id=created.id, external_list_id=list_id),
  )


async def push_update(
  store: TaskStore,
  *,
  project: Project,
  task: Task,
  patch: TaskPatch,
  access_token: str | None,
  actor_id: str | None = None,
  auth: TasksAuth | None = None,
) -> bool:
  """Mirror changed fields outward. Failure is logged and audited; the local update stands."""
  if not project.external_list_id or not task.is_linked():
    return False
  outward = {k: v for k, v in patch.changes().items() if k not in _LOCAL_ONLY}
  if not outward:
    return False
  ext = local_to_external(TaskPatch(**outward))
  try:
    if auth is None:
      if not access_token:
        raise PushFailed("No access credential available for push")
      auth = auth_from_settings(access_token)
    await tasks_update_task(auth=auth, list_id=task.external_list_id, task_id=task.external_task_id, task=ext)
  except Exception as e:
    err = _error_text(e)
    logger.warning("Push update failed for task %s (%s): %s", task.id, task.external_task_id, err)
    await write_task_audit(
      store.db,
      event_type="task.push.update_failed",
      task=task,
      actor_id=actor_id,
      payload={"externalTaskId": task.external_task_id, "fields": sorted(outward), "error": err},
    )
    await store.db.commit()
    return False
  return True


async def push_delete(
  store: TaskStore,
  *,
  project: Project,
  task: Task,
  access_token: str | None,
  auth: TasksAuth | None = None,
) -> None:
  """External delete first; the local record goes only once the provider copy is gone."""
  if task.is_linked():
    auth = auth or auth_from_settings(access_token or "")
    try:
      await tasks_delete_task(auth=auth, list_id=task.external_list_id, task_id=task.external_task_id)
    except TasksApiError as e:
      if e.status_code != 404:
        logger.warning("Push delete failed for task %s; keeping local copy: %s", task.id, _error_text(e))
        raise PushFailed(f"Failed to delete external task: {_error_text(e)}") from e
  await store.delete_task(task.id)
