from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from time import monotonic

from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import settings
from omnisync.errors import NotFound, NotLinked, SyncInProgress
from omnisync.metrics import sync_metrics
from omnisync.models import Task, utcnow
from omnisync.schemas import TaskPatch
from omnisync.store import BatchOp, TaskStore, TaskWriteDispatcher
from omnisync.sync.transcode import EPOCH, external_modified_at, external_to_local
from omnisync.tasks_api.client import TasksAuth, auth_from_settings, tasks_list_tasks

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
  success: bool
  added: int = 0
  updated: int = 0
  error: str | None = None


def _error_text(exc: BaseException) -> str:
  if isinstance(exc, asyncio.TimeoutError):
    return "Sync timed out"
  message = str(exc).strip()
  if message:
    return message
  return exc.__class__.__name__


async def _pull(store: TaskStore, *, project_id: str, list_id: str, auth: TasksAuth, counts: SyncResult) -> None:
  external = await tasks_list_tasks(auth=auth, list_id=list_id)

  by_external_id: dict[str, Task] = {}
  for t in await store.get_tasks_by_project(project_id):
    if t.external_task_id:
      by_external_id[t.external_task_id] = t

  seen: set[str] = set()
  for ext in external:
    if not ext.id or ext.id in seen:
      continue
    seen.add(ext.id)

    patch = external_to_local(ext, project_id, list_id)
    existing = by_external_id.get(ext.id)
    if existing is None:
      created = await store.create_task(project_id, patch)
      by_external_id[ext.id] = created
      counts.added += 1
      continue

    # Strictly newer wins; ties keep the local copy.
    local_modified = existing.updated_at or EPOCH
    if external_modified_at(ext) > local_modified:
      await store.update_task(existing.id, patch)
      counts.updated += 1


async def _ensure_still_bound(store: TaskStore, *, project_id: str, list_id: str) -> None:
  """Fails the sync when the project lost or changed its list mid-pull; tasks linked to the old list are unlinked."""
  current = await store.get_project(project_id)
  if current is not None and current.external_list_id == list_id:
    return
  stray = [t for t in await store.get_tasks_by_project(project_id) if t.external_list_id == list_id]
  if stray:
    await store.atomic_batch(
      [
        BatchOp(
          kind="update",
          task_id=t.id,
          patch=TaskPatch(external_task_id=None, external_list_id=None, external_origin=False),
        )
        for t in stray
      ]
    )
  raise NotLinked("Task list binding changed during sync")


async def _release_cancelled(store: TaskStore, project_id: str) -> None:
  await store.db.rollback()
  await store.update_project_sync_status(project_id, "error", error="Sync cancelled")


async def sync_project(
  db: AsyncSession,
  *,
  project_id: str,
  access_token: str,
  timeout_seconds: float | None = None,
  dispatcher: TaskWriteDispatcher | None = None,
  trigger: str = "manual",
  auth: TasksAuth | None = None,
) -> SyncResult:
  """
  Pull one project's external list into the local store.

  Raises NotFound / NotLinked before any network call and SyncInProgress when
  another sync holds the project's claim. Every other failure is recorded on
  the project (`sync_status="error"`) and returned as an unsuccessful result.
  """
  store = TaskStore(db, dispatcher=dispatcher)
  project = await store.get_project(project_id)
  if not project:
    raise NotFound("Project not found")
  list_id = project.external_list_id
  if not list_id:
    raise NotLinked("No external task list linked")

  stale_after = timedelta(seconds=settings.sync_claim_stale_seconds)
  if not await store.claim_project_sync(project_id, stale_after):
    raise SyncInProgress("A sync is already running for this project")

  auth = auth or auth_from_settings(access_token)
  timeout = timeout_seconds if timeout_seconds is not None else settings.sync_timeout_seconds
  counts = SyncResult(success=False)
  started = monotonic()
  try:
    await asyncio.wait_for(_pull(store, project_id=project_id, list_id=list_id, auth=auth, counts=counts), timeout=timeout)
    await _ensure_still_bound(store, project_id=project_id, list_id=list_id)
  except asyncio.CancelledError:
    logger.warning("Sync of project %s cancelled", project_id)
    await asyncio.shield(_release_cancelled(store, project_id))
    raise
  except Exception as e:
    err = _error_text(e)
    logger.warning("Sync failed for project %s: %s", project_id, err)
    # Tasks already written by the pull stand; the next pull reconciles the rest.
    await db.rollback()
    await store.update_project_sync_status(project_id, "error", error=err)
    result = SyncResult(success=False, added=counts.added, updated=counts.updated, error=err)
  else:
    await store.update_project_sync_status(project_id, "synced", last_sync_at=utcnow())
    logger.info("Synced project %s: added %d, updated %d", project_id, counts.added, counts.updated)
    result = SyncResult(success=True, added=counts.added, updated=counts.updated)

  sync_metrics.observe_sync(
    project_id=project_id,
    trigger=trigger,
    success=result.success,
    added=result.added,
    updated=result.updated,
    duration_ms=(monotonic() - started) * 1000,
    error=result.error,
  )
  return result
