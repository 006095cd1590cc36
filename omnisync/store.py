from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Literal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.errors import InvalidArgument, NotFound
from omnisync.models import Project, Task, User, utcnow
from omnisync.schemas import TaskPatch

logger = logging.getLogger(__name__)

TaskSnapshot = dict[str, Any]
TaskWriteListener = Callable[[str, "TaskSnapshot | None", "TaskSnapshot | None"], Awaitable[None]]

# Fields a patch may write; project_id is fixed at creation.
_WRITABLE = (
  "title",
  "description",
  "status",
  "priority",
  "order_index",
  "due_date",
  "completed_at",
  "assignee_id",
  "assignee_name",
  "tags",
  "external_task_id",
  "external_list_id",
  "external_origin",
)
_NOT_NULL_DEFAULTS: dict[str, Any] = {
  "description": "",
  "status": "open",
  "priority": "medium",
  "order_index": 0,
  "tags": [],
  "external_origin": False,
}


def task_snapshot(task: Task) -> TaskSnapshot:
  return {
    "id": task.id,
    "project_id": task.project_id,
    "title": task.title,
    "description": task.description,
    "status": task.status,
    "priority": task.priority,
    "order_index": task.order_index,
    "due_date": task.due_date,
    "completed_at": task.completed_at,
    "assignee_id": task.assignee_id,
    "assignee_name": task.assignee_name,
    "tags": list(task.tags or []),
    "external_task_id": task.external_task_id,
    "external_list_id": task.external_list_id,
    "external_origin": bool(task.external_origin),
    "created_at": task.created_at,
    "updated_at": task.updated_at,
  }


class TaskWriteDispatcher:
  """
  Record-write trigger.

  Listeners receive `(task_id, before, after)` after the write committed and run as
  background tasks, so a slow or failing listener never holds up the writer.
  """

  def __init__(self) -> None:
    self._listeners: list[TaskWriteListener] = []
    self._pending: set[asyncio.Task[None]] = set()

  def add_listener(self, listener: TaskWriteListener) -> None:
    self._listeners.append(listener)

  def clear(self) -> None:
    self._listeners.clear()

  def dispatch(self, task_id: str, before: TaskSnapshot | None, after: TaskSnapshot | None) -> None:
    for listener in list(self._listeners):
      t = asyncio.create_task(self._run(listener, task_id, before, after))
      self._pending.add(t)
      t.add_done_callback(self._pending.discard)

  async def _run(
    self,
    listener: TaskWriteListener,
    task_id: str,
    before: TaskSnapshot | None,
    after: TaskSnapshot | None,
  ) -> None:
    try:
      await listener(task_id, before, after)
    except Exception:
      logger.exception("Task write listener %r failed for task %s", listener, task_id)

  async def drain(self) -> None:
    while self._pending:
      await asyncio.gather(*list(self._pending), return_exceptions=True)


task_write_dispatcher = TaskWriteDispatcher()


@dataclass
class BatchOp:
  kind: Literal["create", "update", "delete"]
  task_id: str | None = None
  project_id: str | None = None
  patch: TaskPatch | None = None


class TaskStore:
  def __init__(self, db: AsyncSession, dispatcher: TaskWriteDispatcher | None = None) -> None:
    self.db = db
    self.dispatcher = dispatcher

  def _emit(self, writes: list[tuple[str, TaskSnapshot | None, TaskSnapshot | None]]) -> None:
    if self.dispatcher is None:
      return
    for task_id, before, after in writes:
      self.dispatcher.dispatch(task_id, before, after)

  async def get_tasks_by_project(self, project_id: str) -> list[Task]:
    res = await self.db.execute(
      select(Task).where(Task.project_id == project_id).order_by(Task.order_index.asc(), Task.created_at.asc())
    )
    return list(res.scalars().all())

  async def get_task(self, task_id: str) -> Task | None:
    res = await self.db.execute(select(Task).where(Task.id == task_id).execution_options(populate_existing=True))
    return res.scalar_one_or_none()

  async def get_project(self, project_id: str) -> Project | None:
    res = await self.db.execute(
      select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()

  async def list_sync_enabled_projects(self) -> list[Project]:
    res = await self.db.execute(
      select(Project).where(Project.sync_enabled.is_(True)).order_by(Project.created_at.asc())
    )
    return list(res.scalars().all())

  async def get_user(self, user_id: str) -> User | None:
    res = await self.db.execute(select(User).where(User.id == user_id))
    return res.scalar_one_or_none()

  def _apply(self, task: Task, patch: TaskPatch) -> None:
    for name, value in patch.changes().items():
      if name not in _WRITABLE:
        continue
      if value is None and name in _NOT_NULL_DEFAULTS:
        value = _NOT_NULL_DEFAULTS[name]
      setattr(task, name, value)

  async def _create(self, project_id: str, patch: TaskPatch) -> Task:
    if not patch.has("title") or not (patch.title or "").strip():
      raise InvalidArgument("Task title is required")
    now = utcnow()
    task = Task(project_id=project_id, created_at=now, updated_at=now, tags=[])
    self._apply(task, patch)
    self.db.add(task)
    await self.db.flush()
    return task

  async def _update(self, task_id: str, patch: TaskPatch) -> tuple[Task, TaskSnapshot]:
    task = await self.get_task(task_id)
    if not task:
      raise NotFound(f"Task {task_id} not found")
    before = task_snapshot(task)
    self._apply(task, patch)
    task.updated_at = utcnow()
    await self.db.flush()
    return task, before

  async def _delete(self, task_id: str) -> TaskSnapshot | None:
    task = await self.get_task(task_id)
    if not task:
      return None
    before = task_snapshot(task)
    await self.db.delete(task)
    await self.db.flush()
    return before

  async def create_task(self, project_id: str, patch: TaskPatch) -> Task:
    task = await self._create(project_id, patch)
    await self.db.commit()
    self._emit([(task.id, None, task_snapshot(task))])
    return task

  async def update_task(self, task_id: str, patch: TaskPatch) -> Task:
    task, before = await self._update(task_id, patch)
    await self.db.commit()
    self._emit([(task.id, before, task_snapshot(task))])
    return task

  async def delete_task(self, task_id: str) -> None:
    before = await self._delete(task_id)
    await self.db.commit()
    if before is not None:
      self._emit([(task_id, before, None)])

  async def atomic_batch(self, ops: list[BatchOp]) -> list[Task | None]:
    """Apply creates, updates and deletes in one transaction; nothing is kept if any op fails."""
    out: list[Task | None] = []
    writes: list[tuple[str, TaskSnapshot | None, TaskSnapshot | None]] = []
    try:
      for op in ops:
        if op.kind == "create":
          if not op.project_id or op.patch is None:
            raise InvalidArgument("create needs project_id and patch")
          task = await self._create(op.project_id, op.patch)
          writes.append((task.id, None, task))
          out.append(task)
        elif op.kind == "update":
          if not op.task_id or op.patch is None:
            raise InvalidArgument("update needs task_id and patch")
          task, before = await self._update(op.task_id, op.patch)
          writes.append((task.id, before, task))
          out.append(task)
        elif op.kind == "delete":
          if not op.task_id:
            raise InvalidArgument("delete needs task_id")
          before = await self._delete(op.task_id)
          if before is not None:
            writes.append((op.task_id, before, None))
          out.append(None)
        else:
          raise InvalidArgument(f"Unknown batch op {op.kind!r}")
      await self.db.commit()
    except Exception:
      await self.db.rollback()
      raise
    self._emit([(tid, before, task_snapshot(after) if isinstance(after, Task) else after) for tid, before, after in writes])
    return out

  async def update_project_sync_status(
    self,
    project_id: str,
    status: str | None,
    last_sync_at: datetime | None = None,
    error: str | None = None,
  ) -> None:
    values: dict[str, Any] = {"sync_status": status, "sync_error": error, "sync_claimed_at": None}
    if last_sync_at is not None:
      values["last_sync_at"] = last_sync_at
    await self.db.execute(
      update(Project).where(Project.id == project_id).values(**values).execution_options(synchronize_session=False)
    )
    await self.db.commit()

  async def claim_project_sync(self, project_id: str, stale_after: timedelta) -> bool:
    now = utcnow()
    # Claim only when no other sync holds a fresh claim (idempotent across workers).
    res = await self.db.execute(
      update(Project)
      .where(
        Project.id == project_id,
        or_(
          Project.sync_status.is_(None),
          Project.sync_status != "pending",
          Project.sync_claimed_at.is_(None),
          Project.sync_claimed_at < now - stale_after,
        ),
      )
      .values(sync_status="pending", sync_claimed_at=now)
      .execution_options(synchronize_session=False)
    )
    await self.db.commit()
    return res.rowcount == 1
