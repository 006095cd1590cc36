from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.models import AuditEvent, Task

# Provider error bodies can be large; audit rows keep the head only.
_MAX_TEXT = 1000


def _clip(value: Any) -> Any:
  if isinstance(value, str) and len(value) > _MAX_TEXT:
    return value[:_MAX_TEXT] + "…"
  if isinstance(value, dict):
    return {k: _clip(v) for k, v in value.items()}
  if isinstance(value, list):
    return [_clip(v) for v in value]
  return value


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  project_id: str | None = None,
  task_id: str | None = None,
  actor_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> AuditEvent:
  """Adds the event to the caller's transaction; the caller commits."""
  ev = AuditEvent(
    project_id=project_id,
    task_id=task_id,
    actor_id=actor_id,
    event_type=event_type,
    entity_type=entity_type,
    entity_id=entity_id,
    payload=_clip(jsonable_encoder(payload or {})),
  )
  db.add(ev)
  return ev


async def write_task_audit(
  db: AsyncSession,
  *,
  event_type: str,
  task: Task,
  actor_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> AuditEvent:
  return await write_audit(
    db,
    event_type=event_type,
    entity_type="Task",
    entity_id=task.id,
    project_id=task.project_id,
    task_id=task.id,
    actor_id=actor_id,
    payload=payload,
  )
