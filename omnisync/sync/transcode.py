from __future__ import annotations

from datetime import date, datetime, timezone

from dateutil import parser as dateparser

from omnisync.schemas import ExternalTask, TaskPatch

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

EXTERNAL_COMPLETED = "completed"
EXTERNAL_NEEDS_ACTION = "needsAction"
LOCAL_COMPLETE = "complete"
LOCAL_OPEN = "open"


def external_status_to_local(status: str | None) -> str:
  return LOCAL_COMPLETE if status == EXTERNAL_COMPLETED else LOCAL_OPEN


def local_status_to_external(status: str | None) -> str:
  return EXTERNAL_COMPLETED if status == LOCAL_COMPLETE else EXTERNAL_NEEDS_ACTION


def parse_provider_timestamp(value: str | None) -> datetime | None:
  s = (value or "").strip()
  if not s:
    return None
  try:
    dt = dateparser.isoparse(s)
  except (ValueError, OverflowError):
    return None
  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


def format_provider_timestamp(dt: datetime) -> str:
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  dt = dt.astimezone(timezone.utc)
  return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def format_provider_due(value: datetime | date) -> str:
  # The provider keeps only the date part of a due timestamp.
  if isinstance(value, datetime):
    if value.tzinfo is not None:
      value = value.astimezone(timezone.utc)
    value = value.date()
  return f"{value.isoformat()}T00:00:00.000Z"


def external_modified_at(ext: ExternalTask) -> datetime:
  return parse_provider_timestamp(ext.updated) or EPOCH


def external_to_local(ext: ExternalTask, project_id: str, list_id: str) -> TaskPatch:
  return TaskPatch(
    project_id=project_id,
    title=(ext.title or "").strip() or "Untitled",
    description=ext.notes or "",
    status=external_status_to_local(ext.status),
    priority="medium",
    order_index=0,
    due_date=parse_provider_timestamp(ext.due),
    completed_at=parse_provider_timestamp(ext.completed),
    external_task_id=ext.id,
    external_list_id=list_id,
    external_origin=True,
  )


def local_to_external(patch: TaskPatch) -> ExternalTask:
  fields: dict[str, object] = {}
  if patch.has("title"):
    fields["title"] = patch.title or ""
  if patch.has("description"):
    fields["notes"] = patch.description or ""
  if patch.has("status"):
    fields["status"] = local_status_to_external(patch.status)
    if patch.status != LOCAL_COMPLETE:
      fields["completed"] = None
  if patch.has("due_date"):
    fields["due"] = format_provider_due(patch.due_date) if patch.due_date else None
  if patch.has("completed_at") and patch.status in (None, LOCAL_COMPLETE):
    fields["completed"] = format_provider_timestamp(patch.completed_at) if patch.completed_at else None
  return ExternalTask(**fields)
