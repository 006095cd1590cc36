from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import field_validator


_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TaskStatus = Literal["open", "active", "complete"]
TaskPriority = Literal["low", "medium", "high"]


def _parse_dt_utc(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
  elif isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    if _DATE_ONLY_RE.fullmatch(s):
      dt = datetime.fromisoformat(s)
    else:
      dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
  else:
    return value

  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


class TaskPatch(BaseModel):
  """
  Partial task write.

  A field that was never passed is absent (left untouched by the store);
  a field passed as None is an explicit clear. `model_fields_set` carries
  the difference.
  """

  project_id: str | None = None
  title: str | None = None
  description: str | None = None
  status: TaskStatus | None = None
  priority: TaskPriority | None = None
  order_index: int | None = None
  due_date: datetime | None = None
  completed_at: datetime | None = None
  assignee_id: str | None = None
  assignee_name: str | None = None
  tags: list[str] | None = None
  external_task_id: str | None = None
  external_list_id: str | None = None
  external_origin: bool | None = None

  @field_validator("due_date", "completed_at", mode="before")
  @classmethod
  def _dt_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)

  def changes(self) -> dict[str, Any]:
    return {name: getattr(self, name) for name in self.model_fields_set}

  def has(self, name: str) -> bool:
    return name in self.model_fields_set


class ExternalTask(BaseModel):
  """Provider-side task. Timestamps stay provider strings; the transcoder parses them."""

  model_config = ConfigDict(extra="ignore")

  id: str | None = None
  title: str | None = None
  notes: str | None = None
  status: str | None = None
  due: str | None = None
  completed: str | None = None
  updated: str | None = None
  parent: str | None = None
  position: str | None = None
  deleted: bool | None = None
  hidden: bool | None = None

  def payload(self) -> dict[str, Any]:
    return self.model_dump(exclude_unset=True)


class ExternalTaskList(BaseModel):
  model_config = ConfigDict(extra="ignore")

  id: str
  title: str = ""
  updated: str | None = None


class UserOut(BaseModel):
  id: str
  email: str
  name: str
  tasksLinked: bool = False


class TasksCredentialIn(BaseModel):
  refreshToken: str = Field(min_length=1, max_length=4096)


class ProjectCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=200)
  memberIds: list[str] = []


class ProjectOut(BaseModel):
  id: str
  name: str
  ownerId: str
  memberIds: list[str]
  externalListId: str | None
  syncEnabled: bool
  syncStatus: str | None
  syncError: str | None = None
  lastSyncAt: datetime | None
  createdAt: datetime


class ProjectTaskListIn(BaseModel):
  listId: str | None = Field(default=None, min_length=1, max_length=256)
  enableSync: bool = True


class TaskCreateIn(BaseModel):
  title: str = Field(min_length=1, max_length=500)
  description: str = ""
  status: TaskStatus = "open"
  priority: TaskPriority = "medium"
  orderIndex: int = 0
  dueDate: datetime | None = None
  assigneeId: str | None = None
  assigneeName: str | None = None
  tags: list[str] = []

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class TaskUpdateIn(BaseModel):
  title: str | None = Field(default=None, min_length=1, max_length=500)
  description: str | None = None
  status: TaskStatus | None = None
  priority: TaskPriority | None = None
  orderIndex: int | None = None
  dueDate: datetime | None = None
  assigneeId: str | None = None
  assigneeName: str | None = None
  tags: list[str] | None = None

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_date_to_utc(cls, v: object) -> object:
    return _parse_dt_utc(v)


class TaskOut(BaseModel):
  id: str
  projectId: str
  title: str
  description: str
  status: str
  priority: str
  orderIndex: int
  dueDate: datetime | None
  completedAt: datetime | None
  assigneeId: str | None
  assigneeName: str | None
  tags: list[str]
  externalTaskId: str | None
  externalListId: str | None
  externalOrigin: bool
  createdAt: datetime
  updatedAt: datetime


class ManualSyncIn(BaseModel):
  accessToken: str | None = None


class SyncResultOut(BaseModel):
  success: bool
  added: int
  updated: int
  error: str | None = None


class ExternalTaskListOut(BaseModel):
  id: str
  title: str
  updated: str | None = None
