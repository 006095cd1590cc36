from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, TypeDecorator, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def _new_id() -> str:
  return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
  """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo on read)."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

  def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
    if value is None:
      return None
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
  pass


class User(Base):
  __tablename__ = "users"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  tasks_refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class ApiToken(Base):
  __tablename__ = "api_tokens"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  token_hash: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
  token_hint: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
  last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class Project(Base):
  __tablename__ = "projects"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  name: Mapped[str] = mapped_column(String, nullable=False)
  owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
  member_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
  external_list_id: Mapped[str | None] = mapped_column(String, nullable=True)
  sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
  sync_status: Mapped[str | None] = mapped_column(String, nullable=True)  # synced|pending|error
  sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  sync_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

  def has_access(self, user_id: str) -> bool:
    return self.owner_id == user_id or user_id in (self.member_ids or [])


class Task(Base):
  __tablename__ = "tasks"
  __table_args__ = (UniqueConstraint("project_id", "external_task_id", name="ux_tasks_project_external_task"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  status: Mapped[str] = mapped_column(String, nullable=False, default="open")  # open|active|complete
  priority: Mapped[str] = mapped_column(String, nullable=False, default="medium")
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  due_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  assignee_id: Mapped[str | None] = mapped_column(String, nullable=True)
  assignee_name: Mapped[str | None] = mapped_column(String, nullable=True)
  tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
  external_task_id: Mapped[str | None] = mapped_column(String, nullable=True)
  external_list_id: Mapped[str | None] = mapped_column(String, nullable=True)
  external_origin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

  def is_linked(self) -> bool:
    return bool(self.external_task_id and self.external_list_id)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  project_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  task_id: Mapped[str | None] = mapped_column(String, nullable=True)
  actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class NotificationLog(Base):
  __tablename__ = "notification_logs"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  task_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  kind: Mapped[str] = mapped_column(String, nullable=False)
  recipient: Mapped[str] = mapped_column(String, nullable=False)
  success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class MemberEnrollment(Base):
  __tablename__ = "member_enrollments"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
  project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False, index=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False)
  task_id: Mapped[str | None] = mapped_column(String, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")  # pending|sending|done|error
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  done_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
  created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
