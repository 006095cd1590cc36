from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from omnisync.config import settings
from omnisync.db import SessionLocal
from omnisync.errors import (
  InvalidArgument,
  NoRefreshCredential,
  NotFound,
  NotLinked,
  PermissionDenied,
  PushFailed,
  SyncError,
  SyncInProgress,
  TokenExchangeFailed,
  Unauthenticated,
)
from omnisync.logging_setup import setup_logging
from omnisync.notifications.assignment import AssignmentNotifier
from omnisync.notifications.gmail import GmailTransport, TransportAuthCache
from omnisync.notifications.membership import process_member_enrollments_once
from omnisync.routers.projects import router as projects_router
from omnisync.routers.sync import router as sync_router
from omnisync.routers.system_status import router as system_status_router
from omnisync.routers.tasks import router as tasks_router
from omnisync.routers.users import router as users_router
from omnisync.security import IntegrationSecretDecryptError
from omnisync.store import task_write_dispatcher
from omnisync.sync.scheduler import run_scheduled_sync_once
from omnisync.tasks_api.client import TasksApiError

logger = logging.getLogger(__name__)

app = FastAPI(
  title="OmniSync API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)

_STATUS_BY_ERROR: list[tuple[type[SyncError], int]] = [
  (Unauthenticated, 401),
  (PermissionDenied, 403),
  (NotFound, 404),
  (SyncInProgress, 409),
  (InvalidArgument, 400),
  (NotLinked, 400),
  (NoRefreshCredential, 400),
  (TokenExchangeFailed, 502),
  (PushFailed, 502),
]


def _status_for(exc: SyncError) -> int:
  for cls, code in _STATUS_BY_ERROR:
    if isinstance(exc, cls):
      return code
  return 400


@app.exception_handler(SyncError)
async def _sync_error_handler(_, exc: SyncError) -> JSONResponse:
  return JSONResponse(status_code=_status_for(exc), content={"detail": {"message": exc.message, "code": exc.code}})


@app.exception_handler(TasksApiError)
async def _tasks_api_error_handler(_, exc: TasksApiError) -> JSONResponse:
  return JSONResponse(
    status_code=502,
    content={"detail": {"message": exc.message, "statusCode": exc.status_code, "tasks": exc.details}},
  )


@app.exception_handler(IntegrationSecretDecryptError)
async def _integration_secret_error_handler(_, exc: IntegrationSecretDecryptError) -> JSONResponse:
  return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(projects_router)
app.include_router(tasks_router)
app.include_router(sync_router)
app.include_router(users_router)
app.include_router(system_status_router)


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


_sync_loop_task: asyncio.Task | None = None
_membership_loop_task: asyncio.Task | None = None


def _is_test_db() -> bool:
  try:
    db_name = settings.database_url.rsplit("/", 1)[-1]
    return "test" in db_name
  except Exception:
    return False


async def _scheduled_sync_loop() -> None:
  # Each tick is awaited before the next sleep, so ticks never overlap in this process.
  while True:
    await asyncio.sleep(max(10, int(settings.sync_auto_interval_seconds)))
    try:
      await run_scheduled_sync_once(
        SessionLocal,
        concurrency=settings.sync_concurrency,
        timeout=settings.sync_timeout_seconds,
        dispatcher=task_write_dispatcher,
      )
    except Exception:
      logger.exception("Scheduled sync tick failed")


async def _membership_loop() -> None:
  while True:
    await asyncio.sleep(max(5, int(settings.membership_loop_interval_seconds)))
    async with SessionLocal() as db:
      try:
        await process_member_enrollments_once(db)
      except Exception:
        logger.exception("Member enrollment pass failed")


def _register_notifier() -> None:
  if not settings.notify_configured():
    logger.info("Assignment notifications disabled")
    return
  transport = GmailTransport(auth_cache=TransportAuthCache())
  task_write_dispatcher.add_listener(AssignmentNotifier(SessionLocal, transport, settings))
  logger.info("Assignment notifications enabled (sender=%s)", settings.notify_sender)


@app.on_event("startup")
async def _startup() -> None:
  global _sync_loop_task, _membership_loop_task
  if _is_test_db():
    return
  setup_logging(level=settings.log_level, log_dir=settings.log_dir)
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  if not settings.fernet_key or settings.fernet_key.strip() in {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  if settings.sync_auto_enabled and (not settings.google_client_id or not settings.google_client_secret):
    raise RuntimeError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required when SYNC_AUTO_ENABLED is set")
  _register_notifier()
  if settings.sync_auto_enabled and _sync_loop_task is None:
    _sync_loop_task = asyncio.create_task(_scheduled_sync_loop())
  if _membership_loop_task is None:
    _membership_loop_task = asyncio.create_task(_membership_loop())
  logger.info("OmniSync %s started", settings.app_version)
