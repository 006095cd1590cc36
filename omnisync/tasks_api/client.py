from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from omnisync.config import settings
from omnisync.schemas import ExternalTask, ExternalTaskList

PAGE_SIZE = 100


def normalize_base_url(base_url: str) -> str:
  b = (base_url or "").strip().rstrip("/")
  if not b:
    raise ValueError("baseUrl is required")
  if not (b.startswith("http://") or b.startswith("https://")):
    b = "https://" + b
  return b


class TasksApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.details = details or {}

  @property
  def is_auth_error(self) -> bool:
    return self.status_code in (401, 403)

  @property
  def is_transient(self) -> bool:
    return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


def _extract_tasks_error(payload: Any) -> tuple[str, dict[str, Any]]:
  if isinstance(payload, dict):
    err = payload.get("error")
    if isinstance(err, dict):
      msg = str(err.get("message") or err.get("status") or "").strip() or "Tasks request failed"
      return msg, {"status": err.get("status"), "errors": err.get("errors") or []}
    if isinstance(err, str) and err.strip():
      return err.strip(), {"error_description": payload.get("error_description")}
    return "Tasks request failed", {}
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500], {}
  return "Tasks request failed", {}


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.HTTPError as e:
    raise TasksApiError(status_code=0, message=f"{e.__class__.__name__}: {e}".strip(": ")) from e
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    msg, details = _extract_tasks_error(payload)
    raise TasksApiError(status_code=r.status_code, message=msg, details=details)
  if r.status_code == 204 or not r.content:
    return None
  return r.json()


@dataclass
class TasksAuth:
  access_token: str
  base_url: str = "https://tasks.googleapis.com/tasks/v1"
  user_agent: str = "OmniSync/0.1"
  timeout: float = 30.0
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {
      "User-Agent": self.user_agent,
      "Accept": "application/json",
      "Authorization": f"Bearer {self.access_token}",
    }
    return httpx.AsyncClient(
      base_url=normalize_base_url(self.base_url),
      headers=headers,
      timeout=self.timeout,
      transport=self.transport,
    )


async def tasks_list_tasks(*, auth: TasksAuth, list_id: str) -> list[ExternalTask]:
  out: list[ExternalTask] = []
  page_token: str | None = None
  async with auth.httpx_client() as client:
    while True:
      # Completed and hidden tasks are filtered out by default; the pull diff needs them.
      params: dict[str, str | int] = {
        "showCompleted": "true",
        "showHidden": "true",
        "showDeleted": "false",
        "maxResults": PAGE_SIZE,
      }
      if page_token:
        params["pageToken"] = page_token
      data = await _request_json(client, "GET", f"/lists/{list_id}/tasks", params=params)
      if not isinstance(data, dict):
        return out
      for item in data.get("items") or []:
        if isinstance(item, dict):
          out.append(ExternalTask.model_validate(item))
      page_token = data.get("nextPageToken")
      if not page_token:
        return out


async def tasks_create_task(*, auth: TasksAuth, list_id: str, task: ExternalTask) -> ExternalTask:
  body = task.payload()
  body.pop("id", None)
  async with auth.httpx_client() as client:
    data = await _request_json(client, "POST", f"/lists/{list_id}/tasks", json=body)
  return ExternalTask.model_validate(data or {})


async def tasks_update_task(*, auth: TasksAuth, list_id: str, task_id: str, task: ExternalTask) -> ExternalTask:
  body = task.payload()
  body["id"] = task_id
  async with auth.httpx_client() as client:
    data = await _request_json(client, "PATCH", f"/lists/{list_id}/tasks/{task_id}", json=body)
  return ExternalTask.model_validate(data or {"id": task_id})


async def tasks_delete_task(*, auth: TasksAuth, list_id: str, task_id: str) -> None:
  async with auth.httpx_client() as client:
    await _request_json(client, "DELETE", f"/lists/{list_id}/tasks/{task_id}")


async def tasks_list_tasklists(*, auth: TasksAuth) -> list[ExternalTaskList]:
  out: list[ExternalTaskList] = []
  page_token: str | None = None
  async with auth.httpx_client() as client:
    while True:
      params: dict[str, str | int] = {"maxResults": PAGE_SIZE}
      if page_token:
        params["pageToken"] = page_token
      data = await _request_json(client, "GET", "/users/@me/lists", params=params)
      if not isinstance(data, dict):
        return out
      for item in data.get("items") or []:
        if isinstance(item, dict) and item.get("id"):
          out.append(ExternalTaskList.model_validate(item))
      page_token = data.get("nextPageToken")
      if not page_token:
        return out


async def tasks_create_tasklist(*, auth: TasksAuth, title: str) -> ExternalTaskList:
  async with auth.httpx_client() as client:
    data = await _request_json(client, "POST", "/users/@me/lists", json={"title": title})
  if not isinstance(data, dict) or not data.get("id"):
    raise TasksApiError(status_code=502, message="Task list created without id")
  return ExternalTaskList.model_validate(data)


async def tasks_delete_tasklist(*, auth: TasksAuth, list_id: str) -> None:
  async with auth.httpx_client() as client:
    await _request_json(client, "DELETE", f"/users/@me/lists/{list_id}")


def auth_from_settings(access_token: str) -> TasksAuth:
  return TasksAuth(
    access_token=access_token,
    base_url=settings.tasks_api_base_url,
    user_agent=settings.tasks_user_agent,
    timeout=settings.tasks_http_timeout_seconds,
  )
