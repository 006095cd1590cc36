from __future__ import annotations


class SyncError(RuntimeError):
  code = "sync_error"

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message


class Unauthenticated(SyncError):
  code = "unauthenticated"


class PermissionDenied(SyncError):
  code = "permission-denied"


class InvalidArgument(SyncError):
  code = "invalid-argument"


class NotFound(SyncError):
  code = "not-found"


class NotLinked(SyncError):
  code = "not-linked"


class SyncInProgress(SyncError):
  code = "sync-in-progress"


class NoRefreshCredential(SyncError):
  code = "no-refresh-credential"


class TokenExchangeFailed(SyncError):
  code = "token-exchange-failed"


class PushFailed(SyncError):
  code = "push-failed"
