from __future__ import annotations


class TaskTrackError(Exception):
    """Base class for every recoverable task tracker failure."""


class RemoteFailure(TaskTrackError):
    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class NotFound(TaskTrackError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} {entity_id!r} is not in the current snapshot")
        self.kind = kind
        self.id = entity_id


class LoadFailure(TaskTrackError):
    pass


class NoActiveSession(TaskTrackError):
    def __init__(self) -> None:
        super().__init__("no user session is loaded")
