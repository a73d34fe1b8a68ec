"""
Pydantic models for the offline sync queue and remote responses
"""
from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class MutationKind(str, Enum):
    """Kinds of user-initiated changes that can wait in the queue"""
    CREATE = "create"
    UPDATE = "update"
    COMPLETE = "complete"
    UNCOMPLETE = "uncomplete"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """Lifecycle of a queued mutation"""
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


class PendingMutation(BaseModel):
    """One change not yet acknowledged by the remote service"""
    seq: int = Field(..., ge=0, description="Enqueue order")
    kind: MutationKind
    habit_id: str = Field(..., description="Target habit id, possibly temporary")
    completion_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: str
    attempts: int = 0
    status: MutationStatus = MutationStatus.QUEUED
    last_error: Optional[str] = None


class ApiResponse(BaseModel):
    """
    Tri-state result of a remote call

    status carries an HTTP-like code when the server answered; None means
    the call never got a verdict from the server (offline, timeout).
    """
    data: Any = None
    error: Optional[str] = None
    success: bool
    status: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResponse":
        return cls(data=data, error=None, success=True, status=200)

    @classmethod
    def fail(cls, error: str, status: Optional[int] = None) -> "ApiResponse":
        return cls(data=None, error=error, success=False, status=status)

    @property
    def is_rejected(self) -> bool:
        """True when the server refused the request (4xx)"""
        return not self.success and self.status is not None and 400 <= self.status < 500


class SyncFailure(BaseModel):
    """A queued mutation dropped after a persistent failure"""
    mutation: PendingMutation
    error: str


class SyncResult(BaseModel):
    """Outcome of one queue drain"""
    attempted: int = 0
    synced: int = 0
    requeued: int = 0
    failed: List[SyncFailure] = Field(default_factory=list)
    remaining: int = 0


class SyncStatus(BaseModel):
    """Connectivity and queue indicators for clients"""
    online: bool
    pending: int
    last_sync: Optional[SyncResult] = None
