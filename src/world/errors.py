"""Error kinds shared by the world layer.

Tool-level errors (validation / not found / state conflict) are reported inline
on the failing tool result by the dispatcher. Store unavailability is the only
fatal kind and is allowed to propagate to the turn orchestrator.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for errors raised by world operations."""

    error_type = "engine_error"

    def __init__(self, message: str, *, param: Optional[str] = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.param = param
        self.details: Dict[str, Any] = dict(details)

    def to_metadata(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"ok": False, "error_type": self.error_type, "error": self.message}
        if self.param:
            meta["param"] = self.param
        meta.update(self.details)
        return meta


class ValidationError(EngineError):
    error_type = "validation"


class NotFoundError(EngineError):
    error_type = "not_found"


class StateConflictError(EngineError):
    error_type = "state_conflict"


class StoreUnavailableError(EngineError):
    """The persistent store cannot be reached; fatal for the whole turn."""

    error_type = "store_unavailable"
