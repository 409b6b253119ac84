from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors"""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form of the error"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(OrchestrationError):
    """Invalid capability registration or engine configuration (startup only)"""

    code = "configuration_error"


class RoutingError(OrchestrationError):
    """Intent classification failed"""

    code = "routing_error"


class HandlerError(OrchestrationError):
    """A capability handler raised or returned an invalid result"""

    code = "handler_error"

    def __init__(self, capability: str, cause: Optional[BaseException] = None):
        reason = str(cause) if cause is not None else "invalid handler result"
        super().__init__(
            f"Capability '{capability}' failed: {reason}",
            {"capability": capability, "cause": type(cause).__name__ if cause else None}
        )
        self.capability = capability
        self.cause = cause


class CombinerError(OrchestrationError):
    """Response synthesis failed"""

    code = "combiner_error"


class LimitExceededError(OrchestrationError):
    """A per-user session quota was hit"""

    code = "limit_exceeded"

    def __init__(
        self,
        message: str,
        limit: int,
        current: int,
        eviction_candidate: Optional[str] = None
    ):
        super().__init__(
            message,
            {"limit": limit, "current": current, "eviction_candidate": eviction_candidate}
        )
        self.limit = limit
        self.current = current
        self.eviction_candidate = eviction_candidate


class OrchestrationTimeoutError(OrchestrationError, TimeoutError):
    """The overall deadline (or a handler sub-budget) was exceeded"""

    code = "timeout"


class SessionNotFoundError(OrchestrationError, LookupError):
    """Session does not exist for the calling tenant"""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class SessionConflictError(OrchestrationError):
    """Session id already used with a different parent (top-level versus sub-session)"""

    code = "session_conflict"

    def __init__(self, session_id: str, parent_session_id: Optional[str],
                 existing_parent_session_id: Optional[str]):
        super().__init__(
            f"Session id already in use with a different parent: {session_id}",
            {
                "session_id": session_id,
                "parent_session_id": parent_session_id,
                "existing_parent_session_id": existing_parent_session_id
            }
        )
        self.session_id = session_id
