"""Error taxonomy shared by the session, query, tool and agent layers."""

from enum import Enum


class ErrorKind(Enum):
    CLIENT_UNAVAILABLE = "client_unavailable"
    SESSION_BUSY = "session_busy"
    NO_GOALS = "no_goals"
    QUERY_FAILED = "query_failed"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    MODEL_UNAVAILABLE = "model_unavailable"


class ProofAssistantError(Exception):
    """Base class for conditions raised inside the core."""

    kind: ErrorKind = ErrorKind.QUERY_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientUnavailable(ProofAssistantError):
    """Checker process not started or crashed. Restart to recover."""
    kind = ErrorKind.CLIENT_UNAVAILABLE


class SessionBusy(ProofAssistantError):
    """Another session for the same document is in flight."""
    kind = ErrorKind.SESSION_BUSY


class NoGoals(ProofAssistantError):
    """Cursor is outside any open proof obligation."""
    kind = ErrorKind.NO_GOALS


class QueryFailed(ProofAssistantError):
    """Checker reported a processing error."""
    kind = ErrorKind.QUERY_FAILED


class StaleVersion(QueryFailed):
    """Request issued against an older version than the one the checker holds."""


class ToolExecutionFailed(ProofAssistantError):
    """Raised inside a tool; the registry renders it as an error string."""
    kind = ErrorKind.TOOL_EXECUTION_FAILED


class ModelUnavailable(ProofAssistantError):
    """No language model backend is configured."""
    kind = ErrorKind.MODEL_UNAVAILABLE


class CoqLspError(ProofAssistantError):
    """JSON-RPC error response or malformed message from coq-lsp."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code
