"""Error categories surfaced to callers of the history store."""


class AgentHistoryError(Exception):
    """Base class for errors raised by agent-history."""


class SessionNotFoundError(AgentHistoryError):
    """An explicitly requested session has no log data."""

    def __init__(self, session_id: str, provider: str = "claude"):
        super().__init__(f"Session {session_id} not found for provider {provider}")
        self.session_id = session_id
        self.provider = provider


class ProjectNotFoundError(AgentHistoryError):
    """An explicitly requested project (or project path) does not exist."""


class ProjectConflictError(AgentHistoryError):
    """The project cannot be added or removed in its current state."""
