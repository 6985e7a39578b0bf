"""Error taxonomy shared by the code search tools and transport."""

from __future__ import annotations


class CodeSearchError(Exception):
    """Base class for all codesearch-mcp errors."""

    pass


class CommandFailed(CodeSearchError):
    """Raised when an external command exits badly or cannot be spawned."""

    def __init__(self, stderr: str, exit_code: int = -1):
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(stderr)


class RepositoryUnavailable(CodeSearchError):
    """Raised when a repository name was never successfully prepared."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Repository {name} is not available.")


class InvalidArgument(CodeSearchError):
    """Raised when a tool argument fails validation."""

    pass


class InvalidPath(InvalidArgument):
    """Raised for traversal or absolute-path attempts."""

    pass


class InvalidRef(InvalidArgument):
    """Raised for refs that could be read as options or are malformed."""

    pass


class SessionNotFound(CodeSearchError):
    """Raised when no open session matches an identifier."""

    def __init__(self, session_id: object):
        self.session_id = session_id
        super().__init__(f"Could not find session {session_id}")
