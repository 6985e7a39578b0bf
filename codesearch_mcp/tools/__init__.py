"""Code search tools - command execution, input validation and git operations."""

from codesearch_mcp.tools.cmd import (  # noqa: F401
    CommandResult,
    CommandStatus,
    run_command,
    validate_argv,
)
from codesearch_mcp.tools.git import list_branches, read_file, search_code  # noqa: F401
from codesearch_mcp.tools.paths import validate_ref, validate_repo_path  # noqa: F401
