"""
Read-only git operations behind the search_code, read_file and list_branches tools.

Each operation builds an argument vector (never a shell string), runs it in
an already-resolved repository directory and shapes the output into the
text the tool returns. Expected failures (no matches, missing file, bad ref)
become text; only invalid input raises.
"""

from __future__ import annotations

import logging
from pathlib import Path

from codesearch_mcp.errors import CommandFailed
from codesearch_mcp.tools.cmd import run_command
from codesearch_mcp.tools.paths import validate_ref, validate_repo_path

logger = logging.getLogger("codesearch-mcp.git")

NO_MATCHES = "No matches."
SEARCH_FAILED = "No matches found."
FILE_NOT_FOUND = "File not found."
BRANCHES_FAILED = "Error listing branches"

DEFAULT_MAX_LINES = 50

# git grep exits 1 when nothing matched
GREP_NO_MATCH_CODES = (1,)


def grep_argv(
    query: str,
    ref: str | None = None,
    path_filter: str | None = None,
    git_binary: str = "git",
) -> list[str]:
    """Build ``git grep`` for a content search at ``ref`` under ``path_filter``."""
    return [
        git_binary,
        "grep",
        "-n",
        "-I",
        "--no-color",
        "-e",
        query,
        validate_ref(ref),
        "--",
        validate_repo_path(path_filter) if path_filter else ".",
    ]


def show_argv(path: str, ref: str | None = None, git_binary: str = "git") -> list[str]:
    """Build ``git show <ref>:<path>``; ref and path are a single element."""
    return [git_binary, "show", f"{validate_ref(ref)}:{validate_repo_path(path)}"]


def branch_argv(git_binary: str = "git") -> list[str]:
    return [git_binary, "branch", "-a", "--no-color"]


def truncate_lines(output: str, max_lines: int = DEFAULT_MAX_LINES) -> str:
    """Keep the first ``max_lines`` lines and note how many were dropped."""
    lines = output.splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    omitted = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n... {omitted} more matches omitted"


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""


async def search_code(
    repo_path: Path,
    query: str,
    *,
    branch: str | None = None,
    path_filter: str | None = None,
    git_binary: str = "git",
    max_lines: int = DEFAULT_MAX_LINES,
    timeout: float = 30,
) -> str:
    """Search file contents of ``repo_path`` at a ref; returns matching lines."""
    argv = grep_argv(query, branch, path_filter, git_binary)
    try:
        result = await run_command(
            argv, repo_path, empty_exit_codes=GREP_NO_MATCH_CODES, timeout=timeout
        )
    except CommandFailed as e:
        logger.info(f"search failed in {repo_path.name}: {_first_line(e.stderr)}")
        reason = _first_line(e.stderr)
        return f"{SEARCH_FAILED} ({reason})" if reason else SEARCH_FAILED

    if result.is_empty:
        return NO_MATCHES
    return truncate_lines(result.stdout, max_lines)


async def read_file(
    repo_path: Path,
    path: str,
    *,
    branch: str | None = None,
    git_binary: str = "git",
    timeout: float = 30,
) -> str:
    """Return the content of ``path`` at a ref, or a not-found message."""
    argv = show_argv(path, branch, git_binary)
    try:
        result = await run_command(argv, repo_path, timeout=timeout)
    except CommandFailed as e:
        logger.info(f"read failed in {repo_path.name}: {_first_line(e.stderr)}")
        return FILE_NOT_FOUND
    return result.stdout


async def list_branches(
    repo_path: Path,
    *,
    git_binary: str = "git",
    timeout: float = 30,
) -> str:
    """List local and remote-tracking branches."""
    try:
        result = await run_command(branch_argv(git_binary), repo_path, timeout=timeout)
    except CommandFailed as e:
        logger.warning(f"branch listing failed in {repo_path.name}: {_first_line(e.stderr)}")
        return f"{BRANCHES_FAILED}: {_first_line(e.stderr)}"
    return result.stdout
