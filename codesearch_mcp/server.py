#!/usr/bin/env python3
"""
codesearch-mcp - MCP tools for read-only code search over local git mirrors.

Tools:
- list_repos: Names of the prepared repositories
- search_code: git grep at a ref, truncated to 50 lines
- read_file: File content at a ref
- list_branches: Local and remote-tracking branches

Expected failures (unknown repo, no matches, missing file) come back as
text. Invalid input (path traversal, option-like refs) is raised so the
client receives an explicit error result.
"""  # noqa: I001

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from codesearch_mcp.config import REPO_NAMES, CodeSearchConfig
from codesearch_mcp.errors import InvalidArgument, RepositoryUnavailable
from codesearch_mcp.observability import (
    OUTCOME_EMPTY,
    OUTCOME_ERROR,
    OUTCOME_OK,
    ObservabilityContext,
)
from codesearch_mcp.prompts import INSTRUCTIONS
from codesearch_mcp.repos import RepoCache
from codesearch_mcp.tools import git
from codesearch_mcp.tools.paths import validate_ref, validate_repo_path

logger = logging.getLogger("codesearch-mcp")

NO_REPOSITORIES = "No repositories available."

_REPO_PROPERTY = {
    "type": "string",
    "enum": list(REPO_NAMES),
    "description": "Repository to use (see list_repos)",
}

_BRANCH_PROPERTY = {
    "type": "string",
    "description": "Branch, tag or commit to read from (default: HEAD)",
}

TOOLS: list[Tool] = [
    Tool(
        name="list_repos",
        description="List the repositories available for searching.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="search_code",
        description="Search file contents with git grep. Returns up to 50 matching lines with file and line number.",
        inputSchema={
            "type": "object",
            "properties": {
                "repo": _REPO_PROPERTY,
                "query": {
                    "type": "string",
                    "description": "Pattern to search for (git grep basic regex)",
                },
                "branch": _BRANCH_PROPERTY,
                "path_filter": {
                    "type": "string",
                    "description": "Restrict the search to this directory or file (default: repository root)",
                },
            },
            "required": ["repo", "query"],
        },
    ),
    Tool(
        name="read_file",
        description="Read a file from a repository at a given branch, tag or commit.",
        inputSchema={
            "type": "object",
            "properties": {
                "repo": _REPO_PROPERTY,
                "path": {
                    "type": "string",
                    "description": "Path relative to the repository root",
                },
                "branch": _BRANCH_PROPERTY,
            },
            "required": ["repo", "path"],
        },
    ),
    Tool(
        name="list_branches",
        description="List local and remote-tracking branches of a repository.",
        inputSchema={
            "type": "object",
            "properties": {"repo": _REPO_PROPERTY},
            "required": ["repo"],
        },
    ),
]


def _require_repo(args: dict[str, Any]) -> str:
    """
    Check ``repo`` against the fixed set of logical names.

    A name outside ``REPO_NAMES`` is invalid input, the same as a value the
    tool schema's enum would refuse, and raises. A known name that has no
    configured source, or whose preparation failed, passes here and is
    answered by the handler with its failure text.
    """
    repo = args.get("repo")
    if repo not in REPO_NAMES:
        raise InvalidArgument(f"repo must be one of {list(REPO_NAMES)}")
    return repo


def _outcome(text: str) -> str:
    """Classify a tool reply for metrics."""
    if text.startswith((git.BRANCHES_FAILED, "Error:")):
        return OUTCOME_ERROR
    if text in (NO_REPOSITORIES, git.NO_MATCHES):
        return OUTCOME_EMPTY
    if text.startswith((git.SEARCH_FAILED, git.FILE_NOT_FOUND)):
        return OUTCOME_EMPTY
    return OUTCOME_OK


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidArgument(f"{key} is required")
    return value


def _optional_str(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidArgument(f"{key} must be a string")
    return value


class CodeSearchMcpServer:
    """Tool dispatcher: declares the tools and runs them against the repo cache."""

    def __init__(self, config: CodeSearchConfig, repos: RepoCache):
        self.config = config
        self.repos = repos
        self.server = Server("codesearch-mcp", instructions=INSTRUCTIONS)
        self.obs = ObservabilityContext(config.observability)

        self.tools = list(TOOLS)
        self.tool_handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "list_repos": self._handle_list_repos,
            "search_code": self._handle_search_code,
            "read_file": self._handle_read_file,
            "list_branches": self._handle_list_branches,
        }

        self._register_handlers()
        logger.info(f"codesearch-mcp initialized ({len(self.tools)} tools, repos={repos.names()})")

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            logger.debug("list_tools called")
            return self.tools

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[TextContent]:
            return await self.dispatch(name, arguments)

    async def dispatch(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """
        Run one tool call with logging and metrics.

        Raises:
            InvalidArgument: Unknown tool or invalid input; the MCP layer
                turns it into an error result
        """
        args = arguments or {}
        repo = args.get("repo") if isinstance(args.get("repo"), str) else None
        context = {"correlation_id": self.obs.correlation_id(), "tool": name, "repo": repo}
        start_time = time.time()
        outcome = OUTCOME_ERROR
        error_msg = None

        logger.info(f"call_tool: {name}", extra=context)

        try:
            handler = self.tool_handlers.get(name)
            if handler is None:
                raise InvalidArgument(f"Unknown tool: {name}")
            text = await handler(args)
            outcome = _outcome(text)
        except InvalidArgument as e:
            error_msg = str(e)
            logger.warning(f"call_tool rejected: {name}: {e}", extra=context)
            raise
        except Exception as e:
            error_msg = str(e)
            logger.exception(f"Tool {name} failed: {e}", extra=context)
            text = f"Error: {e}"
        finally:
            latency_ms = (time.time() - start_time) * 1000
            self.obs.record(name, latency_ms, outcome=outcome, repo=repo)
            logger.info(
                f"call_tool done: {name}",
                extra={**context, "latency_ms": latency_ms, "outcome": outcome, "error": error_msg},
            )

        return [TextContent(type="text", text=text)]

    async def _handle_list_repos(self, args: dict[str, Any]) -> str:
        names = self.repos.names()
        if not names:
            return NO_REPOSITORIES
        return "Active Repositories:\n" + "\n".join(f"- {name}" for name in names)

    async def _handle_search_code(self, args: dict[str, Any]) -> str:
        repo = _require_repo(args)
        query = _require_str(args, "query")
        branch = validate_ref(_optional_str(args, "branch"))
        path_filter = _optional_str(args, "path_filter")
        if path_filter is not None:
            path_filter = validate_repo_path(path_filter)

        try:
            repo_path = self.repos.resolve(repo)
        except RepositoryUnavailable as e:
            return f"{git.SEARCH_FAILED} ({e})"

        return await git.search_code(
            repo_path,
            query,
            branch=branch,
            path_filter=path_filter,
            git_binary=self.config.tools.git_binary,
            max_lines=self.config.tools.max_search_lines,
            timeout=self.config.tools.exec_timeout,
        )

    async def _handle_read_file(self, args: dict[str, Any]) -> str:
        # Path check first: nothing is resolved or spawned for a bad path
        path = validate_repo_path(_require_str(args, "path"))
        repo = _require_repo(args)
        branch = validate_ref(_optional_str(args, "branch"))

        try:
            repo_path = self.repos.resolve(repo)
        except RepositoryUnavailable as e:
            return f"{git.FILE_NOT_FOUND} ({e})"

        return await git.read_file(
            repo_path,
            path,
            branch=branch,
            git_binary=self.config.tools.git_binary,
            timeout=self.config.tools.exec_timeout,
        )

    async def _handle_list_branches(self, args: dict[str, Any]) -> str:
        repo = _require_repo(args)

        try:
            repo_path = self.repos.resolve(repo)
        except RepositoryUnavailable as e:
            return f"{git.BRANCHES_FAILED}: {e}"

        return await git.list_branches(
            repo_path,
            git_binary=self.config.tools.git_binary,
            timeout=self.config.tools.exec_timeout,
        )
