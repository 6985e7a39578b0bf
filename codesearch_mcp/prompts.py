"""
Instructions sent to the client during the MCP handshake.
"""

INSTRUCTIONS = """
codesearch-mcp connected. Read-only code search over a fixed set of git repositories.

## Tools

- list_repos - names of the repositories that are ready
- search_code - git grep over a repository (repo, query, branch?, path_filter?)
  Returns at most 50 matching lines as `ref:path:line:text`, plus a count of omitted matches.
- read_file - file content at a ref (repo, path, branch?)
  Paths are relative to the repository root. `..` segments and absolute paths are rejected.
- list_branches - local and remote-tracking branches (repo)

## Tips

- `branch` accepts any git revision: branch, tag or commit hash. Default is HEAD.
- Narrow noisy searches with `path_filter` (e.g. `crates/primitives`).
- Use the `path` part of a search hit directly with read_file.
"""
