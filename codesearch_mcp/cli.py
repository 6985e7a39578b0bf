"""CLI for running the codesearch-mcp server and managing its repository cache."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from rich.console import Console
from rich.table import Table
import typer

from codesearch_mcp.config import REPO_NAMES, CodeSearchConfig, load_config
from codesearch_mcp.observability import setup_logging
from codesearch_mcp.repos import RepoCache, RepositoryDescriptor, is_git_checkout

app = typer.Typer(
    name="codesearch-mcp",
    help="Read-only code search MCP server over local git mirrors",
    add_completion=False,
)
console = Console()

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to codesearch.toml")


def _load(config_path: str | None, log_level: str | None = None) -> CodeSearchConfig:
    try:
        config = load_config(config_path)
    except ValueError as e:
        console.print(f"[red]✗[/] Invalid configuration: {e}")
        raise typer.Exit(2) from e

    if log_level:
        config.server.log_level = log_level
        config.observability.log_level = log_level
    setup_logging(config.observability)
    return config


def _repo_cache(config: CodeSearchConfig) -> RepoCache:
    return RepoCache(
        config.repos.cache_path,
        mode=config.repos.mode,
        git_binary=config.tools.git_binary,
        clone_timeout=config.tools.clone_timeout,
    )


def _print_repos(config: CodeSearchConfig, prepared: list[RepositoryDescriptor]) -> None:
    ready = {d.name: d for d in prepared}
    table = Table(title=f"Repositories ({config.repos.mode} mode)")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Path")
    table.add_column("Status")
    for name in REPO_NAMES:
        source = config.repos.sources.get(name)
        if name in ready:
            table.add_row(name, source, str(ready[name].path), "[green]ready[/]")
        elif source:
            table.add_row(name, source, "", "[red]unavailable[/]")
        else:
            table.add_row(name, "[dim]not configured[/]", "", "[dim]-[/]")
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-H", help="Bind address (default from config)"),
    port: int = typer.Option(None, "--port", "-p", help="HTTP port (default from config)"),
    config_path: str = CONFIG_OPTION,
    log_level: str = typer.Option(None, "--log-level", "-l", help="Override log level"),
) -> None:
    """Prepare repositories, then serve MCP over HTTP/SSE."""
    from codesearch_mcp.server import CodeSearchMcpServer
    from codesearch_mcp.transport import MCPHttpServer, SessionRegistry

    config = _load(config_path, log_level)
    logger = logging.getLogger("codesearch-mcp")
    logger.info(f"Config loaded: repos={sorted(config.repos.sources)}, mode={config.repos.mode}")

    if not config.repos.sources:
        logger.warning("No repositories configured (set URL_REVM, URL_ALLOY or URL_RETH)")

    logger.info("=== Initializing Storage ===")
    cache = _repo_cache(config)
    asyncio.run(cache.prepare_all(config.repos.sources))

    mcp_server = CodeSearchMcpServer(config, cache)
    http = MCPHttpServer(mcp_server, config, SessionRegistry(), host=host, port=port)

    logger.info(f"> Local Storage: {cache.cache_root}")
    logger.info(f"> URL: http://{http.host}:{http.port}/sse")
    http.run()


@app.command()
def prepare(config_path: str = CONFIG_OPTION) -> None:
    """Clone (or validate) the configured repositories and exit."""
    config = _load(config_path)
    cache = _repo_cache(config)
    asyncio.run(cache.prepare_all(config.repos.sources))
    prepared = cache.descriptors()
    _print_repos(config, prepared)

    if len(prepared) < len(config.repos.sources):
        raise typer.Exit(1)


@app.command()
def repos(config_path: str = CONFIG_OPTION) -> None:
    """Show configured repositories and whether they are ready. Never clones."""
    config = _load(config_path)
    cache = _repo_cache(config)

    ready = []
    for name, source in config.repos.sources.items():
        if config.repos.mode == "local":
            path = Path(source).expanduser().resolve()
        else:
            path = cache.path_for(name)
        if is_git_checkout(path):
            ready.append(RepositoryDescriptor(name=name, source=source, path=path))

    _print_repos(config, ready)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
