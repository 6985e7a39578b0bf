"""
Repository cache: maps logical repository names to ready on-disk checkouts.

Two modes, chosen once in config:
- ``clone``: ``<cache_root>/<name>`` is cloned from the remote on first start
  and reused untouched afterwards (no fetch, no pull).
- ``local``: the source is an existing checkout; it is only validated.

Preparation runs sequentially at startup, before the server accepts
connections. After that the mapping is read-only, so lookups need no lock.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from pathlib import Path

from codesearch_mcp.config import REPO_NAMES
from codesearch_mcp.errors import CommandFailed, RepositoryUnavailable
from codesearch_mcp.tools.cmd import run_command

logger = logging.getLogger("codesearch-mcp.repos")

GIT_MARKER = ".git"


@dataclass(frozen=True)
class RepositoryDescriptor:
    """A prepared repository."""

    name: str
    source: str
    path: Path


def is_git_checkout(path: Path) -> bool:
    """The presence of git metadata is the sole readiness signal."""
    return (path / GIT_MARKER).exists()


class RepoCache:
    """Prepares repositories at startup and resolves names to paths."""

    def __init__(
        self,
        cache_root: Path | str,
        *,
        mode: str = "clone",
        git_binary: str = "git",
        clone_timeout: float = 600,
    ):
        if mode not in ("clone", "local"):
            raise ValueError(f"Invalid repos mode: {mode}")
        self.cache_root = Path(cache_root).expanduser().resolve()
        self.mode = mode
        self.git_binary = git_binary
        self.clone_timeout = clone_timeout
        self._repos: dict[str, RepositoryDescriptor] = {}

    def path_for(self, name: str) -> Path:
        """Local directory a cloned repository lives in."""
        return self.cache_root / name

    async def ensure(self, name: str, source: str) -> RepositoryDescriptor | None:
        """
        Make ``name`` ready and register it.

        Failures are logged and leave the repository unregistered for the
        rest of the process lifetime.

        Returns:
            The descriptor, or None when the repository could not be prepared
        """
        if name not in REPO_NAMES:
            logger.error(f"[Repo: {name}] Unknown repository name, skipping")
            return None
        if not source:
            logger.info(f"[Repo: {name}] No source configured, skipping")
            return None

        logger.info(f"[Repo: {name}] Preparing...")

        if self.mode == "local":
            path = Path(source).expanduser().resolve()
            if not path.is_dir() or not is_git_checkout(path):
                logger.error(f"[Repo: {name}] {path} is not a git checkout, skipping")
                return None
            logger.info(f"[Repo: {name}] Using local checkout at {path}")
        else:
            path = self.path_for(name)
            if is_git_checkout(path):
                logger.info(f"[Repo: {name}] Local cache found at {path}")
            else:
                logger.info(f"[Repo: {name}] Cache missing. Cloning from remote...")
                try:
                    self.cache_root.mkdir(parents=True, exist_ok=True)
                    await run_command(
                        [self.git_binary, "clone", "--", source, name],
                        self.cache_root,
                        timeout=self.clone_timeout,
                    )
                except (CommandFailed, OSError) as e:
                    logger.error(f"[Repo: {name}] Clone failed: {e}")
                    return None
                logger.info(f"[Repo: {name}] Clone success!")

        descriptor = RepositoryDescriptor(name=name, source=source, path=path)
        self._repos[name] = descriptor
        return descriptor

    async def prepare_all(self, sources: Mapping[str, str]) -> list[RepositoryDescriptor]:
        """Prepare every configured repository, one after another."""
        prepared = []
        for name, source in sources.items():
            descriptor = await self.ensure(name, source)
            if descriptor is not None:
                prepared.append(descriptor)
        logger.info(f"Repositories ready: {[d.name for d in prepared]}")
        return prepared

    def resolve(self, name: str) -> Path:
        """
        Look up the local path of a prepared repository.

        Raises:
            RepositoryUnavailable: If ``name`` was never successfully prepared
        """
        descriptor = self._repos.get(name)
        if descriptor is None:
            raise RepositoryUnavailable(name)
        return descriptor.path

    def names(self) -> list[str]:
        return list(self._repos)

    def descriptors(self) -> list[RepositoryDescriptor]:
        return list(self._repos.values())

    def __contains__(self, name: object) -> bool:
        return name in self._repos
