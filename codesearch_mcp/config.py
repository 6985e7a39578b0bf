"""Configuration loader - reads codesearch.toml with ENV overrides."""  # noqa: I001

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import Any, cast

# Logical repository names the tools accept
REPO_NAMES: tuple[str, ...] = ("revm", "alloy", "reth")

# ENV var carrying the remote URL for each logical repository
REPO_URL_ENV: dict[str, str] = {name: f"URL_{name.upper()}" for name in REPO_NAMES}

_TRUTHY = ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "info"

    def validate(self) -> None:
        if not (1 <= self.port <= 65535):
            raise ValueError(f"Invalid port: {self.port}")


@dataclass
class ReposConfig:
    """Repository cache settings."""

    cache_dir: str = "repos"
    mode: str = "clone"  # "clone" | "local"
    sources: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if self.mode not in ("clone", "local"):
            raise ValueError(f"Invalid repos mode: {self.mode}")
        unknown = sorted(set(self.sources) - set(REPO_NAMES))
        if unknown:
            raise ValueError(f"Unknown repositories {unknown}. Allowed: {list(REPO_NAMES)}")

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser().resolve()


@dataclass
class ToolsConfig:
    """Tool execution settings."""

    git_binary: str = "git"
    exec_timeout: int = 30
    clone_timeout: int = 600
    max_search_lines: int = 50

    def validate(self) -> None:
        if self.exec_timeout <= 0:
            raise ValueError("exec_timeout must be positive")
        if self.clone_timeout <= 0:
            raise ValueError("clone_timeout must be positive")
        if self.max_search_lines <= 0:
            raise ValueError("max_search_lines must be positive")


@dataclass
class SessionsConfig:
    """SSE session settings."""

    endpoint: str = "/messages/"
    # Below the 60s idle timeout most proxies and load balancers use
    keepalive_interval: float = 15.0

    def validate(self) -> None:
        if self.keepalive_interval <= 0:
            raise ValueError("keepalive_interval must be positive")
        if not self.endpoint.startswith("/"):
            raise ValueError(f"Invalid endpoint: {self.endpoint}")


@dataclass
class ObservabilityConfig:
    """Logging and metrics settings."""

    log_format: str = "text"  # "json" | "text"
    log_level: str = "info"
    include_correlation_id: bool = True
    metrics_enabled: bool = False
    metrics_path: str = "/metrics"

    def validate(self) -> None:
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log_format: {self.log_format}")


@dataclass
class CodeSearchConfig:
    """Root configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    repos: ReposConfig = field(default_factory=ReposConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def validate(self) -> None:
        self.server.validate()
        self.repos.validate()
        self.tools.validate()
        self.sessions.validate()
        self.observability.validate()


def _apply_env_overrides(cfg: CodeSearchConfig) -> CodeSearchConfig:
    """Apply environment variable overrides. ENV beats TOML."""
    if os.getenv("PORT"):
        try:
            cfg.server.port = int(os.getenv("PORT", ""))
        except ValueError as e:
            raise ValueError(f"Invalid PORT: {os.getenv('PORT')}") from e
    if os.getenv("HOST"):
        cfg.server.host = os.getenv("HOST", cfg.server.host)

    # URL_REVM, URL_ALLOY, URL_RETH - unset or empty means "not configured"
    for name, env_name in REPO_URL_ENV.items():
        value = os.getenv(env_name, "").strip()
        if value:
            cfg.repos.sources[name] = value

    if os.getenv("CODESEARCH_CACHE_DIR"):
        cfg.repos.cache_dir = os.getenv("CODESEARCH_CACHE_DIR", cfg.repos.cache_dir)
    if os.getenv("CODESEARCH_REPO_MODE"):
        cfg.repos.mode = os.getenv("CODESEARCH_REPO_MODE", cfg.repos.mode).lower()

    if os.getenv("CODESEARCH_LOG_LEVEL"):
        cfg.server.log_level = os.getenv("CODESEARCH_LOG_LEVEL", cfg.server.log_level)
        cfg.observability.log_level = cfg.server.log_level
    if os.getenv("CODESEARCH_LOG_FORMAT"):
        cfg.observability.log_format = os.getenv(
            "CODESEARCH_LOG_FORMAT", cfg.observability.log_format
        ).lower()

    if os.getenv("CODESEARCH_KEEPALIVE_S"):
        try:
            cfg.sessions.keepalive_interval = float(os.getenv("CODESEARCH_KEEPALIVE_S", ""))
        except ValueError as e:
            raise ValueError(
                f"Invalid CODESEARCH_KEEPALIVE_S: {os.getenv('CODESEARCH_KEEPALIVE_S')}"
            ) from e

    if os.getenv("CODESEARCH_METRICS_ENABLED"):
        cfg.observability.metrics_enabled = (
            os.getenv("CODESEARCH_METRICS_ENABLED", "").lower() in _TRUTHY
        )

    return cfg


def _apply_toml(cfg: CodeSearchConfig, data: dict[str, Any]) -> None:
    root = data.get("codesearch", {})

    srv = root.get("server", {})
    cfg.server.host = srv.get("host", cfg.server.host)
    cfg.server.port = srv.get("port", cfg.server.port)
    cfg.server.log_level = srv.get("log_level", cfg.server.log_level)

    repos = root.get("repos", {})
    cfg.repos.cache_dir = repos.get("cache_dir", cfg.repos.cache_dir)
    cfg.repos.mode = repos.get("mode", cfg.repos.mode)
    cfg.repos.sources = dict(repos.get("sources", cfg.repos.sources))

    tools = root.get("tools", {})
    cfg.tools.git_binary = tools.get("git_binary", cfg.tools.git_binary)
    cfg.tools.exec_timeout = tools.get("exec_timeout", cfg.tools.exec_timeout)
    cfg.tools.clone_timeout = tools.get("clone_timeout", cfg.tools.clone_timeout)
    cfg.tools.max_search_lines = tools.get("max_search_lines", cfg.tools.max_search_lines)

    sessions = root.get("sessions", {})
    cfg.sessions.endpoint = sessions.get("endpoint", cfg.sessions.endpoint)
    cfg.sessions.keepalive_interval = sessions.get(
        "keepalive_interval", cfg.sessions.keepalive_interval
    )

    obs = root.get("observability", {})
    cfg.observability.log_format = obs.get("log_format", cfg.observability.log_format)
    cfg.observability.log_level = obs.get("log_level", cfg.observability.log_level)
    cfg.observability.include_correlation_id = obs.get(
        "include_correlation_id", cfg.observability.include_correlation_id
    )
    cfg.observability.metrics_enabled = obs.get(
        "metrics_enabled", cfg.observability.metrics_enabled
    )
    cfg.observability.metrics_path = obs.get("metrics_path", cfg.observability.metrics_path)


def load_config(config_path: str | Path | None = None) -> CodeSearchConfig:
    """
    Load config from codesearch.toml with ENV overrides.

    Precedence: ENV → TOML → defaults

    Args:
        config_path: Path to codesearch.toml. If None, searches:
            1. CODESEARCH_CONFIG env var
            2. ./codesearch.toml

    Returns:
        CodeSearchConfig dataclass with merged settings.
    """
    if config_path is None:
        if os.getenv("CODESEARCH_CONFIG"):
            config_path = Path(cast(str, os.getenv("CODESEARCH_CONFIG")))
        else:
            config_path = Path("codesearch.toml")
    else:
        config_path = Path(config_path)

    cfg = CodeSearchConfig()

    if config_path.exists():
        with open(config_path, "rb") as f:
            _apply_toml(cfg, tomllib.load(f))

    cfg = _apply_env_overrides(cfg)
    cfg.validate()

    return cfg
