from collections.abc import Callable
from pathlib import Path
import re
import shutil
import subprocess
import sys

import anyio
import pytest

# Ensure repo root is importable as a package root (for `codesearch_mcp.*`).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_ENV_VARS = [
    "PORT",
    "HOST",
    "URL_REVM",
    "URL_ALLOY",
    "URL_RETH",
    "CODESEARCH_CONFIG",
    "CODESEARCH_CACHE_DIR",
    "CODESEARCH_REPO_MODE",
    "CODESEARCH_LOG_LEVEL",
    "CODESEARCH_LOG_FORMAT",
    "CODESEARCH_KEEPALIVE_S",
    "CODESEARCH_METRICS_ENABLED",
]

SESSION_ID_RE = re.compile(rb"session_id=([0-9a-f]{32})")

TOKEN_SOL = """\
import "./SafeMath.sol";

contract Token {
    using SafeMath for uint256;
    uint256 public total;
}
"""

MATH_SOL = """\
library SafeMath {
    function add(uint256 a, uint256 b) internal pure returns (uint256) {
        return a + b;
    }
}
"""


@pytest.fixture(autouse=True)
def hermetic_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Autouse: each test runs in its own tmp cwd with no codesearch ENV leaking in.
    """
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def git(cwd: Path, *args: str) -> str:
    """Run git with a fixed identity; test-side helper only."""
    result = subprocess.run(
        [
            "git",
            "-c",
            "user.name=Test",
            "-c",
            "user.email=test@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def git_available() -> None:
    if shutil.which("git") is None:
        pytest.skip("git not installed")


@pytest.fixture
def source_repo(tmp_path: Path, git_available: None) -> Path:
    """
    A small upstream repository.

    "SafeMath" appears on exactly 3 lines at HEAD (2 in Token.sol, 1 in
    SafeMath.sol). A `feature` branch adds a file that exists nowhere else.
    """
    repo = tmp_path / "upstream" / "alloy"
    repo.mkdir(parents=True)
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")

    (repo / "contracts").mkdir()
    (repo / "contracts" / "Token.sol").write_text(TOKEN_SOL)
    (repo / "contracts" / "SafeMath.sol").write_text(MATH_SOL)
    (repo / "README.md").write_text("# alloy\n\nFixture repository.\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")

    git(repo, "checkout", "-q", "-b", "feature")
    (repo / "FEATURE.md").write_text("feature only\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "feature")
    git(repo, "checkout", "-q", "main")

    return repo


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


class FakeConnection:
    """In-memory ASGI client side of one SSE response."""

    def __init__(self, fail_on: bytes | None = None):
        self.status: int | None = None
        self.headers: dict[bytes, bytes] = {}
        self.frames: list[bytes] = []
        self.fail_on = fail_on
        self._disconnected = anyio.Event()

    async def receive(self):
        await self._disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message):
        if message["type"] == "http.response.start":
            self.status = message["status"]
            self.headers = dict(message.get("headers", []))
        elif message["type"] == "http.response.body":
            body = message.get("body", b"")
            if self.fail_on is not None and body == self.fail_on:
                raise OSError("Broken pipe")
            if body:
                self.frames.append(body)

    def disconnect(self):
        self._disconnected.set()

    @property
    def session_id(self) -> str:
        match = SESSION_ID_RE.search(self.frames[0])
        assert match is not None
        return match.group(1).decode()


def sse_scope(root_path: str = "", spec_version: str = "2.3") -> dict:
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": spec_version},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/sse",
        "root_path": root_path,
        "query_string": b"",
        "headers": [(b"accept", b"text/event-stream")],
        "client": ("127.0.0.1", 50000),
        "server": ("127.0.0.1", 3000),
    }


async def wait_until(predicate: Callable[[], object], timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)
