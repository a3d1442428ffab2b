"""Shared fixtures: a temporary settings database, fake processes and fake installs."""

from __future__ import annotations

import io
import json
import signal
import subprocess
import threading
from pathlib import Path

import pytest

from tavern_launcher.logs import LogBuffer
from tavern_launcher.models import Settings, initialize_db
from tavern_launcher.versions import VersionRegistry


# =============================================================================
# Helpers
# =============================================================================


def make_app_dir(
    path: Path,
    *,
    name: str = "sillytavern",
    version: str = "1.13.5",
    deps: bool = True,
    config_text: str = "securityOverride: false\ncacheBuster:\n  enabled: true\n",
) -> Path:
    """Create a directory that looks like a SillyTavern checkout."""
    path.mkdir(parents=True, exist_ok=True)
    (path / "package.json").write_text(json.dumps({"name": name, "version": version}))
    (path / "server.js").write_text("// server\n")
    (path / "config.yaml").write_text(config_text)
    if deps:
        (path / "node_modules" / "express").mkdir(parents=True, exist_ok=True)
        (path / "node_modules" / "express" / "index.js").write_text("module.exports = {}\n")
    return path


class FakeRunner:
    """Stands in for git/npm: creates the files the real commands would."""

    def __init__(self, fail_on: str | None = None, stderr: str = "boom"):
        self.fail_on = fail_on
        self.stderr = stderr
        self.calls: list[list[str]] = []

    def __call__(self, args, cwd=None, timeout=None):
        self.calls.append(list(args))
        if self.fail_on == args[0]:
            raise subprocess.CalledProcessError(1, args, stderr=self.stderr)
        if args[:2] == ["git", "clone"]:
            make_app_dir(Path(args[-1]), deps=False)
        elif args[:2] == ["npm", "install"]:
            make_app_dir(Path(cwd), deps=True, config_text=(Path(cwd) / "config.yaml").read_text())


class FakeProcess:
    """Popen look-alike that exits when told to or when signalled."""

    def __init__(self, pid: int = 4242, stdout: bytes = b"", stderr: bytes = b"", exits_on_term: bool = True):
        self.pid = pid
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self.returncode = None
        self.signals: list[int] = []
        self.exits_on_term = exits_on_term
        self._exited = threading.Event()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("node", timeout)
        return self.returncode

    def exit(self, code: int = 0):
        self.returncode = code
        self._exited.set()

    def send_signal(self, sig):
        self.signals.append(sig)
        if sig == signal.SIGKILL or self.exits_on_term:
            self.exit(-sig)


class FakeSpawner:
    """Records spawn requests and hands out FakeProcess objects."""

    def __init__(self, port_state: "FakePort | None" = None, **process_kwargs):
        self.port_state = port_state
        self.process_kwargs = process_kwargs
        self.calls: list[dict] = []
        self.processes: list[FakeProcess] = []

    def __call__(self, args, cwd=None, env=None):
        self.calls.append({"args": args, "cwd": cwd, "env": env})
        process = FakeProcess(**self.process_kwargs)
        self.processes.append(process)
        if self.port_state is not None and self.port_state.up_on_spawn:
            self.port_state.alive = True
        return process


class FakePort:
    """Scriptable liveness of the SillyTavern port."""

    def __init__(self, alive: bool = False, up_on_spawn: bool = True, reclaimable: bool = True):
        self.alive = alive
        self.up_on_spawn = up_on_spawn
        self.reclaimable = reclaimable
        self.probes = 0
        self.reclaims = 0

    async def probe(self, port: int) -> bool:
        self.probes += 1
        return self.alive

    def reclaim(self, port: int) -> bool:
        self.reclaims += 1
        if self.reclaimable and self.alive:
            self.alive = False
            return True
        return False


async def no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def db(tmp_path: Path):
    """Fresh settings database per test."""
    initialize_db(tmp_path / "launcher.db")
    yield
    Settings._meta.database.close()


@pytest.fixture
def logs() -> LogBuffer:
    return LogBuffer(capacity=50)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def versions_dir(home: Path) -> Path:
    path = home / "st-versions"
    path.mkdir()
    return path


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def registry(db, logs: LogBuffer, home: Path, versions_dir: Path, runner: FakeRunner) -> VersionRegistry:
    return VersionRegistry(
        logs,
        versions_dir=versions_dir,
        home_dir=home,
        search_paths=[],
        runner=runner,
    )
