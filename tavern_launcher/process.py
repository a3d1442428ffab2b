"""
Process manager for the SillyTavern server.

Owns the single child server process. Handles starting (with port
reclamation and readiness polling) and stopping (graceful, then forced).
Captures stdout/stderr into the operator log and notices crashes, which are
logged but never restarted automatically.
"""

import asyncio
import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from . import health, ports
from .config import config
from .logs import LogBuffer
from .models import Settings
from .versions import VersionRegistry

logger = logging.getLogger(__name__)


class AppState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class ManagedProcess:
    """The running SillyTavern process."""

    version: str
    process: subprocess.Popen
    logs: LogBuffer
    started_at: datetime = field(default_factory=datetime.now)


def spawn_process(args: list[str], cwd: str, env: dict) -> subprocess.Popen:
    return subprocess.Popen(
        args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,  # Create new process group
    )


class AppProcessManager:
    """Supervises the SillyTavern server process."""

    def __init__(
        self,
        registry: VersionRegistry,
        logs: LogBuffer,
        port: int = None,
        probe: Callable[[int], Awaitable[bool]] = None,
        reclaimer: Callable[[int], bool] = None,
        spawner: Callable[..., subprocess.Popen] = spawn_process,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        process_group: bool = True,
    ):
        self.registry = registry
        self.logs = logs
        self.port = port or config.app_port
        self._probe = probe or (lambda p: health.is_alive(p))
        self._reclaimer = reclaimer or ports.reclaim
        self._spawner = spawner
        self._sleep = sleep
        self._process_group = process_group
        self._handle: ManagedProcess | None = None
        self._state = AppState.STOPPED

    @property
    def state(self) -> AppState:
        return self._state

    def is_running(self) -> bool:
        """True while the launcher holds a live handle."""
        return self._handle is not None

    def get_pid(self) -> int | None:
        handle = self._handle
        if handle and handle.process.poll() is None:
            return handle.process.pid
        return None

    async def is_port_alive(self) -> bool:
        return await self._probe(self.port)

    async def _reclaim(self):
        await asyncio.to_thread(self._reclaimer, self.port)

    async def start(self) -> tuple[bool, str]:
        """Start SillyTavern for the active version and wait until it answers."""
        if self._handle is not None or self._state is not AppState.STOPPED:
            return False, "Server is already running"

        if await self.is_port_alive():
            self.logs.add(f"Port {self.port} is in use, reclaiming...")
            await self._reclaim()
            await self._sleep(config.reclaim_delay)
            if await self.is_port_alive():
                return False, "Server is already running, cannot reclaim port"
            self.logs.add(f"Port {self.port} reclaimed")

        version = self.registry.active_version()
        if not version or not self.registry.is_installed(version):
            return False, f"Version {version} is not installed, install it first"
        path = self.registry.resolve_path(version)

        # Make sure nothing grabbed the port since the probe
        await self._reclaim()
        await self._sleep(config.prespawn_delay)

        self._state = AppState.STARTING
        self.logs.add(f"Starting SillyTavern {version}...")
        env = {**os.environ, "NODE_ENV": "production"}
        try:
            process = self._spawner(list(config.app_command), cwd=str(path), env=env)
        except OSError as e:
            self._state = AppState.STOPPED
            self.logs.add(f"Failed to start: {e}", "error")
            return False, f"Failed to start: {e}"

        handle = ManagedProcess(version=version, process=process, logs=self.logs)
        self._handle = handle
        self._watch(handle)

        ready = await health.poll_until(
            self.is_port_alive,
            interval=config.ready_interval,
            max_attempts=config.ready_attempts,
            sleep=self._sleep,
        )
        if ready:
            if self._handle is handle:
                self._state = AppState.RUNNING
            self.logs.add("SillyTavern started")
            return True, "Started"

        if self._handle is handle and process.poll() is None:
            self._state = AppState.RUNNING
            self.logs.add("Startup is taking a while, the server may still be initializing")
            return True, "Started (still initializing)"

        self._clear(handle)
        self.logs.add("SillyTavern failed to start", "error")
        return False, "Failed to start, check the logs"

    async def stop(self, timeout: float = None) -> tuple[bool, str]:
        """Stop the server: SIGTERM, then SIGKILL once the grace period runs out."""
        handle = self._handle
        if handle is None:
            return False, "Server is not running"

        self._state = AppState.STOPPING
        self.logs.add("Stopping SillyTavern...")
        process = handle.process
        self._signal(process, signal.SIGTERM)

        try:
            await asyncio.to_thread(process.wait, timeout if timeout is not None else config.stop_grace)
        except subprocess.TimeoutExpired:
            logger.warning("SillyTavern did not stop gracefully, forcing kill")
            self._signal(process, signal.SIGKILL)
            self._clear(handle)
            self.logs.add("Server force stopped")
            return True, "Server force stopped"

        self._clear(handle)
        return True, "Server stopped"

    async def status(self) -> dict:
        running = await self.is_port_alive()
        version_info = await health.fetch_json(self.port) if running else None
        return {
            "running": running,
            "port": self.port,
            "version": version_info,
            "active_version": Settings.load().active_version,
            "managed": self.is_running(),
            "state": self._state.value,
            "pid": self.get_pid(),
        }

    def _clear(self, handle: ManagedProcess):
        if self._handle is handle:
            self._handle = None
            self._state = AppState.STOPPED

    def _signal(self, process: subprocess.Popen, sig: int):
        try:
            if self._process_group:
                os.killpg(os.getpgid(process.pid), sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    def _watch(self, handle: ManagedProcess):
        """Start output capture and exit watcher threads for a new process."""
        process = handle.process
        readers = [
            threading.Thread(target=self._capture_output, args=(process.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._capture_output, args=(process.stderr, "stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()
        threading.Thread(target=self._wait_for_exit, args=(handle, readers), daemon=True).start()

    def _capture_output(self, stream, level: str):
        """Copy each line of a child stream into the log buffer."""
        if stream is None:
            return
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    self.logs.add(decoded, level)
        except (OSError, ValueError) as e:
            logger.error(f"Error in log capture: {e}")

    def _wait_for_exit(self, handle: ManagedProcess, readers: list[threading.Thread]):
        code = handle.process.wait()
        for reader in readers:
            reader.join(timeout=1)
        self.logs.add(f"Server exited (exit code: {code})")
        self._clear(handle)
