"""
Port reclamation.

Frees a TCP port by killing whatever process holds it. Hosts differ in which
tools they ship (Termux has no fuser, macOS has no ss), so reclamation is an
ordered list of strategies tried in turn. A strategy returns True when it
believes it killed the owner; any failure inside a strategy, including a
missing tool, just means "try the next one".
"""

import logging
import os
import re
import shutil
import signal
import socket
import subprocess
from typing import Callable

import psutil

from .config import config

logger = logging.getLogger(__name__)

TOOL_TIMEOUT = 10

Strategy = Callable[[int], bool]


def _kill_pids(pids: list[int]) -> bool:
    """SIGKILL the given pids, skipping ourselves. True if anything was signalled."""
    own = os.getpid()
    killed = False
    for pid in pids:
        if pid == own:
            continue
        try:
            os.kill(pid, signal.SIGKILL)
            killed = True
        except ProcessLookupError:
            pass
    return killed


def _parse_pids(output: str) -> list[int]:
    return [int(token) for token in re.findall(r"\d+", output)]


def _run(args: list[str]) -> subprocess.CompletedProcess | None:
    """Run a host tool if it exists; None when the tool is unavailable."""
    if not shutil.which(args[0]):
        return None
    return subprocess.run(args, capture_output=True, text=True, timeout=TOOL_TIMEOUT)


def kill_with_psutil(port: int) -> bool:
    """Look the listener up in the kernel connection table."""
    pids = {
        conn.pid
        for conn in psutil.net_connections(kind="tcp")
        if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid
    }
    return _kill_pids(sorted(pids))


def kill_with_fuser(port: int) -> bool:
    result = _run(["fuser", "-k", f"{port}/tcp"])
    return result is not None and result.returncode == 0


def kill_with_lsof(port: int) -> bool:
    result = _run(["lsof", "-t", f"-i:{port}"])
    if result is None or result.returncode != 0:
        return False
    return _kill_pids(_parse_pids(result.stdout))


def kill_with_ss(port: int) -> bool:
    result = _run(["ss", "-tlnp"])
    if result is None or result.returncode != 0:
        return False
    pids = []
    for line in result.stdout.splitlines():
        if re.search(rf":{port}\s", line):
            pids.extend(int(pid) for pid in re.findall(r"pid=(\d+)", line))
    return _kill_pids(pids)


def kill_by_pattern(pattern: str) -> Strategy:
    """Build a strategy that kills processes whose command line matches pattern."""
    regex = re.compile(pattern)

    def strategy(port: int) -> bool:
        protected = {os.getpid()}
        protected.update(p.pid for p in psutil.Process().parents())
        pids = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = " ".join(proc.info["cmdline"] or [])
            if proc.info["pid"] not in protected and regex.search(cmdline):
                pids.append(proc.info["pid"])
        return _kill_pids(pids)

    strategy.__name__ = "kill_by_pattern"
    return strategy


def default_strategies(pattern: str = None) -> list[Strategy]:
    strategies = [kill_with_psutil, kill_with_fuser, kill_with_lsof, kill_with_ss]
    pattern = config.reclaim_pattern if pattern is None else pattern
    if pattern:
        strategies.append(kill_by_pattern(pattern))
    return strategies


def reclaim(port: int, strategies: list[Strategy] = None) -> bool:
    """
    Best-effort termination of whatever owns a TCP port.

    Returns True on the first strategy that reports success, False if all
    strategies fail or are unavailable. Never raises.
    """
    for strategy in strategies if strategies is not None else default_strategies():
        name = getattr(strategy, "__name__", repr(strategy))
        try:
            if strategy(port):
                logger.info(f"Reclaimed port {port} via {name}")
                return True
        except Exception as e:
            logger.debug(f"Port reclaim strategy {name} failed for port {port}: {e}")
    logger.debug(f"No strategy could reclaim port {port}")
    return False


def port_is_free(host: str, port: int) -> bool:
    """True if we could bind host:port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True
