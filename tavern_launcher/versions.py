"""
SillyTavern version registry.

Knows two kinds of installation: catalog versions that the launcher clones
into its own versions directory on demand, and local installations found by
scanning the filesystem for an existing SillyTavern checkout. Handles install,
uninstall and switching the active version, migrating user data between
catalog versions on switch.
"""

import asyncio
import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from . import app_config
from .config import config
from .logs import LogBuffer
from .migrate import copy_data
from .models import Settings

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local_"
MANIFEST_FILE = "package.json"
ENTRY_FILE = "server.js"
DEPS_DIR = "node_modules"
DATA_DIR = "data"


@dataclass(frozen=True)
class CatalogVersion:
    """A release that can be installed from the upstream repository."""

    id: str
    label: str
    tag: str
    default: bool = False


@dataclass
class LocalInstallation:
    """An existing SillyTavern checkout found on disk."""

    id: str
    label: str
    path: Path
    version: str


CATALOG: dict[str, CatalogVersion] = {
    v.id: v
    for v in [
        CatalogVersion("1.14.0", "v1.14.0 (latest)", "1.14.0"),
        CatalogVersion("1.13.5", "v1.13.5 (stable)", "1.13.5", default=True),
        CatalogVersion("1.13.4", "v1.13.4", "1.13.4"),
        CatalogVersion("1.12.14", "v1.12.14 (classic)", "1.12.14"),
    ]
}


def run_command(args: list[str], cwd: Path = None, timeout: int = None):
    """Run a command to completion, raising CalledProcessError on failure."""
    subprocess.run(
        args,
        cwd=str(cwd) if cwd else None,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=True,
    )


def describe_error(error: Exception) -> str:
    """Best human-readable text for a failed install phase."""
    if isinstance(error, subprocess.CalledProcessError) and error.stderr:
        stderr = error.stderr.decode(errors="replace") if isinstance(error.stderr, bytes) else error.stderr
        if stderr.strip():
            return stderr.strip()
    return str(error)


def read_manifest(directory: Path) -> dict | None:
    try:
        return json.loads((directory / MANIFEST_FILE).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


class VersionRegistry:
    """Catalog and local SillyTavern installations."""

    def __init__(
        self,
        logs: LogBuffer,
        versions_dir: Path = None,
        home_dir: Path = None,
        search_paths: list[Path] = None,
        catalog: dict[str, CatalogVersion] = None,
        runner: Callable = run_command,
        is_busy: Callable[[], bool] = lambda: False,
    ):
        self.logs = logs
        self.versions_dir = Path(versions_dir or config.versions_dir)
        self.home_dir = Path(home_dir or config.home_dir)
        self._search_paths = search_paths if search_paths is not None else config.search_paths()
        self.catalog = catalog if catalog is not None else CATALOG
        self._runner = runner
        self.is_busy = is_busy
        self._local: dict[str, LocalInstallation] = {}

    @property
    def local_installations(self) -> dict[str, LocalInstallation]:
        return dict(self._local)

    def ensure_versions_dir(self):
        self.versions_dir.mkdir(parents=True, exist_ok=True)

    # Discovery

    def is_app_dir(self, directory: Path) -> bool:
        """True if directory holds a SillyTavern checkout."""
        if not (directory / MANIFEST_FILE).is_file() or not (directory / ENTRY_FILE).is_file():
            return False
        manifest = read_manifest(directory)
        return bool(manifest) and str(manifest.get("name", "")).lower() == config.app_name

    def _candidates(self) -> list[Path]:
        candidates = list(self._search_paths)
        try:
            for entry in sorted(self.home_dir.iterdir()):
                if entry.is_dir() and entry not in candidates:
                    candidates.append(entry)
        except OSError as e:
            logger.warning(f"Could not list {self.home_dir}: {e}")
        return candidates

    def _inside_versions_dir(self, directory: Path) -> bool:
        try:
            directory.resolve().relative_to(self.versions_dir.resolve())
            return True
        except ValueError:
            return False

    def scan_local(self) -> dict[str, LocalInstallation]:
        """Rescan for local installations, replacing the previous result."""
        found: dict[str, LocalInstallation] = {}
        seen: set[Path] = set()

        for candidate in self._candidates():
            try:
                if not candidate.is_dir() or not self.is_app_dir(candidate):
                    continue
            except OSError:
                continue
            if self._inside_versions_dir(candidate) or candidate.resolve() in seen:
                continue
            seen.add(candidate.resolve())

            version = (read_manifest(candidate) or {}).get("version", "unknown")
            key = f"{LOCAL_PREFIX}{candidate.name}"
            if key in found:
                continue
            found[key] = LocalInstallation(
                id=key,
                label=f"Local: {candidate.name} (v{version})",
                path=candidate,
                version=version,
            )

        self._local = found
        logger.info(f"Found {len(found)} local installation(s)")
        return dict(found)

    # Lookup

    def is_local(self, version_id: str) -> bool:
        return version_id in self._local

    def is_known(self, version_id: str) -> bool:
        return version_id in self.catalog or version_id in self._local

    def default_version(self) -> str | None:
        for entry in self.catalog.values():
            if entry.default:
                return entry.id
        return next(iter(self.catalog), None)

    def active_version(self) -> str | None:
        """The configured active version, falling back to the catalog default."""
        return Settings.load().active_version or self.default_version()

    def resolve_path(self, version_id: str) -> Path | None:
        if version_id in self._local:
            return self._local[version_id].path
        if version_id in self.catalog:
            return self.versions_dir / version_id
        return None

    def is_installed(self, version_id: str) -> bool:
        path = self.resolve_path(version_id)
        if path is None or not path.is_dir():
            return False
        deps = path / DEPS_DIR
        if self.is_local(version_id):
            return deps.is_dir()
        return deps.is_dir() and any(deps.iterdir())

    def list_versions(self) -> list[dict]:
        """Local installations first, then the catalog."""
        active = Settings.load().active_version
        versions = []
        for install in self._local.values():
            versions.append(
                {
                    "id": install.id,
                    "label": install.label,
                    "installed": True,
                    "active": active == install.id,
                    "default": False,
                    "is_local": True,
                    "path": str(install.path),
                }
            )
        for entry in self.catalog.values():
            versions.append(
                {
                    "id": entry.id,
                    "label": entry.label,
                    "installed": self.is_installed(entry.id),
                    "active": active == entry.id,
                    "default": entry.default,
                    "is_local": False,
                }
            )
        return versions

    # Operations

    async def install(self, version_id: str) -> tuple[bool, str]:
        """Clone, install dependencies and configure a catalog version."""
        entry = self.catalog.get(version_id)
        if entry is None:
            return False, f"Unknown version: {version_id}"
        return await asyncio.to_thread(self._install, entry)

    def _install(self, entry: CatalogVersion) -> tuple[bool, str]:
        path = self.versions_dir / entry.id
        self.logs.add(f"Installing version {entry.id}...")

        try:
            if not path.exists():
                self.ensure_versions_dir()
                self.logs.add(f"Cloning SillyTavern {entry.tag}...")
                self._runner(
                    ["git", "clone", "--branch", entry.tag, "--depth", "1", config.app_repo_url, str(path)],
                    timeout=config.clone_timeout,
                )

            self.logs.add("Installing dependencies...")
            self._runner(["npm", "install"], cwd=path, timeout=config.npm_timeout)

            app_config.enable_security_override(path)
        except (subprocess.SubprocessError, OSError, ValueError) as e:
            message = describe_error(e)
            self.logs.add(f"Install of {entry.id} failed: {message}", "error")
            return False, message

        self.logs.add(f"Version {entry.id} installed")
        return True, f"Version {entry.id} installed"

    def uninstall(self, version_id: str) -> tuple[bool, str]:
        """Delete a catalog version's directory."""
        if version_id not in self.catalog:
            return False, f"Unknown version: {version_id}"

        path = self.versions_dir / version_id
        if not path.exists():
            return False, f"Version {version_id} is not installed"

        if Settings.load().active_version == version_id:
            return False, "Cannot uninstall the active version, switch to another version first"

        if self.is_busy():
            return False, "Stop the server before uninstalling"

        try:
            self.logs.add(f"Uninstalling version {version_id}...")
            shutil.rmtree(path)
        except OSError as e:
            self.logs.add(f"Uninstall of {version_id} failed: {e}", "error")
            return False, str(e)

        self.logs.add(f"Version {version_id} uninstalled")
        return True, f"Version {version_id} uninstalled"

    def switch(self, version_id: str) -> tuple[bool, str]:
        """Make version_id active, carrying user data over between catalog versions."""
        if not self.is_known(version_id):
            return False, f"Unknown version: {version_id}"
        if not self.is_installed(version_id):
            return False, f"Version {version_id} is not installed, install it first"

        settings = Settings.load()
        previous = settings.active_version

        if previous and previous != version_id and previous in self.catalog and version_id in self.catalog:
            source = self.resolve_path(previous) / DATA_DIR
            dest = self.resolve_path(version_id) / DATA_DIR
            if source.is_dir():
                try:
                    self.logs.add(f"Migrating data from {previous} to {version_id}...")
                    copy_data(source, dest)
                except OSError as e:
                    self.logs.add(f"Data migration failed: {e}", "error")
                    return False, f"Data migration failed: {e}"
                self.logs.add("Data migration complete")

        settings.active_version = version_id
        settings.save()

        self.logs.add(f"Switched to version {version_id}")
        return True, f"Switched to {version_id}"
