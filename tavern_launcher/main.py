"""
Launcher FastAPI application.

Provides the REST API used by the control panel: starting and stopping
SillyTavern, managing installed versions, toggling settings, viewing the
operator log, and running the API aggregation proxy mounted at /v1.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from . import __version__, app_config
from .aggregator import ApiAggregator
from .config import config
from .logs import LogBuffer
from .models import Settings, initialize_db
from .process import AppProcessManager
from .versions import VersionRegistry

logger = logging.getLogger(__name__)


def setup_logging():
    """Configure root logging with a rotating file and the console."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.launcher_log,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=logging.INFO,
        handlers=[file_handler, console_handler],
    )


@dataclass
class Launcher:
    """Everything the API routes operate on."""

    logs: LogBuffer
    registry: VersionRegistry
    processes: AppProcessManager
    aggregator: ApiAggregator


def build_launcher() -> Launcher:
    logs = LogBuffer()
    registry = VersionRegistry(logs)
    processes = AppProcessManager(registry, logs)
    registry.is_busy = processes.is_running
    return Launcher(logs=logs, registry=registry, processes=processes, aggregator=ApiAggregator(logs))


def get_launcher(request: Request) -> Launcher:
    return request.app.state.launcher


def bind_first_local(launcher: Launcher):
    """Make the first local installation active when nothing is configured yet."""
    local = launcher.registry.local_installations
    for install in local.values():
        logger.info(f"Local installation: {install.path} (v{install.version})")
    if not local:
        logger.info("No local installations found, versions can be installed from the panel")
        return

    settings = Settings.load()
    if not settings.active_version:
        first = next(iter(local.values()))
        settings.active_version = first.id
        settings.save()
        logger.info(f"Bound local installation {first.path}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    launcher: Launcher = app.state.launcher
    logger.info("Starting launcher...")

    launcher.registry.ensure_versions_dir()
    launcher.registry.scan_local()
    bind_first_local(launcher)

    for version in launcher.registry.list_versions():
        state = "installed" if version["installed"] else "not installed"
        logger.info(f"  {version['id']}: {state}{' (active)' if version['active'] else ''}")
    launcher.logs.add("Launcher ready")

    yield

    logger.info("Shutting down launcher...")
    if launcher.processes.is_running():
        await launcher.processes.stop()


# Request models
class VersionRequest(BaseModel):
    version: str = Field(..., description="Version id from the versions list")


class SpeedOptimizationRequest(BaseModel):
    enable: bool


class AggregatorStartRequest(BaseModel):
    token: Optional[str] = Field(None, description="Account bearer token")
    user_info: Optional[dict] = Field(None, alias="userInfo", description="Account details")

    model_config = {"populate_by_name": True}


def _result(success: bool, message: str, **extra) -> dict:
    return {"success": success, "message": message, **extra}


router = APIRouter()


# Server control
@router.get("/api/status")
async def get_status(launcher: Launcher = Depends(get_launcher)):
    """Liveness of SillyTavern plus the active version."""
    return await launcher.processes.status()


@router.post("/api/start")
async def start_server(launcher: Launcher = Depends(get_launcher)):
    return _result(*await launcher.processes.start())


@router.post("/api/stop")
async def stop_server(launcher: Launcher = Depends(get_launcher)):
    return _result(*await launcher.processes.stop())


# Logs
@router.get("/api/logs")
async def get_logs(launcher: Launcher = Depends(get_launcher)):
    return {"logs": [entry.to_dict() for entry in launcher.logs.entries()]}


@router.post("/api/logs/clear")
async def clear_logs(launcher: Launcher = Depends(get_launcher)):
    launcher.logs.clear()
    return {"success": True}


# Versions
@router.get("/api/versions")
async def list_versions(launcher: Launcher = Depends(get_launcher)):
    return {"versions": launcher.registry.list_versions()}


@router.post("/api/versions/rescan")
async def rescan_versions(launcher: Launcher = Depends(get_launcher)):
    found = launcher.registry.scan_local()
    return _result(
        True,
        f"Found {len(found)} local installation(s)",
        count=len(found),
        versions=launcher.registry.list_versions(),
    )


@router.post("/api/versions/switch")
async def switch_version(data: VersionRequest, launcher: Launcher = Depends(get_launcher)):
    return _result(*launcher.registry.switch(data.version))


@router.post("/api/versions/install")
async def install_version(data: VersionRequest, launcher: Launcher = Depends(get_launcher)):
    return _result(*await launcher.registry.install(data.version))


@router.post("/api/versions/uninstall")
async def uninstall_version(data: VersionRequest, launcher: Launcher = Depends(get_launcher)):
    return _result(*launcher.registry.uninstall(data.version))


# Settings
@router.get("/api/settings")
async def get_settings(launcher: Launcher = Depends(get_launcher)):
    settings = Settings.load()
    return {
        "speed_optimization": settings.speed_optimization,
        "api_aggregation": settings.api_aggregation,
        "aggregator": launcher.aggregator.status(),
    }


@router.post("/api/settings/speed-optimization")
async def set_speed_optimization(data: SpeedOptimizationRequest, launcher: Launcher = Depends(get_launcher)):
    settings = Settings.load()
    version = settings.active_version or launcher.registry.default_version()
    path = launcher.registry.resolve_path(version) if version else None
    if path is None or not path.exists():
        return _result(False, "Version is not installed")

    state = "enabled" if data.enable else "disabled"
    try:
        app_config.apply_speed_optimization(path, data.enable)
    except (OSError, ValueError) as e:
        launcher.logs.add(f"Speed optimization failed: {e}", "error")
        return _result(False, str(e))

    settings.speed_optimization = data.enable
    settings.save()
    launcher.logs.add(f"Speed optimization {state}")
    return _result(True, f"Speed optimization {state}, restart the server to apply")


# API aggregation
@router.post("/api/aggregator/start")
async def start_aggregator(data: AggregatorStartRequest, launcher: Launcher = Depends(get_launcher)):
    if not data.token or not data.user_info:
        return _result(False, "Bind an account first")

    success, message = await launcher.aggregator.start(data.token, data.user_info)
    if success:
        settings = Settings.load()
        settings.api_aggregation = True
        settings.save()
    return _result(success, message, keys_count=len(launcher.aggregator.pool), endpoint="/v1")


@router.post("/api/aggregator/stop")
async def stop_aggregator(launcher: Launcher = Depends(get_launcher)):
    success, message = launcher.aggregator.stop()
    settings = Settings.load()
    settings.api_aggregation = False
    settings.save()
    return _result(success, message)


@router.get("/api/aggregator/status")
async def aggregator_status(launcher: Launcher = Depends(get_launcher)):
    return launcher.aggregator.status()


# Proxy passthrough
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


@router.api_route("/v1", methods=PROXY_METHODS)
@router.api_route("/v1/{path:path}", methods=PROXY_METHODS)
async def proxy(request: Request, launcher: Launcher = Depends(get_launcher)):
    """Forward /v1 requests upstream with a pooled API key."""
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    reply = await launcher.aggregator.proxy(
        request.method,
        path,
        body=await request.body(),
        content_type=request.headers.get("content-type"),
    )
    return Response(
        content=reply.content,
        status_code=reply.status_code,
        media_type=reply.content_type,
        headers=reply.headers,
    )


def create_app(launcher: Launcher = None, db_path: str = None) -> FastAPI:
    """Build the application. Pass a Launcher to substitute components in tests."""
    initialize_db(db_path)

    app = FastAPI(
        title="Tavern Launcher",
        description="Control plane for SillyTavern installations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.launcher = launcher or build_launcher()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    # Control panel
    if config.static_dir.exists():
        app.mount("/", StaticFiles(directory=str(config.static_dir), html=True), name="static")

    return app
