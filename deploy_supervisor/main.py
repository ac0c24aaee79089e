"""
Deployment supervisor FastAPI application.

Runs the watchdog control loop for the managed process inside the app
lifespan and exposes the operator API: process start/stop/restart/status,
self-restart signalling, staging process control, promotion, revert,
backups, logs and history.
"""

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__, backups
from .config import Config, config
from .deploy import DeploymentManager
from .models import Deployment, SupervisorEvent, initialize_db
from .process import RotatingLineLog
from .results import Failure, FailureKind, OperationResult, PartialFailure
from .staging import StagingController
from .watchdog import Supervisor

logger = logging.getLogger(__name__)


def configure_logging(cfg: Config):
    """Log to a rotating file in the data directory and to the console."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        cfg.supervisor_log,
        maxBytes=cfg.log_max_bytes,
        backupCount=cfg.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=logging.INFO,
        handlers=[file_handler, console_handler],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the watchdog for the lifetime of the app."""
    supervisor: Supervisor = app.state.supervisor
    deployer: DeploymentManager = app.state.deployer

    def event_callback(kind: str, message: str, details: dict):
        SupervisorEvent.record(kind, message, details)

    def deployment_callback(kind: str, result: OperationResult):
        Deployment.record(kind, result)

    supervisor.set_event_callback(event_callback)
    deployer.set_deployment_callback(deployment_callback)

    logger.info("Starting deployment supervisor...")
    watchdog_task = asyncio.create_task(watchdog_loop(app))

    yield

    logger.info("Shutting down deployment supervisor...")
    supervisor.shutdown()
    await watchdog_task
    await asyncio.to_thread(app.state.staging.stop)


async def watchdog_loop(app: FastAPI):
    """Run the watchdog; on a fatal condition, take the whole server down."""
    try:
        code = await app.state.supervisor.run()
    except Exception as e:
        logger.critical(f"Watchdog loop crashed: {e}")
        code = 1
    app.state.exit_code = code
    if code != 0:
        logger.critical("Watchdog stopped with a fatal condition, terminating supervisor")
        os.kill(os.getpid(), signal.SIGTERM)


# Pydantic models for API
class PromoteRequest(BaseModel):
    version: Optional[str] = Field(None, description="Version label, e.g. 'v1.10'. Auto-increments if omitted")
    dry_run: bool = Field(False, description="Report the plan without changing anything")
    skip_restart: bool = Field(False, description="Copy files but do not signal a restart")


class RevertRequest(BaseModel):
    dry_run: bool = Field(False, description="Report the plan without changing anything")


class RestartRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Reason, for the logs")


FAILURE_STATUS = {
    FailureKind.CONFIGURATION: 400,
    FailureKind.BUSY: 409,
    FailureKind.IO: 500,
    FailureKind.PROCESS: 500,
}


def _respond(result: OperationResult):
    """Convert an operation result into an HTTP response."""
    if isinstance(result, Failure):
        raise HTTPException(status_code=FAILURE_STATUS[result.kind], detail=result.to_dict())
    if isinstance(result, PartialFailure):
        return JSONResponse(status_code=500, content=result.to_dict())
    return result.to_dict()


router = APIRouter(prefix="/api")


# Process control
@router.get("/status")
async def get_status(request: Request):
    """Watchdog state and managed process info."""
    state = request.app.state
    status = await asyncio.to_thread(state.supervisor.status)
    status.update(
        {
            "live_root": str(state.config.live_root),
            "staging_root": str(state.config.staging_root),
            "deployment_in_progress": state.deployer.in_progress,
            "staging_running": state.staging.running,
        }
    )
    return status


@router.post("/process/start")
async def start_process(request: Request):
    """Start the managed process."""
    return _respond(await request.app.state.supervisor.start())


@router.post("/process/stop")
async def stop_process(request: Request):
    """Stop the managed process."""
    return _respond(await request.app.state.supervisor.stop())


@router.post("/process/restart")
async def restart_process(request: Request, data: Optional[RestartRequest] = None):
    """Restart the managed process now."""
    reason = (data.reason if data else None) or "Manual restart"
    return _respond(await request.app.state.supervisor.restart(reason))


@router.post("/self-restart")
async def self_restart(request: Request, data: Optional[RestartRequest] = None):
    """Write a restart signal for the watchdog to pick up."""
    reason = (data.reason if data else None) or "Manual restart requested"
    return _respond(request.app.state.deployer.self_restart(reason))


# Staging process
@router.post("/staging/start")
async def start_staging(request: Request):
    """Start the staging process."""
    return _respond(await asyncio.to_thread(request.app.state.staging.start))


@router.post("/staging/stop")
async def stop_staging(request: Request):
    """Stop the staging process."""
    return _respond(await asyncio.to_thread(request.app.state.staging.stop))


@router.post("/staging/restart")
async def restart_staging(request: Request):
    """Restart the staging process."""
    return _respond(await asyncio.to_thread(request.app.state.staging.restart))


@router.get("/staging/status")
async def staging_status(request: Request):
    """Staging process state and recent output."""
    return await asyncio.to_thread(request.app.state.staging.status)


async def _stop_staging_before(request: Request, action: str):
    """Stop a running staging process so the tree is not changed under it."""
    staging: StagingController = request.app.state.staging
    if not staging.running:
        return
    result = await asyncio.to_thread(staging.stop)
    if isinstance(result, Failure):
        failure = Failure(f"Failed to stop staging process before {action}: {result.message}", kind=result.kind)
        raise HTTPException(status_code=FAILURE_STATUS[failure.kind], detail=failure.to_dict())


# Deployments
@router.post("/promote")
async def promote(request: Request, data: PromoteRequest):
    """Promote staging to live."""
    if not data.dry_run:
        await _stop_staging_before(request, "promotion")
    result = await asyncio.to_thread(
        request.app.state.deployer.promote,
        data.version,
        data.dry_run,
        data.skip_restart,
    )
    return _respond(result)


@router.post("/revert")
async def revert(request: Request, data: RevertRequest):
    """Reset staging to match live."""
    if not data.dry_run:
        await _stop_staging_before(request, "revert")
    result = await asyncio.to_thread(request.app.state.deployer.revert, data.dry_run)
    return _respond(result)


@router.get("/backups")
async def list_backups(request: Request):
    """List backups, newest first."""
    found = backups.list_backups(request.app.state.config.backup_root)
    return [b.to_dict() for b in reversed(found)]


# Logs and history
@router.get("/logs")
async def read_logs(
    request: Request,
    target: str = Query("live", pattern="^(live|staging)$"),
    lines: int = Query(50, ge=1, le=1000),
):
    """Tail of the persistent process log."""
    cfg = request.app.state.config
    path = cfg.process_log if target == "live" else cfg.staging_log
    if not path.exists():
        raise HTTPException(
            status_code=404,
            detail=f"No log file found at {path}. The {target} process may not have run yet.",
        )
    tail = RotatingLineLog(path, cfg.process_log_max_bytes).tail(lines)
    return {"target": target, "log_file": str(path), "returned_lines": len(tail), "logs": "\n".join(tail)}


@router.get("/events")
async def list_events(kind: Optional[str] = None, limit: int = Query(100, ge=1, le=1000)):
    """Recent watchdog events."""
    query = SupervisorEvent.select()
    if kind:
        query = query.where(SupervisorEvent.kind == kind)
    events = query.order_by(SupervisorEvent.timestamp.desc(), SupervisorEvent.id.desc()).limit(limit)
    return [e.to_dict() for e in events]


@router.get("/deployments")
async def list_deployments(limit: int = Query(50, ge=1, le=500)):
    """Recent promotions and reverts."""
    deployments = Deployment.select().order_by(Deployment.timestamp.desc(), Deployment.id.desc()).limit(limit)
    return [d.to_dict() for d in deployments]


def create_app(
    cfg: Config = config,
    supervisor: Supervisor | None = None,
    staging: StagingController | None = None,
) -> FastAPI:
    """Build the app for one live root."""
    initialize_db(cfg.db_path)

    app = FastAPI(
        title="Deployment Supervisor",
        description="Watchdog, promotion and rollback for a managed application",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.supervisor = supervisor or Supervisor(cfg)
    app.state.deployer = DeploymentManager(cfg)
    app.state.staging = staging or StagingController(cfg)
    app.state.exit_code = 0
    app.include_router(router)
    return app


app = create_app()
