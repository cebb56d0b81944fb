"""API route handlers."""
import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.models import (
    ConnectionInfo,
    ConnectionRequest,
    ConnectionResponse,
    ConnectionStatusResponse,
    Credentials,
    DiagnosticsResponse,
    ErrorKind,
    HealthResponse,
    InvocationResult,
    PairConnectionRequest,
    PowerCLIStatusResponse,
    ScriptRunRequest,
)
from ..core.config import get_config_validation_result
from ..services.connection_registry import ConnectionResult
from ..services.container import ServiceContainer

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

router = APIRouter()


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestration services are not running",
        )
    return services


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the HTTP client goes away."""

    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected from %s; cancelling invocation", request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(0.5)


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint."""
    services = getattr(request.app.state, "services", None)
    config_result = get_config_validation_result()
    health_status = "config_error" if config_result and config_result.has_errors else "healthy"
    return HealthResponse(
        status=health_status,
        version=APP_VERSION,
        timestamp=datetime.now(timezone.utc),
        active_process_count=services.pool.get_active_process_count() if services else 0,
    )


@router.get("/api/v1/diagnostics", response_model=DiagnosticsResponse, tags=["Diagnostics"])
async def diagnostics(services: ServiceContainer = Depends(get_services)):
    """Report pooled sessions, connections and process health."""
    return DiagnosticsResponse(
        active_process_count=services.pool.get_active_process_count(),
        sessions=services.pool.get_diagnostics(),
        connections=services.registry.list_connections(),
        powercli_available=services.invoker.powercli_available,
        metrics=services.pool.get_metrics(),
    )


@router.post("/api/v1/connections", response_model=ConnectionResponse, tags=["Connections"])
async def connect(
    body: ConnectionRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Establish (or reuse) a persistent vCenter connection."""
    result = await services.registry.get_or_establish(
        body.server,
        Credentials(identity=body.username, secret=body.password),
    )
    return _connection_response(result)


@router.post(
    "/api/v1/connections/pair", response_model=ConnectionResponse, tags=["Connections"]
)
async def connect_pair(
    body: PairConnectionRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Connect one session to both the source and the target vCenter of a migration."""
    result = await services.registry.get_or_establish_pair(
        body.source.server,
        Credentials(identity=body.source.username, secret=body.source.password),
        body.target.server,
        Credentials(identity=body.target.username, secret=body.target.password),
    )
    return _connection_response(result)


def _connection_response(result: ConnectionResult) -> ConnectionResponse:
    if not result.success:
        status_code = (
            status.HTTP_401_UNAUTHORIZED
            if result.error_kind == ErrorKind.AUTHENTICATION_FAILED
            else status.HTTP_502_BAD_GATEWAY
        )
        raise HTTPException(
            status_code=status_code,
            detail=ConnectionResponse(
                success=False,
                error_kind=result.error_kind,
                error_message=result.error_message,
                suggested_action=result.suggested_action,
            ).model_dump(mode="json"),
        )
    return ConnectionResponse(success=True, connection=result.info)


@router.get(
    "/api/v1/connections/{server}", response_model=ConnectionInfo, tags=["Connections"]
)
async def get_connection(server: str, services: ServiceContainer = Depends(get_services)):
    """Return details of the connection held for ``server``."""
    info = services.registry.get_connection_info(server)
    if info is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection to {server}",
        )
    return info


@router.post(
    "/api/v1/connections/{server}/verify",
    response_model=ConnectionStatusResponse,
    tags=["Connections"],
)
async def verify_connection(server: str, services: ServiceContainer = Depends(get_services)):
    """Check that the stored connection is still live; a stale one is dropped."""
    if services.registry.get_connection_info(server) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection to {server}",
        )
    connected = await services.registry.verify(server)
    return ConnectionStatusResponse(server=server, connected=connected)


@router.post("/api/v1/powercli/probe", response_model=PowerCLIStatusResponse, tags=["Diagnostics"])
async def probe_powercli(services: ServiceContainer = Depends(get_services)):
    """Check whether VMware.PowerCLI is installed for the configured interpreter."""
    return PowerCLIStatusResponse(available=await services.invoker.probe_powercli())


@router.delete(
    "/api/v1/connections/{server}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Connections"],
)
async def disconnect(server: str, services: ServiceContainer = Depends(get_services)):
    """Close the connection to ``server`` and discard its session."""
    if not await services.registry.disconnect(server):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No connection to {server}",
        )


@router.post(
    "/api/v1/scripts/{script_id}/run",
    response_model=InvocationResult,
    tags=["Scripts"],
)
async def run_script(
    script_id: str,
    body: ScriptRunRequest,
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    """Run a catalog script and return its structured result."""
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        if body.source_server:
            return await services.invoker.run_dual(
                script_id,
                body.parameters,
                body.log_path,
                body.timeout_seconds,
                source_server=body.source_server,
                target_server=body.target_server,
                output_format=body.output_format,
                cancel_event=cancel_event,
            )
        return await services.invoker.run(
            script_id,
            body.parameters,
            body.log_path,
            body.timeout_seconds,
            target_server=body.target_server,
            output_format=body.output_format,
            cancel_event=cancel_event,
        )
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
