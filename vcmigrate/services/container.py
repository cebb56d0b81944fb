"""Explicit wiring of the orchestration services.

The FastAPI lifespan owns a single ``ServiceContainer``; nothing in the
service layer keeps module-level session state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..core.config import settings
from .connection_registry import ConnectionRegistry
from .invocation_log import InvocationLog
from .script_invoker import ScriptInvoker
from .session_pool import ProcessFactory, SessionPool
from .shutdown_reaper import ShutdownReaper

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    pool: SessionPool
    registry: ConnectionRegistry
    invoker: ScriptInvoker
    invocation_log: InvocationLog
    reaper: Optional[ShutdownReaper]
    started_at: float = field(default_factory=time.time)

    async def start(self) -> None:
        await self.pool.start()

    async def shutdown(self) -> None:
        """Orderly teardown: disconnect, kill tracked processes, then sweep orphans."""

        try:
            disconnected = await self.registry.disconnect_all()
            if disconnected:
                logger.info("Disconnected %d vCenter connection(s)", disconnected)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to disconnect vCenter connections during shutdown")

        await self.pool.stop()
        killed = self.pool.cleanup_all_processes()
        logger.info("Killed %d PowerShell process(es) during shutdown", killed)

        if self.reaper is not None:
            try:
                self.reaper.sweep_orphans(self.started_at)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Orphan sweep failed")


def build_services(process_factory: Optional[ProcessFactory] = None) -> ServiceContainer:
    """Construct the pool, registry, invoker and reaper from settings."""

    pool = SessionPool(process_factory=process_factory)
    registry = ConnectionRegistry(pool)
    invocation_log = InvocationLog()
    invoker = ScriptInvoker(pool, registry, invocation_log)
    reaper = ShutdownReaper.from_settings() if settings.reaper_enabled else None
    return ServiceContainer(
        pool=pool,
        registry=registry,
        invoker=invoker,
        invocation_log=invocation_log,
        reaper=reaper,
    )
