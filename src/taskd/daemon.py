"""Process-level wiring: one registry, gateway and diagnostics set per daemon."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from taskd.control.server import create_app
from taskd.core.config import Settings
from taskd.core.diagnostics import Diagnostics
from taskd.core.gateway import HostGateway
from taskd.core.policy import ExecutionPolicy, load_execution_policy
from taskd.core.tasks import TaskRegistry

logger = logging.getLogger("taskd.daemon")


class Daemon:
    def __init__(self, settings: Settings, policy: Optional[ExecutionPolicy] = None) -> None:
        self.settings = settings
        self.diagnostics = Diagnostics(settings.trace_capacity)
        self.policy = policy or load_execution_policy()
        self.registry = TaskRegistry(settings, self.diagnostics, self.policy)
        self.gateway = HostGateway(self.registry, self.diagnostics)
        self._stop_event: Optional[asyncio.Event] = None
        self._control: Optional[uvicorn.Server] = None
        self._control_task: Optional[asyncio.Task] = None
        self._stopped = False

    async def start(self) -> int:
        """Open the host listener and bootstrap the initial task; returns the bound port."""
        if self.registry.workspace_root is None:
            logger.warning("No usable workspace root; tasks will run in their outputs directories")
        port = await self.gateway.start(self.settings.host, self.settings.port)
        await self.registry.bootstrap_initial_task()
        return port

    def request_stop(self) -> None:
        logger.info("Shutdown requested")
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Serve until SIGINT/SIGTERM, then stop every agent."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass

        await self.start()
        waiters = [loop.create_task(self._stop_event.wait())]
        if self.settings.control_port:
            config = uvicorn.Config(
                create_app(self.gateway),
                host=self.settings.host,
                port=self.settings.control_port,
                log_config=None,
                lifespan="off",
            )
            self._control = uvicorn.Server(config)
            self._control_task = loop.create_task(self._control.serve())
            waiters.append(self._control_task)
            logger.info("Control API on http://%s:%s", self.settings.host, self.settings.control_port)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.shutdown()
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._control is not None:
            self._control.should_exit = True
        await self.gateway.stop()
        await self.registry.shutdown()
        if self._control_task is not None and not self._control_task.done():
            try:
                await asyncio.wait_for(self._control_task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                logger.warning("Control API did not stop cleanly")
        logger.info("taskd stopped")
