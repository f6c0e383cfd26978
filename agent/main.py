from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Callable
from typing import BinaryIO

from agent.adb import AdbBridgeError, AdbServerProxy
from agent.launcher import EngineFactory, InProcessLauncher
from agent.signaling import load_signaling_config
from agent.tunnel import TunnelEngine, TunnelError
from common.config import TunnelConfig
from common.connection import ConnectionProtocol, ConnectResult
from common.log import setup_logging
from common.model import AgentKind, DeviceLocator
from common.registry import ConnectionRegistry, StorageError
from common.service import ServiceClient

logger = logging.getLogger("agent.main")


def detach_stdio(log_file: str, level: str) -> None:
    devnull = os.open(os.devnull, os.O_RDWR)
    try:
        for fd in (0, 1, 2):
            os.dup2(devnull, fd)
    finally:
        os.close(devnull)
    setup_logging(level, log_file=log_file)


class Negotiating:
    def __init__(self, out: BinaryIO):
        self.out = out

    def report(self, result: ConnectResult) -> None:
        warning = str(result.error) if result.error else None
        self.out.write(result.status.encode(warning=warning) + b"\n")
        self.out.flush()

    def detach(self, log_file: str, level: str, daemonize: Callable[[str, str], None]) -> "Running":
        daemonize(log_file, level)
        return Running(log_file)


class Running:
    def __init__(self, log_file: str):
        self.log_file = log_file

    async def serve(self, engine: TunnelEngine) -> None:
        _install_signal_handlers(engine)
        try:
            await engine.serve()
        except TunnelError as exc:
            logger.error("tunnel to %s ended: %s", engine.locator, exc)
        except Exception:
            logger.exception("tunnel to %s failed", engine.locator)


def _install_signal_handlers(engine: TunnelEngine) -> None:
    loop = asyncio.get_running_loop()

    async def _shutdown() -> None:
        await engine.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


async def run_agent(
    config: TunnelConfig,
    locator: DeviceLocator,
    kind: AgentKind,
    *,
    signaling_config: str = "",
    out: BinaryIO | None = None,
    daemonize: Callable[[str, str], None] = detach_stdio,
    adb: AdbServerProxy | None = None,
    engine_factory=None,
) -> int:
    registry = ConnectionRegistry(config.control_dir_path, pending_grace=config.agent_start_timeout)
    registry.ensure_dirs()
    if engine_factory is None:
        engine_factory = EngineFactory(config, ServiceClient(config), load_signaling_config(signaling_config))
    adb = adb or AdbServerProxy(config.adb_binary)
    protocol = ConnectionProtocol(config, registry, InProcessLauncher(registry, engine_factory))
    negotiating = Negotiating(out or sys.stdout.buffer)

    result = await protocol.find_or_connect(locator, preference=kind)
    port = result.status.control_port
    if port:
        try:
            await adb.connect(port)
        except AdbBridgeError as exc:
            logger.warning("%s", exc)
            result.error = result.error or exc
    negotiating.report(result)

    engine = result.controller
    if not isinstance(engine, TunnelEngine):
        # Someone else already owns this connection.
        return 0
    record = registry.get(locator)
    log_file = record.log_path if record else str(registry.new_log_path(locator))
    running = negotiating.detach(log_file, config.log_level, daemonize)
    logger.info("%s for %s detached, logging to %s", kind.value, locator, running.log_file)
    try:
        await running.serve(engine)
    finally:
        if port:
            try:
                await adb.disconnect(port)
            except AdbBridgeError as exc:
                logger.warning("%s", exc)
        _release_record(registry, locator)
    return 0


def _release_record(registry: ConnectionRegistry, locator: DeviceLocator) -> None:
    try:
        record = registry.get(locator)
        if record is not None and record.agent_pid == os.getpid():
            registry.discard(record)
    except StorageError as exc:
        logger.warning("unable to remove connection record for %s: %s", locator, exc)
