from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Protocol

from common.config import TunnelConfig
from common.model import (
    AgentKind,
    ConnectionRecord,
    ConnectionStatus,
    ControlState,
    DeviceLocator,
)
from common.registry import ConnectionRegistry, StorageError
from common.service import HostReachability


class AgentUnresponsive(RuntimeError):
    pass


class MalformedAgentOutput(ValueError):
    def __init__(self, raw: bytes, reason: str):
        super().__init__(f"failed to decode agent output({raw!r}): {reason}")
        self.raw = raw


class AgentWarning(RuntimeError):
    pass


class Controller(Protocol):
    async def serve(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass
class ConnectResult:
    status: ConnectionStatus
    controller: Controller | None = None
    error: Exception | None = None


class Launcher(Protocol):
    async def launch(self, record: ConnectionRecord) -> ConnectResult: ...


class Resolver(Protocol):
    async def resolve(self, locator: DeviceLocator) -> HostReachability: ...


def parse_agent_report(output: bytes) -> ConnectResult:
    if not output.strip():
        # The pipe was closed before any report: the agent failed and already
        # explained why on its stderr.
        raise AgentUnresponsive("no response from agent")
    line = output.strip().splitlines()[0]
    try:
        status, extra = ConnectionStatus.decode(line)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedAgentOutput(output, str(exc)) from exc
    warning = extra.get("warning")
    return ConnectResult(status=status, error=AgentWarning(str(warning)) if warning else None)


class ConnectionProtocol:
    def __init__(
        self,
        config: TunnelConfig,
        registry: ConnectionRegistry,
        launcher: Launcher,
        resolver: Resolver | None = None,
    ):
        self.logger = logging.getLogger("common.connection")
        self.config = config
        self.registry = registry
        self.launcher = launcher
        self.resolver = resolver

    async def select_kind(self, locator: DeviceLocator, preference: AgentKind | None) -> AgentKind:
        if preference is not None:
            return preference
        if self.resolver is None:
            return AgentKind.SIGNALING
        reach = await self.resolver.resolve(locator)
        return AgentKind.PROXY if reach.directly_reachable else AgentKind.SIGNALING

    def find_live(self, locator: DeviceLocator) -> ConnectionRecord | None:
        record = self.registry.get(locator)
        if record is None:
            return None
        if record.status.control_state != ControlState.CONNECTED:
            return None
        if self.registry.is_stale(record):
            self.logger.info("discarding stale connection record for %s", locator)
            self.registry.discard(record)
            return None
        return record

    async def find_or_connect(self, locator: DeviceLocator, preference: AgentKind | None = None) -> ConnectResult:
        existing = self.find_live(locator)
        if existing is not None:
            self.logger.debug("connection to %s already exists (pid=%s)", locator, existing.agent_pid)
            return ConnectResult(status=existing.status)

        kind = await self.select_kind(locator, preference)
        record = ConnectionRecord(
            locator=locator,
            status=ConnectionStatus(control_state=ControlState.CONNECTING),
            agent_kind=kind,
            log_path=str(self.registry.new_log_path(locator)),
            socket_path=str(self.registry.socket_path(locator)),
        )
        self.registry.put(record)
        try:
            result = await self.launcher.launch(record)
        except BaseException:
            self._mark_failed(locator)
            raise
        if self.registry.update_status(locator, result.status) is None:
            # The agent already released its record, so the tunnel is gone.
            self.logger.warning("agent for %s exited before its connection was recorded", locator)
            result.error = AgentWarning(f"agent for {locator} exited right after connecting")
        return result

    def _mark_failed(self, locator: DeviceLocator) -> None:
        try:
            record = self.registry.get(locator)
        except StorageError as exc:
            self.logger.warning("unable to mark %s as failed: %s", locator, exc)
            return
        if record is None:
            return
        # A record owned by a process that is still running is not ours to touch.
        if record.agent_pid not in (None, os.getpid()) and not self.registry.is_stale(record):
            return
        record.status = ConnectionStatus(control_state=ControlState.ERROR)
        try:
            self.registry.put(record)
        except StorageError as exc:
            self.logger.warning("unable to mark %s as failed: %s", locator, exc)

